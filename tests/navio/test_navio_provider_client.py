from __future__ import annotations

import pytest
import requests
from navio_fakes import FakeResponse, FakeSession

from zone_admin.navio.clients.provider import (
    NavioClient,
    extract_zone_records,
    parse_provider_zone,
)
from zone_admin.navio.errors import NetworkTransient, UpstreamRateLimited, ValidationError

RAW_ZONE = {
    "id": "7",
    "name": " Grünerløkka ",
    "display_name": "Grünerløkka Nord",
    "is_active": True,
    "city": {"name": "Oslo"},
    "country_code": "NO",
    "postal_codes": "0550, 0551",
    "geofence_geojson": {
        "type": "Polygon",
        "coordinates": [[[59.92, 10.75], [59.92, 10.76], [59.93, 10.76], [59.93, 10.75]]],
    },
}


def client_with(*responses, token="abc") -> tuple[NavioClient, FakeSession]:
    session = FakeSession(*responses)
    return NavioClient(token=token, base_url="https://navio.test/zones/", session=session), session


def test_parse_provider_zone_normalises_record():
    zone = parse_provider_zone(RAW_ZONE)

    assert zone.id == 7
    assert zone.name == "Grünerløkka"
    assert zone.city_hint == "Oslo"
    assert zone.postal_codes == ("0550", "0551")
    assert zone.geofence.to_dict()["coordinates"][0][0] == [10.75, 59.92]


def test_parse_provider_zone_without_id_is_rejected():
    with pytest.raises(ValidationError):
        parse_provider_zone({"name": "Nameless"})


def test_malformed_geofence_is_dropped_not_fatal():
    zone = parse_provider_zone({"id": 3, "name": "Broken", "geofence": {"type": "Point", "coordinates": [1, 2]}})
    assert zone.geofence is None
    assert zone.name == "Broken"


@pytest.mark.parametrize(
    "payload",
    [[{"id": 1}], {"results": [{"id": 1}]}, {"data": [{"id": 1}], "count": 1}],
)
def test_extract_zone_records_accepts_envelopes(payload):
    assert extract_zone_records(payload) == [{"id": 1}]


def test_extract_zone_records_rejects_unknown_shape():
    with pytest.raises(ValidationError):
        extract_zone_records({"zones": []})


def test_fetch_zones_sends_token_and_parses_results():
    client, session = client_with(FakeResponse(200, {"results": [RAW_ZONE, {"id": 8, "name": "Frogner"}]}))

    zones = client.fetch_zones()

    assert [zone.id for zone in zones] == [7, 8]
    request = session.requests[0]
    assert request["method"] == "GET"
    assert request["url"] == "https://navio.test/zones/"
    assert request["headers"]["Authorization"] == "Token abc"


def test_fetch_zones_keeps_last_duplicate():
    client, _ = client_with(FakeResponse(200, [{"id": 1, "name": "First"}, {"id": 1, "name": "Second"}]))
    zones = client.fetch_zones()
    assert [(zone.id, zone.name) for zone in zones] == [(1, "Second")]


def test_fetch_zones_requires_token():
    client, session = client_with(token=None)
    with pytest.raises(ValidationError):
        client.fetch_zones()
    assert session.requests == []


def test_rate_limit_carries_retry_after():
    client, _ = client_with(FakeResponse(429, {}, headers={"Retry-After": "20"}))
    with pytest.raises(UpstreamRateLimited) as excinfo:
        client.fetch_zones()
    assert excinfo.value.retry_after == 20.0


def test_server_errors_and_timeouts_are_transient():
    client, _ = client_with(FakeResponse(503, {}), requests.Timeout("read timed out"))
    with pytest.raises(NetworkTransient):
        client.fetch_zones()
    with pytest.raises(NetworkTransient):
        client.fetch_zones()


def test_auth_failure_and_bad_json_are_not_retryable():
    client, _ = client_with(FakeResponse(401, {}), FakeResponse(200, ValueError("no json")))
    with pytest.raises(ValidationError):
        client.fetch_zones()
    with pytest.raises(ValidationError):
        client.fetch_zones()


def test_from_config():
    client = NavioClient.from_config(
        {"NAVIO_API_TOKEN": "t", "NAVIO_API_URL": "https://other.test/", "NAVIO_API_TIMEOUT": "5"},
        session=FakeSession(),
    )
    assert client.token == "t"
    assert client.base_url == "https://other.test/"
    assert client.timeout == 5.0
