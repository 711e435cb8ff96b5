"""Test doubles and builders for the Navio pipeline tests."""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from zone_admin.navio.clients.classifier import ZoneClassification
from zone_admin.navio.clients.provider import ProviderZone
from zone_admin.navio.geofence import GeoJsonGeofence


def square(lng: float, lat: float, size: float = 0.01) -> GeoJsonGeofence:
    """Axis-aligned square in GeoJSON order with its south-west corner at (lng, lat)."""
    return GeoJsonGeofence.from_dict(
        {
            "type": "Polygon",
            "coordinates": [
                [
                    [lng, lat],
                    [lng + size, lat],
                    [lng + size, lat + size],
                    [lng, lat + size],
                    [lng, lat],
                ]
            ],
        }
    )


def make_zone(
    zone_id: int,
    name: str,
    *,
    city: str | None = "Oslo",
    active: bool = True,
    geofence: GeoJsonGeofence | None = None,
) -> ProviderZone:
    if geofence is None:
        geofence = square(10.0 + zone_id * 0.1, 59.9)
    return ProviderZone(id=zone_id, name=name, is_active=active, geofence=geofence, city_hint=city, country_code="NO")


class FakeProviderClient:
    """Stands in for ``NavioClient``; ``failures`` are raised, one per call, before zones are returned."""

    def __init__(self, zones: Iterable[ProviderZone] = (), failures: Iterable[Exception] = ()) -> None:
        self.zones = list(zones)
        self.failures = list(failures)
        self.calls = 0

    def fetch_zones(self) -> list[ProviderZone]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return list(self.zones)


class FakeClassifier:
    """
    Deterministic classifier.

    ``mapping`` maps zone name to ``(city, district, area)``; unmapped zones
    land in ``default_district`` of their hinted city with the zone name as area.
    """

    def __init__(
        self,
        mapping: dict[str, tuple[str | None, str | None, str | None]] | None = None,
        *,
        default_district: str = "Sentrum",
        confidence: float = 0.9,
    ) -> None:
        self.mapping = dict(mapping or {})
        self.default_district = default_district
        self.confidence = confidence
        self.calls: list[tuple[list[int], str | None]] = []

    def classify(self, zones: Sequence[ProviderZone], *, city_hint: str | None = None) -> list[ZoneClassification]:
        self.calls.append(([zone.id for zone in zones], city_hint))
        results = []
        for zone in zones:
            city, district, area = self.mapping.get(
                zone.name, (zone.city_hint or city_hint, self.default_district, zone.name)
            )
            results.append(
                ZoneClassification(
                    zone_id=zone.id,
                    original_name=zone.name,
                    city=city,
                    district=district,
                    area=area,
                    confidence=self.confidence,
                )
            )
        return results


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, headers: dict | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Minimal ``requests.Session`` replacement recording outgoing calls."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def _next(self, method: str, url: str, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)


OSLO_ZONES = [
    make_zone(1, "Oslo Sentrum"),
    make_zone(2, "Grünerløkka"),
    make_zone(3, "Frogner"),
]
BERGEN_ZONES = [make_zone(10, "Bryggen", city="Bergen")]
TRONDHEIM_ZONES = [make_zone(20, "Bakklandet", city="Trondheim")]


