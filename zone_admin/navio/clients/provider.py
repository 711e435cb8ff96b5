"""
Read-only client for the Navio service-area API.

Fetches the live zone list and converts each record into a ``ProviderZone``
whose geofence has already been swapped into GeoJSON order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping

import requests

from ..errors import NetworkTransient, ValidationError
from ..geofence import GeoJsonGeofence, ProviderGeofence
from ..retry import classify_http_status, parse_retry_after

DEFAULT_NAVIO_API_URL = "https://api.noddi.co/v1/service-areas/for-landing-pages/"


@dataclass(frozen=True)
class ProviderZone:
    """One delivery zone as reported by the provider."""

    id: int
    name: str
    display_name: str | None = None
    is_active: bool = True
    geofence: GeoJsonGeofence | None = None
    city_hint: str | None = None
    country_code: str | None = None
    postal_codes: tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        """Serialise for JSON columns (queue cache, batch payload)."""
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "is_active": self.is_active,
            "geofence_lnglat": self.geofence.to_dict() if self.geofence else None,
            "city_hint": self.city_hint,
            "country_code": self.country_code,
            "postal_codes": list(self.postal_codes),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProviderZone":
        """Inverse of ``to_payload``; the stored geofence is already GeoJSON ordered."""
        return cls(
            id=int(payload["id"]),
            name=payload["name"],
            display_name=payload.get("display_name"),
            is_active=bool(payload.get("is_active", True)),
            geofence=GeoJsonGeofence.from_dict(payload.get("geofence_lnglat")),
            city_hint=payload.get("city_hint"),
            country_code=payload.get("country_code"),
            postal_codes=tuple(payload.get("postal_codes") or ()),
        )


def _city_hint(raw: Mapping[str, Any]) -> str | None:
    city = raw.get("city_name") or raw.get("city")
    if isinstance(city, Mapping):
        city = city.get("name")
    if isinstance(city, str) and city.strip():
        return city.strip()
    return None


def parse_provider_zone(raw: Mapping[str, Any], *, logger: logging.Logger | None = None) -> ProviderZone:
    """Convert one raw API record, swapping its geofence from ``[lat, lng]`` to GeoJSON order."""

    logger = logger or logging.getLogger(__name__)
    try:
        zone_id = int(raw["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"Provider zone without a usable id: {raw!r:.200}") from exc

    name = raw.get("name") or raw.get("display_name") or f"Area {zone_id}"
    geofence: GeoJsonGeofence | None = None
    raw_geofence = raw.get("geofence_geojson", raw.get("geofence"))
    try:
        provider_geofence = ProviderGeofence.from_payload(raw_geofence)
        geofence = provider_geofence.to_geojson() if provider_geofence else None
    except ValidationError as exc:
        logger.warning(
            "Ignoring malformed geofence for zone %s: %s",
            zone_id,
            exc,
            extra={"navio_zone_id": zone_id},
        )

    postal_codes = raw.get("postal_codes") or raw.get("postal_code_ranges") or ()
    if isinstance(postal_codes, str):
        postal_codes = [code.strip() for code in postal_codes.split(",") if code.strip()]

    return ProviderZone(
        id=zone_id,
        name=str(name).strip(),
        display_name=raw.get("display_name"),
        is_active=bool(raw.get("is_active", True)),
        geofence=geofence,
        city_hint=_city_hint(raw),
        country_code=(raw.get("country_code") or None),
        postal_codes=tuple(str(code) for code in postal_codes),
    )


def extract_zone_records(payload: Any) -> List[Mapping[str, Any]]:
    """Accept a bare list or a ``results``/``data`` envelope."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in ("results", "data"):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise ValidationError("Unknown Navio API response structure.")


class NavioClient:
    """Fetch live delivery zones from the provider."""

    def __init__(
        self,
        *,
        token: str | None,
        base_url: str = DEFAULT_NAVIO_API_URL,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.token = token
        self.base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs) -> "NavioClient":
        return cls(
            token=config.get("NAVIO_API_TOKEN"),
            base_url=config.get("NAVIO_API_URL") or DEFAULT_NAVIO_API_URL,
            timeout=float(config.get("NAVIO_API_TIMEOUT", 30.0)),
            **kwargs,
        )

    def fetch_zones(self) -> list[ProviderZone]:
        """Return every zone the provider currently reports, active or not."""

        if not self.token:
            raise ValidationError("NAVIO_API_TOKEN is not configured.")
        try:
            response = self.session.get(
                self.base_url,
                headers={"Authorization": f"Token {self.token}", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise NetworkTransient(f"Navio API unreachable: {exc}") from exc

        if not response.ok:
            raise classify_http_status(
                response.status_code,
                message=f"Navio API error: {response.status_code}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ValidationError("Navio API returned invalid JSON.") from exc

        zones = self._parse_records(extract_zone_records(payload))
        self.logger.info(
            "Fetched %s zones from Navio",
            len(zones),
            extra={"navio_zone_count": len(zones)},
        )
        return zones

    def _parse_records(self, records: Iterable[Mapping[str, Any]]) -> list[ProviderZone]:
        by_id: dict[int, ProviderZone] = {}
        for raw in records:
            zone = parse_provider_zone(raw, logger=self.logger)
            if zone.id in by_id:
                self.logger.warning("Duplicate zone id %s in Navio response; keeping last.", zone.id)
            by_id[zone.id] = zone
        return list(by_id.values())
