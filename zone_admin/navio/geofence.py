"""
Geofence value types.

The provider ships positions as ``[lat, lng]`` while everything we store and
compare uses GeoJSON ``[lng, lat]``. The two orders are separate types:
``ProviderGeofence`` only exists between the HTTP response and ingestion, and
the only way to obtain a ``GeoJsonGeofence`` from it is ``to_geojson()``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from shapely.geometry import Point, mapping, shape
from shapely.validation import make_valid

from .errors import ValidationError

COORDINATE_PRECISION = 7
SUPPORTED_TYPES = ("Polygon", "MultiPolygon")

Position = tuple[float, float]
Ring = tuple[Position, ...]


def _depth(value: Any) -> int:
    depth = 0
    while isinstance(value, (list, tuple)) and value:
        value = value[0]
        depth += 1
    if isinstance(value, Mapping):
        depth += 1
    return depth


def _position(raw: Any) -> Position:
    if isinstance(raw, Mapping):
        try:
            return float(raw["lat"]), float(raw.get("lng", raw.get("lon")))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid geofence position: {raw!r}") from exc
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        raise ValidationError(f"Invalid geofence position: {raw!r}")
    try:
        return float(raw[0]), float(raw[1])
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid geofence position: {raw!r}") from exc


def _ring(raw: Sequence[Any]) -> Ring:
    ring = tuple(_position(point) for point in raw)
    if len(ring) < 3:
        raise ValidationError("Geofence ring needs at least three positions.")
    if ring[0] != ring[-1]:
        ring = ring + (ring[0],)
    return ring


def _normalize(geometry_type: str, coordinates: Any) -> tuple:
    if geometry_type == "Polygon":
        return tuple(_ring(ring) for ring in coordinates)
    return tuple(tuple(_ring(ring) for ring in polygon) for polygon in coordinates)


def _swap(geometry_type: str, coordinates: tuple) -> tuple:
    def swap_ring(ring: Ring) -> Ring:
        return tuple((b, a) for a, b in ring)

    if geometry_type == "Polygon":
        return tuple(swap_ring(ring) for ring in coordinates)
    return tuple(tuple(swap_ring(ring) for ring in polygon) for polygon in coordinates)


def _to_lists(coordinates: Any) -> Any:
    if isinstance(coordinates, tuple):
        return [_to_lists(item) for item in coordinates]
    return coordinates


def _rounded(coordinates: Any) -> Any:
    if isinstance(coordinates, tuple) and coordinates and isinstance(coordinates[0], float):
        return [round(value, COORDINATE_PRECISION) for value in coordinates]
    return [_rounded(item) for item in coordinates]


def _split_payload(payload: Any) -> tuple[str, Any]:
    """Return (geometry_type, coordinates) for a geometry dict or a bare coordinate list."""
    if isinstance(payload, Mapping):
        geometry_type = payload.get("type")
        coordinates = payload.get("coordinates")
        if geometry_type not in SUPPORTED_TYPES or not isinstance(coordinates, (list, tuple)):
            raise ValidationError(f"Unsupported geofence geometry: {geometry_type!r}")
        return geometry_type, coordinates
    if isinstance(payload, (list, tuple)):
        depth = _depth(payload)
        if depth == 2:
            return "Polygon", [payload]
        if depth == 3:
            return "Polygon", payload
        if depth == 4:
            return "MultiPolygon", payload
    raise ValidationError("Geofence payload is neither a geometry nor a coordinate list.")


@dataclass(frozen=True)
class GeoJsonGeofence:
    """Polygon or multipolygon whose positions are ``(lng, lat)``."""

    geometry_type: str
    coordinates: tuple

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "GeoJsonGeofence | None":
        if not payload:
            return None
        geometry_type, coordinates = _split_payload(payload)
        return cls(geometry_type, _normalize(geometry_type, coordinates))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.geometry_type, "coordinates": _to_lists(self.coordinates)}

    def canonical(self) -> dict[str, Any]:
        return {"type": self.geometry_type, "coordinates": _rounded(self.coordinates)}

    def canonical_hash(self) -> str:
        serialized = json.dumps(self.canonical(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

    def same_shape(self, other: "GeoJsonGeofence | None") -> bool:
        """Structural comparison on canonicalised coordinates."""
        if other is None:
            return False
        return self.canonical() == other.canonical()

    def _geometry(self):
        geometry = shape(self.to_dict())
        if not geometry.is_valid:
            geometry = make_valid(geometry)
        return geometry

    def centroid(self) -> list[float]:
        point = self._geometry().centroid
        return [round(point.x, COORDINATE_PRECISION), round(point.y, COORDINATE_PRECISION)]

    def contains(self, lng: float, lat: float) -> bool:
        return self._geometry().covers(Point(lng, lat))

    def repaired(self) -> "GeoJsonGeofence":
        """Return a valid copy (self-intersections fixed) when shapely can express it as polygons."""
        geometry = self._geometry()
        if geometry.geom_type not in SUPPORTED_TYPES:
            return self
        return GeoJsonGeofence.from_dict(mapping(geometry)) or self


@dataclass(frozen=True)
class ProviderGeofence:
    """Polygon or multipolygon exactly as the provider sends it: positions are ``(lat, lng)``."""

    geometry_type: str
    coordinates: tuple

    @classmethod
    def from_payload(cls, payload: Any) -> "ProviderGeofence | None":
        if payload in (None, "", [], {}):
            return None
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise ValidationError("Geofence string is not valid JSON.") from exc
        geometry_type, coordinates = _split_payload(payload)
        return cls(geometry_type, _normalize(geometry_type, coordinates))

    def to_geojson(self) -> GeoJsonGeofence:
        return GeoJsonGeofence(self.geometry_type, _swap(self.geometry_type, self.coordinates))


def geofence_hash(payload: Mapping[str, Any] | None) -> str | None:
    """Hash a stored GeoJSON geofence; ``None`` when absent or unreadable."""
    try:
        geofence = GeoJsonGeofence.from_dict(payload)
    except ValidationError:
        return None
    return geofence.canonical_hash() if geofence else None
