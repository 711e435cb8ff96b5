"""
Delta detection between the live provider zones and the stored snapshot.

``compute_delta`` is a pure function: it reads nothing and writes nothing, so
a failure anywhere before it leaves all state untouched.

Every id in the union of current and snapshot lands in exactly one of new,
removed, changed or unchanged. ``geofenceChanged`` is a sub-count of
``changed``: a zone that was renamed *and* reshaped counts once in
``changed`` and once in ``geofenceChanged``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from ..clients.provider import ProviderZone
from .snapshot import SnapshotZone

UNKNOWN_CITY = "Unknown"


@dataclass
class DeltaResult:
    is_first_import: bool
    new_areas: list[dict[str, Any]] = field(default_factory=list)
    removed_areas: list[dict[str, Any]] = field(default_factory=list)
    changed_areas: list[dict[str, Any]] = field(default_factory=list)
    unchanged_ids: list[int] = field(default_factory=list)
    geofence_changed: int = 0
    affected_cities: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.new_areas or self.removed_areas or self.changed_areas)

    @property
    def staging_ids(self) -> list[int]:
        """Active zones the next import must stage: everything new or changed."""
        return [item["id"] for item in self.new_areas] + [item["id"] for item in self.changed_areas]

    @property
    def classified_ids(self) -> list[int]:
        ids = [item["id"] for item in self.new_areas]
        ids += [item["id"] for item in self.removed_areas]
        ids += [item["id"] for item in self.changed_areas]
        return ids + list(self.unchanged_ids)

    def summary(self) -> dict[str, int]:
        return {
            "new": len(self.new_areas),
            "removed": len(self.removed_areas),
            "changed": len(self.changed_areas),
            "geofenceChanged": self.geofence_changed,
            "unchanged": len(self.unchanged_ids),
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "hasChanges": self.has_changes,
            "isFirstImport": self.is_first_import,
            "summary": self.summary(),
            "affectedCities": list(self.affected_cities),
            "newAreas": list(self.new_areas),
            "removedAreas": list(self.removed_areas),
            "changedAreas": list(self.changed_areas),
        }


def _city_for(zone: ProviderZone | None, snapshot_zone: SnapshotZone | None) -> str:
    if zone is not None and zone.city_hint:
        return zone.city_hint
    if snapshot_zone is not None and snapshot_zone.city_name:
        return snapshot_zone.city_name
    return UNKNOWN_CITY


def compute_delta(
    current_zones: Sequence[ProviderZone],
    snapshot: Mapping[int, SnapshotZone],
) -> DeltaResult:
    current = {zone.id: zone for zone in current_zones}
    result = DeltaResult(is_first_import=not snapshot)
    affected: set[str] = set()

    if result.is_first_import:
        for zone in current.values():
            city = _city_for(zone, None)
            result.new_areas.append({"id": zone.id, "name": zone.name, "city": city})
            affected.add(city)
        result.affected_cities = sorted(affected)
        return result

    for zone_id in sorted(set(current) | set(snapshot)):
        zone = current.get(zone_id)
        previous = snapshot.get(zone_id)
        city = _city_for(zone, previous)

        if zone is None:
            result.removed_areas.append({"id": zone_id, "name": previous.name, "city": city, "reason": "missing"})
            affected.add(city)
            continue

        if not zone.is_active:
            if previous is not None and not previous.is_active:
                result.unchanged_ids.append(zone_id)
            else:
                result.removed_areas.append({"id": zone_id, "name": zone.name, "city": city, "reason": "inactive"})
                affected.add(city)
            continue

        if previous is None:
            result.new_areas.append({"id": zone_id, "name": zone.name, "city": city})
            affected.add(city)
            continue

        changes: list[str] = []
        if zone.name != previous.name:
            changes.append("name")
        if zone.geofence is None or previous.geofence is None:
            geofence_differs = (zone.geofence is None) != (previous.geofence is None)
        else:
            geofence_differs = not zone.geofence.same_shape(previous.geofence)
        if geofence_differs:
            changes.append("geofence")
        if not previous.is_active:
            changes.append("reactivated")

        if changes:
            result.changed_areas.append(
                {
                    "id": zone_id,
                    "name": zone.name,
                    "previousName": previous.name,
                    "city": city,
                    "changes": changes,
                }
            )
            if geofence_differs:
                result.geofence_changed += 1
            affected.add(city)
        else:
            result.unchanged_ids.append(zone_id)

    result.affected_cities = sorted(affected)
    return result
