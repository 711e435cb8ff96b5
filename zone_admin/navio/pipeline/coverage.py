"""
Coverage reconciliation between live provider zones, the snapshot and
production delivery areas.

``assess_coverage`` is pure and read-only. Deactivating orphaned areas is a
separate call that requires explicit confirmation.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy import update
from sqlalchemy.orm import Session

from zone_admin.models import Area, City, db

from ..clients.provider import ProviderZone
from ..errors import ValidationError
from ..geofence import GeoJsonGeofence
from .snapshot import SnapshotZone

HEALTHY = "healthy"
WARNING = "warning"
NEEDS_ATTENTION = "needs_attention"


@dataclass(frozen=True)
class CoverageThresholds:
    """Absolute counts above which the audit degrades its health status."""

    uncovered_warning: int = 5
    uncovered_critical: int = 25
    orphaned_warning: int = 0
    orphaned_critical: int = 10
    missing_geofence_warning: int = 0
    snapshot_max_age_hours: float = 24.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "CoverageThresholds":
        return cls(
            uncovered_warning=int(config.get("NAVIO_COVERAGE_UNCOVERED_WARNING", cls.uncovered_warning)),
            uncovered_critical=int(config.get("NAVIO_COVERAGE_UNCOVERED_CRITICAL", cls.uncovered_critical)),
            orphaned_warning=int(config.get("NAVIO_COVERAGE_ORPHANED_WARNING", cls.orphaned_warning)),
            orphaned_critical=int(config.get("NAVIO_COVERAGE_ORPHANED_CRITICAL", cls.orphaned_critical)),
            missing_geofence_warning=int(
                config.get("NAVIO_COVERAGE_MISSING_GEOFENCE_WARNING", cls.missing_geofence_warning)
            ),
            snapshot_max_age_hours=float(
                config.get("NAVIO_SNAPSHOT_MAX_AGE_HOURS", cls.snapshot_max_age_hours)
            ),
        )


@dataclass(frozen=True)
class ProductionArea:
    id: int
    name: str
    city: str
    navio_id: str | None
    geofence: GeoJsonGeofence | None


def _zone_id(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def classify_health(
    *,
    uncovered: int,
    orphaned: int,
    missing_geofence: int,
    snapshot_stale: bool,
    thresholds: CoverageThresholds,
) -> tuple[str, list[str]]:
    reasons: list[str] = []
    critical = False
    if uncovered > thresholds.uncovered_critical:
        critical = True
        reasons.append(f"{uncovered} provider zones have no production area")
    elif uncovered > thresholds.uncovered_warning:
        reasons.append(f"{uncovered} provider zones have no production area")
    if orphaned > thresholds.orphaned_critical:
        critical = True
        reasons.append(f"{orphaned} production areas point at removed or inactive zones")
    elif orphaned > thresholds.orphaned_warning:
        reasons.append(f"{orphaned} production areas point at removed or inactive zones")
    if missing_geofence > thresholds.missing_geofence_warning:
        reasons.append(f"{missing_geofence} delivery areas have no geofence")
    if snapshot_stale:
        reasons.append("snapshot is out of date")

    if critical:
        return NEEDS_ATTENTION, reasons
    return (WARNING if reasons else HEALTHY), reasons


def assess_coverage(
    live_zones: Sequence[ProviderZone],
    snapshot: Mapping[int, SnapshotZone],
    areas: Iterable[ProductionArea],
    *,
    thresholds: CoverageThresholds | None = None,
    snapshot_at: datetime | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    thresholds = thresholds or CoverageThresholds()
    now = now or datetime.now(timezone.utc)
    areas = list(areas)

    live_ids = {zone.id for zone in live_zones}
    active = {zone.id: zone for zone in live_zones if zone.is_active}
    snapshot_ids = set(snapshot)
    missing_from_snapshot = len(live_ids - snapshot_ids)
    removed_from_api = len(snapshot_ids - live_ids)
    too_old = snapshot_at is not None and now - _as_utc(snapshot_at) > timedelta(
        hours=thresholds.snapshot_max_age_hours
    )
    snapshot_stale = bool(missing_from_snapshot or removed_from_api or too_old)

    linked = [area for area in areas if area.navio_id]
    linked_zone_ids = {_zone_id(area.navio_id) for area in linked}
    covered = sum(1 for zone_id in active if zone_id in linked_zone_ids)
    orphaned_areas = [area for area in linked if _zone_id(area.navio_id) not in active]

    with_geofence = [area for area in areas if area.geofence is not None]
    by_hash: dict[str, set[str]] = defaultdict(set)
    for area in with_geofence:
        by_hash[area.geofence.canonical_hash()].add(area.name)
    shared = [
        {"geofenceHash": digest, "areaNames": sorted(names), "count": len(names)}
        for digest, names in sorted(by_hash.items())
        if len(names) > 1
    ]

    city_areas: dict[str, list[ProductionArea]] = defaultdict(list)
    for area in areas:
        city_areas[area.city].append(area)
    snapshot_by_city: dict[str, int] = defaultdict(int)
    for zone in snapshot.values():
        if zone.is_active and zone.city_name:
            snapshot_by_city[zone.city_name] += 1
    breakdown = []
    for city in sorted(city_areas):
        unique_zones = len({area.navio_id for area in city_areas[city] if area.navio_id})
        breakdown.append(
            {
                "city": city,
                "areas": len(city_areas[city]),
                "uniqueZones": unique_zones,
                "snapshotZones": snapshot_by_city.get(city, 0),
                "synced": unique_zones == snapshot_by_city.get(city, 0),
            }
        )

    attention = [
        {"id": area.id, "name": area.name, "city": area.city, "issue": "orphaned"} for area in orphaned_areas
    ]
    attention += [
        {"id": area.id, "name": area.name, "city": area.city, "issue": "missing_geofence"}
        for area in areas
        if area.geofence is None
    ]

    missing_geofence = len(areas) - len(with_geofence)
    status, reasons = classify_health(
        uncovered=len(active) - covered,
        orphaned=len(orphaned_areas),
        missing_geofence=missing_geofence,
        snapshot_stale=snapshot_stale,
        thresholds=thresholds,
    )
    return {
        "apiStatus": {
            "liveZoneCount": len(live_zones),
            "zonesWithGeofence": sum(1 for zone in live_zones if zone.geofence is not None),
            "snapshotCount": len(snapshot),
            "snapshotStale": snapshot_stale,
            "missingFromSnapshot": missing_from_snapshot,
            "removedFromApi": removed_from_api,
            "snapshotAt": _as_utc(snapshot_at).isoformat() if snapshot_at else None,
        },
        "alignment": {
            "navioAreasTotal": len(active),
            "navioAreasCovered": covered,
            "navioAreasUncovered": len(active) - covered,
            "productionAreasTotal": len(linked),
            "productionAreasAligned": len(linked) - len(orphaned_areas),
            "productionAreasOrphaned": len(orphaned_areas),
        },
        "geofenceCoverage": {
            "totalAreas": len(areas),
            "withGeofence": len(with_geofence),
            "missingGeofence": missing_geofence,
            "coveragePercent": round(100.0 * len(with_geofence) / len(areas), 1) if areas else 0.0,
            "uniquePolygons": len(by_hash),
        },
        "sharedPolygons": shared,
        "navioLinkage": {
            "realNavioIds": sum(1 for area in linked if _zone_id(area.navio_id) is not None),
            "aiDiscoveredIds": sum(1 for area in linked if _zone_id(area.navio_id) is None),
            "noNavioId": len(areas) - len(linked),
        },
        "cityBreakdown": breakdown,
        "orphanedAreas": [
            {"areaId": area.id, "areaName": area.name, "city": area.city, "removedNavioId": area.navio_id}
            for area in orphaned_areas
        ],
        "areasNeedingAttention": attention,
        "healthStatus": status,
        "healthReasons": reasons,
    }


class CoverageAuditor:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def production_areas(self) -> list[ProductionArea]:
        rows = (
            self.session.query(Area, City.name)
            .join(City, Area.city_id == City.id)
            .filter(Area.is_delivery.is_(True))
            .order_by(Area.id)
            .all()
        )
        return [
            ProductionArea(
                id=area.id,
                name=area.name,
                city=city_name,
                navio_id=area.navio_service_area_id,
                geofence=GeoJsonGeofence.from_dict(area.geofence_json),
            )
            for area, city_name in rows
        ]

    def check(
        self,
        live_zones: Sequence[ProviderZone],
        snapshot: Mapping[int, SnapshotZone],
        *,
        thresholds: CoverageThresholds | None = None,
        snapshot_at: datetime | None = None,
    ) -> dict[str, Any]:
        return assess_coverage(
            live_zones,
            snapshot,
            self.production_areas(),
            thresholds=thresholds,
            snapshot_at=snapshot_at,
        )

    def deactivate_orphans(self, live_zones: Sequence[ProviderZone], *, confirm: bool = False) -> dict[str, Any]:
        """Set ``is_delivery = False`` on areas whose provider zone is gone or inactive."""

        if not confirm:
            raise ValidationError("Deactivating orphaned areas changes live delivery coverage; confirm to proceed.")

        active = {zone.id for zone in live_zones if zone.is_active}
        orphans = [
            area
            for area in self.production_areas()
            if area.navio_id and _zone_id(area.navio_id) not in active
        ]
        ids = [area.id for area in orphans]
        try:
            if ids:
                self.session.execute(update(Area).where(Area.id.in_(ids)).values(is_delivery=False))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        current_app.logger.warning(
            "Navio orphaned areas deactivated",
            extra={"navio_deactivated_area_ids": ids},
        )
        return {
            "deactivated": len(ids),
            "areas": [{"areaId": area.id, "areaName": area.name, "city": area.city} for area in orphans],
        }
