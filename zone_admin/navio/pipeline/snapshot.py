"""
Snapshot store: the last-synchronised mirror of the provider's zone set.

The snapshot is only ever replaced as a whole, inside one transaction, after
an import cycle has been staged successfully.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Sequence

from flask import current_app
from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from zone_admin.models import db
from zone_admin.models.navio import NavioSnapshot

from ..clients.provider import ProviderZone
from ..geofence import GeoJsonGeofence


@dataclass(frozen=True)
class SnapshotZone:
    id: int
    name: str
    display_name: str | None
    city_name: str | None
    country_code: str | None
    geofence: GeoJsonGeofence | None
    is_active: bool
    snapshot_at: datetime | None

    @classmethod
    def from_model(cls, row: NavioSnapshot) -> "SnapshotZone":
        return cls(
            id=row.navio_service_area_id,
            name=row.name,
            display_name=row.display_name,
            city_name=row.city_name,
            country_code=row.country_code,
            geofence=GeoJsonGeofence.from_dict(row.geofence_json),
            is_active=bool(row.is_active),
            snapshot_at=row.snapshot_at,
        )


class SnapshotStore:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def load(self) -> dict[int, SnapshotZone]:
        rows = self.session.query(NavioSnapshot).all()
        return {row.navio_service_area_id: SnapshotZone.from_model(row) for row in rows}

    def count(self) -> int:
        return int(self.session.query(func.count(NavioSnapshot.id)).scalar() or 0)

    def captured_at(self) -> datetime | None:
        return self.session.query(func.max(NavioSnapshot.snapshot_at)).scalar()

    def replace(
        self,
        zones: Sequence[ProviderZone],
        *,
        city_names: Mapping[int, str] | None = None,
        carry_over: Mapping[int, SnapshotZone] | None = None,
        captured_at: datetime | None = None,
    ) -> int:
        """
        Swap the whole snapshot for ``zones``; returns the number of rows written.

        ``carry_over`` rows are written back unchanged, keeping their original
        ``snapshot_at``. A zone without a staged or hinted city keeps the city
        it had in the previous snapshot.
        """

        captured_at = captured_at or datetime.now(timezone.utc)
        city_names = city_names or {}
        carry_over = carry_over or {}
        previous_cities = dict(
            self.session.query(NavioSnapshot.navio_service_area_id, NavioSnapshot.city_name).all()
        )
        try:
            self.session.execute(delete(NavioSnapshot))
            for zone in zones:
                self.session.add(
                    NavioSnapshot(
                        navio_service_area_id=zone.id,
                        name=zone.name,
                        display_name=zone.display_name,
                        city_name=city_names.get(zone.id) or zone.city_hint or previous_cities.get(zone.id),
                        country_code=zone.country_code,
                        geofence_json=zone.geofence.to_dict() if zone.geofence else None,
                        geofence_hash=zone.geofence.canonical_hash() if zone.geofence else None,
                        is_active=zone.is_active,
                        snapshot_at=captured_at,
                        last_seen_at=captured_at,
                    )
                )
            for kept in carry_over.values():
                self.session.add(
                    NavioSnapshot(
                        navio_service_area_id=kept.id,
                        name=kept.name,
                        display_name=kept.display_name,
                        city_name=kept.city_name,
                        country_code=kept.country_code,
                        geofence_json=kept.geofence.to_dict() if kept.geofence else None,
                        geofence_hash=kept.geofence.canonical_hash() if kept.geofence else None,
                        is_active=kept.is_active,
                        snapshot_at=kept.snapshot_at or captured_at,
                        last_seen_at=captured_at,
                    )
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        rows = len(zones) + len(carry_over)
        current_app.logger.info(
            "Navio snapshot replaced",
            extra={
                "navio_snapshot_rows": rows,
                "navio_snapshot_carried_over": len(carry_over),
                "navio_snapshot_at": captured_at.isoformat(),
            },
        )
        return rows
