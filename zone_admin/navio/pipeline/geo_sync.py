"""Copy snapshot geofences onto production areas, one city per call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from flask import current_app
from sqlalchemy.orm import Session

from zone_admin.models import Area, City, db

from .snapshot import SnapshotZone


@dataclass(frozen=True)
class GeoSyncStep:
    completed: bool
    remaining: int
    synced_city: str | None = None
    areas_updated: int = 0
    areas_missing_geofence: int = 0
    next_cursor: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "remaining": self.remaining,
            "syncedCity": self.synced_city,
            "areasUpdated": self.areas_updated,
            "areasMissingGeofence": self.areas_missing_geofence,
            "nextCursor": self.next_cursor,
        }


class GeoSyncer:
    """
    The cursor is the id of the last production city synced; ``None`` starts
    from the beginning. Each call commits its own city.
    """

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def _cities_after(self, cursor: int | None):
        query = self.session.query(City).filter(City.navio_city_key.isnot(None))
        if cursor is not None:
            query = query.filter(City.id > cursor)
        return query.order_by(City.id)

    def sync_city(self, snapshot: Mapping[int, SnapshotZone], cursor: int | None = None) -> GeoSyncStep:
        city = self._cities_after(cursor).first()
        if city is None:
            return GeoSyncStep(completed=True, remaining=0, next_cursor=cursor)

        updated = missing = 0
        try:
            areas = self.session.query(Area).filter(Area.city_id == city.id, Area.navio_service_area_id.isnot(None))
            for area in areas:
                try:
                    zone = snapshot.get(int(area.navio_service_area_id))
                except ValueError:
                    zone = None
                if zone is None or zone.geofence is None:
                    missing += 1
                    continue
                geometry = zone.geofence.to_dict()
                if area.geofence_json != geometry:
                    area.geofence_json = geometry
                    area.geofence_center = zone.geofence.centroid()
                    updated += 1
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        remaining = self._cities_after(city.id).count()
        current_app.logger.info(
            "Navio geofences synced",
            extra={"navio_city": city.name, "navio_areas_updated": updated, "navio_areas_missing_geofence": missing},
        )
        return GeoSyncStep(
            completed=remaining == 0,
            remaining=remaining,
            synced_city=city.name,
            areas_updated=updated,
            areas_missing_geofence=missing,
            next_cursor=city.id,
        )
