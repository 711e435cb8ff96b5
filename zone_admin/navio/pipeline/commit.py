"""
Incremental commit of approved staging cities into production tables.

``commit_city`` promotes exactly one approved city per call. Production rows
are matched by their stable provider keys, so repeating a step after a
timeout updates the same rows instead of inserting duplicates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from flask import current_app
from sqlalchemy import false, func
from sqlalchemy.orm import Session

from zone_admin.models import Area, City, District, db
from zone_admin.models.navio import (
    ImportQueueEntry,
    NavioBatchStatus,
    NavioImportBatch,
    StagingArea,
    StagingCity,
    StagingDistrict,
    StagingStatus,
)
from zone_admin.utils.slugify import city_key, district_key, slugify

from ..errors import DataIntegrityError
from ..geofence import GeoJsonGeofence


@dataclass(frozen=True)
class CommitStepResult:
    batch_id: str
    completed: bool
    remaining: int
    committed_city: str | None = None
    city_id: int | None = None
    districts: int = 0
    areas_created: int = 0
    areas_updated: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "completed": self.completed,
            "remaining": self.remaining,
            "committedCity": self.committed_city,
            "cityId": self.city_id,
            "districts": self.districts,
            "areasCreated": self.areas_created,
            "areasUpdated": self.areas_updated,
        }


@dataclass
class CommitSummary:
    batch_id: str
    committed: list[str] = field(default_factory=list)
    areas_created: int = 0
    areas_updated: int = 0
    remaining: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "completed": self.remaining == 0,
            "committedCities": list(self.committed),
            "areasCreated": self.areas_created,
            "areasUpdated": self.areas_updated,
            "remaining": self.remaining,
        }


class CommitEngine:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def remaining(self, batch_id: str) -> int:
        return int(
            self.session.query(func.count(StagingCity.id))
            .filter(StagingCity.batch_id == batch_id, StagingCity.status == StagingStatus.APPROVED)
            .scalar()
            or 0
        )

    def committed_count(self, batch_id: str) -> int:
        return int(
            self.session.query(func.count(StagingCity.id))
            .filter(StagingCity.batch_id == batch_id, StagingCity.status == StagingStatus.COMMITTED)
            .scalar()
            or 0
        )

    def commit_city(self, batch_id: str) -> CommitStepResult:
        staging_city = (
            self.session.query(StagingCity)
            .filter_by(batch_id=batch_id, status=StagingStatus.APPROVED)
            .order_by(StagingCity.id)
            .first()
        )
        if staging_city is None:
            return CommitStepResult(batch_id=batch_id, completed=True, remaining=0)

        city_name = staging_city.name
        try:
            result = self._promote(batch_id, staging_city)
            self.session.flush()
            remaining = self.remaining(batch_id)
            self._sync_batch_status(batch_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            current_app.logger.exception(
                "Navio city commit failed",
                extra={"navio_batch_id": batch_id, "navio_city": city_name},
            )
            raise

        current_app.logger.info(
            "Navio city committed",
            extra={
                "navio_batch_id": batch_id,
                "navio_city": city_name,
                "navio_areas_created": result["areas_created"],
                "navio_areas_updated": result["areas_updated"],
                "navio_remaining": remaining,
            },
        )
        return CommitStepResult(
            batch_id=batch_id,
            completed=remaining == 0,
            remaining=remaining,
            committed_city=city_name,
            city_id=result["city_id"],
            districts=result["districts"],
            areas_created=result["areas_created"],
            areas_updated=result["areas_updated"],
        )

    def commit(
        self,
        batch_id: str,
        *,
        on_city: Callable[[CommitStepResult], None] | None = None,
    ) -> CommitSummary:
        """Commit every approved city of the batch, one city transaction at a time."""

        summary = CommitSummary(batch_id=batch_id)
        while True:
            step = self.commit_city(batch_id)
            if step.committed_city:
                summary.committed.append(step.committed_city)
                summary.areas_created += step.areas_created
                summary.areas_updated += step.areas_updated
                if on_city is not None:
                    on_city(step)
            if step.completed:
                summary.remaining = step.remaining
                return summary

    def _promote(self, batch_id: str, staging_city: StagingCity) -> dict[str, int]:
        now = datetime.now(timezone.utc)
        city = self._upsert_city(staging_city, now)

        districts = (
            self.session.query(StagingDistrict)
            .filter(
                StagingDistrict.staging_city_id == staging_city.id,
                StagingDistrict.status.in_((StagingStatus.APPROVED, StagingStatus.COMMITTED)),
            )
            .order_by(StagingDistrict.id)
            .all()
        )
        district_ids = {district.id for district in districts}

        areas = self._areas_for(batch_id, staging_city)
        orphans = [area.id for area in areas if area.staging_district_id not in district_ids]
        if orphans:
            raise DataIntegrityError(
                f"Staging areas {orphans} of {staging_city.name} reference districts that no longer exist."
            )

        created = updated = 0
        for staging_district in districts:
            district = self._upsert_district(city, staging_district, now)
            for staging_area in areas:
                if staging_area.staging_district_id != staging_district.id:
                    continue
                area, is_new = self._upsert_area(city, district, staging_area, now)
                created += int(is_new)
                updated += int(not is_new)
                staging_area.committed_area_id = area.id
                staging_area.status = StagingStatus.COMMITTED
            staging_district.committed_district_id = district.id
            staging_district.status = StagingStatus.COMMITTED

        staging_city.committed_city_id = city.id
        staging_city.status = StagingStatus.COMMITTED
        return {"city_id": city.id, "districts": len(districts), "areas_created": created, "areas_updated": updated}

    def _city_zone_ids(self, batch_id: str, city_name: str) -> list[str]:
        """Zone ids queued for the city at initialize; they stay with the city through review."""
        entry = (
            self.session.query(ImportQueueEntry)
            .filter_by(batch_id=batch_id, city_name=city_name)
            .order_by(ImportQueueEntry.id)
            .first()
        )
        if entry is None:
            return []
        return [str(payload.get("id")) for payload in (entry.navio_areas or []) if payload.get("id") is not None]

    def _areas_for(self, batch_id: str, staging_city: StagingCity) -> list[StagingArea]:
        """Approved areas of the city, including its own areas whose district row has gone missing."""

        city_district_ids = [
            district_id
            for (district_id,) in self.session.query(StagingDistrict.id).filter(
                StagingDistrict.staging_city_id == staging_city.id
            )
        ]
        in_city = StagingArea.staging_district_id.in_(city_district_ids) if city_district_ids else false()
        zone_ids = self._city_zone_ids(batch_id, staging_city.name)
        dangling = (
            ~StagingArea.staging_district_id.in_(self.session.query(StagingDistrict.id))
            & StagingArea.navio_service_area_id.in_(zone_ids)
            if zone_ids
            else false()
        )
        return (
            self.session.query(StagingArea)
            .filter(
                StagingArea.batch_id == batch_id,
                StagingArea.status.in_((StagingStatus.APPROVED, StagingStatus.COMMITTED)),
                in_city | dangling,
            )
            .order_by(StagingArea.id)
            .all()
        )

    def _upsert_city(self, staging_city: StagingCity, now: datetime) -> City:
        key = city_key(staging_city.name)
        city = self.session.query(City).filter_by(navio_city_key=key).one_or_none()
        if city is None:
            city = City(navio_city_key=key)
            self.session.add(city)
        city.name = staging_city.name
        city.slug = slugify(staging_city.name)
        city.country_code = staging_city.country_code or "NO"
        city.is_delivery = True
        city.navio_imported_at = now
        self.session.flush()
        return city

    def _upsert_district(self, city: City, staging_district: StagingDistrict, now: datetime) -> District:
        key = district_key(city.name, staging_district.name)
        district = self.session.query(District).filter_by(navio_district_key=key).one_or_none()
        if district is None:
            district = District(navio_district_key=key)
            self.session.add(district)
        district.city_id = city.id
        district.name = staging_district.name
        district.slug = slugify(staging_district.name)
        district.is_delivery = True
        district.navio_imported_at = now
        self.session.flush()
        return district

    def _upsert_area(
        self, city: City, district: District, staging_area: StagingArea, now: datetime
    ) -> tuple[Area, bool]:
        zone_id = str(staging_area.navio_service_area_id)
        area = self.session.query(Area).filter_by(navio_service_area_id=zone_id).one_or_none()
        is_new = area is None
        if is_new:
            area = Area(navio_service_area_id=zone_id)
            self.session.add(area)
        area.city_id = city.id
        area.district_id = district.id
        area.name = staging_area.name
        area.slug = slugify(staging_area.name)
        area.is_delivery = True
        area.navio_imported_at = now
        geofence = GeoJsonGeofence.from_dict(staging_area.geofence_json)
        if geofence is not None:
            area.geofence_json = geofence.to_dict()
            area.geofence_center = geofence.centroid()
        self.session.flush()
        return area, is_new

    def _sync_batch_status(self, batch_id: str) -> None:
        """COMMITTING while approved cities wait; COMMITTED once nothing is left to review or commit."""

        batch = self.session.get(NavioImportBatch, batch_id)
        if batch is None:
            return
        statuses = [
            status for (status,) in self.session.query(StagingCity.status).filter(StagingCity.batch_id == batch_id)
        ]
        if StagingStatus.APPROVED in statuses:
            batch.status = NavioBatchStatus.COMMITTING
        elif statuses and all(status == StagingStatus.COMMITTED for status in statuses):
            if batch.status != NavioBatchStatus.COMMITTED:
                batch.status = NavioBatchStatus.COMMITTED
                batch.finished_at = datetime.now(timezone.utc)
        elif StagingStatus.COMMITTED in statuses:
            batch.status = NavioBatchStatus.STAGED
