"""
Staging hierarchy builder.

Turns the live zone list into a reviewable City -> District -> Area tree, one
unit of work per call:

* ``initialize`` captures the zone payload and queues one entry per city.
* ``process_city`` classifies the next chunk of zones for the city currently
  being processed (or starts the next pending city) and persists the result
  before returning, so an interruption loses at most that chunk.
* ``finalize`` verifies every city is done and replaces the snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from flask import current_app, has_app_context
from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from zone_admin.models import db
from zone_admin.models.navio import (
    ImportQueueEntry,
    ImportQueueStatus,
    NavioBatchStatus,
    NavioImportBatch,
    StagingArea,
    StagingCity,
    StagingDistrict,
    StagingStatus,
)

from ..clients.classifier import ZoneClassification, ZoneClassifier, review_classifications
from ..clients.provider import ProviderZone
from ..errors import DataIntegrityError, PartialBatchFailure, ValidationError
from .delta import UNKNOWN_CITY
from .snapshot import SnapshotStore

DEFAULT_CHUNK_SIZE = 30
DEFAULT_COUNTRY_CODE = "NO"
UNMAPPED_DISTRICT = "Unmapped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _logger() -> logging.Logger:
    return current_app.logger if has_app_context() else logging.getLogger(__name__)


@dataclass(frozen=True)
class InitializeResult:
    batch_id: str
    total_cities: int
    cities: list[dict[str, Any]]
    resumed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "totalCities": self.total_cities,
            "cities": list(self.cities),
            "resumed": self.resumed,
        }


@dataclass(frozen=True)
class ProcessCityResult:
    batch_id: str
    completed: bool
    processed_city: str | None = None
    needs_more_processing: bool = False
    zones_processed: int = 0
    zones_total: int = 0
    districts_discovered: int = 0
    neighborhoods_discovered: int = 0
    needs_mapping: int = 0
    remaining_cities: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "completed": self.completed,
            "processedCity": self.processed_city,
            "needsMoreProcessing": self.needs_more_processing,
            "zonesProcessed": self.zones_processed,
            "zonesTotal": self.zones_total,
            "districtsDiscovered": self.districts_discovered,
            "neighborhoodsDiscovered": self.neighborhoods_discovered,
            "needsMapping": self.needs_mapping,
            "remainingCities": self.remaining_cities,
        }


@dataclass(frozen=True)
class FinalizeResult:
    batch_id: str
    staged: dict[str, int] = field(default_factory=dict)
    snapshot_rows: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {"batchId": self.batch_id, "staged": dict(self.staged), "snapshotRows": self.snapshot_rows}


def staging_counts(batch_id: str, *, session: Session | None = None) -> dict[str, int]:
    session = session or db.session
    cities = session.query(func.count(StagingCity.id)).filter(StagingCity.batch_id == batch_id).scalar() or 0
    districts = (
        session.query(func.count(StagingDistrict.id)).filter(StagingDistrict.batch_id == batch_id).scalar() or 0
    )
    areas = session.query(func.count(StagingArea.id)).filter(StagingArea.batch_id == batch_id).scalar() or 0
    needs_mapping = (
        session.query(func.count(StagingArea.id))
        .filter(StagingArea.batch_id == batch_id, StagingArea.status == StagingStatus.NEEDS_MAPPING)
        .scalar()
        or 0
    )
    return {"cities": cities, "districts": districts, "areas": areas, "needsMapping": needs_mapping}


class StagingBuilder:
    """Drive AI-assisted classification of a batch, one persisted unit at a time."""

    def __init__(
        self,
        *,
        classifier: ZoneClassifier,
        session: Session | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        min_confidence: float = 0.5,
    ) -> None:
        self.classifier = classifier
        self.session: Session = session or db.session
        self.chunk_size = max(1, int(chunk_size))
        self.min_confidence = min_confidence

    # ------------------------------------------------------------------
    # initialize
    # ------------------------------------------------------------------

    def initialize(
        self,
        batch_id: str,
        fetch_zones: Callable[[], Sequence[ProviderZone]],
        *,
        city_filter: Iterable[str] | None = None,
        zone_filter: Iterable[int] | None = None,
        triggered_by: str | None = None,
    ) -> InitializeResult:
        """
        Create the batch and its per-city queue.

        With ``city_filter`` or ``zone_filter`` only the matching cities are
        queued: a city is kept when its name is in ``city_filter`` or when it
        holds any zone from ``zone_filter``, whatever city the classifier put
        that zone in.

        Re-invoking for a batch that already has a queue returns that queue
        untouched so a reloaded client can resume.
        """

        existing = self.session.get(NavioImportBatch, batch_id)
        if existing is not None:
            entries = self._queue(batch_id)
            if entries:
                return InitializeResult(
                    batch_id=batch_id,
                    total_cities=len(entries),
                    cities=[self._describe_entry(entry) for entry in entries],
                    resumed=True,
                )

        zones = list(fetch_zones())
        groups = self._group_by_city([zone for zone in zones if zone.is_active])
        filter_set = None
        if city_filter is not None or zone_filter is not None:
            wanted_cities = set(city_filter or ())
            wanted_zones = {int(zone_id) for zone_id in (zone_filter or ())}
            groups = {
                city: members
                for city, members in groups.items()
                if city in wanted_cities or any(zone.id in wanted_zones for zone in members)
            }
            filter_set = set(groups)

        try:
            batch = existing or NavioImportBatch(batch_id=batch_id)
            batch.status = NavioBatchStatus.PROCESSING
            batch.started_at = batch.started_at or _utcnow()
            batch.zones_json = [zone.to_payload() for zone in zones]
            batch.city_filter_json = sorted(filter_set) if filter_set is not None else None
            batch.triggered_by = triggered_by
            batch.counts_json = {"zones": len(zones), "cities": len(groups)}
            if existing is None:
                self.session.add(batch)
                self.session.flush()

            entries = []
            for city_name in sorted(groups):
                members = groups[city_name]
                entry = ImportQueueEntry(
                    batch_id=batch_id,
                    city_name=city_name,
                    country_code=next((z.country_code for z in members if z.country_code), None)
                    or DEFAULT_COUNTRY_CODE,
                    status=ImportQueueStatus.PENDING,
                    navio_areas=[zone.to_payload() for zone in members],
                )
                self.session.add(entry)
                entries.append(entry)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        _logger().info(
            "Navio batch initialized",
            extra={"navio_batch_id": batch_id, "navio_city_count": len(entries), "navio_zone_count": len(zones)},
        )
        return InitializeResult(
            batch_id=batch_id,
            total_cities=len(entries),
            cities=[self._describe_entry(entry) for entry in entries],
        )

    def _group_by_city(self, zones: Sequence[ProviderZone]) -> dict[str, list[ProviderZone]]:
        groups: dict[str, list[ProviderZone]] = {}
        without_hint = [zone for zone in zones if not zone.city_hint]
        for zone in zones:
            if zone.city_hint:
                groups.setdefault(zone.city_hint, []).append(zone)

        for start in range(0, len(without_hint), self.chunk_size):
            chunk = without_hint[start : start + self.chunk_size]
            reviewed = review_classifications(
                chunk, self.classifier.classify(chunk), min_confidence=self.min_confidence
            )
            for zone, result in zip(chunk, reviewed):
                city = result.city if result.city and not result.needs_mapping else UNKNOWN_CITY
                groups.setdefault(city, []).append(zone)
        return groups

    # ------------------------------------------------------------------
    # process_city
    # ------------------------------------------------------------------

    def process_city(self, batch_id: str) -> ProcessCityResult:
        """Classify and stage one chunk of the current city, starting the next city if needed."""

        if self.session.get(NavioImportBatch, batch_id) is None:
            raise ValidationError(f"Unknown batch {batch_id}.")

        entry = self._current_entry(batch_id)
        if entry is None:
            return ProcessCityResult(batch_id=batch_id, completed=True)

        entry_id = entry.id
        try:
            result = self._process_chunk(batch_id, entry)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            failed_entry = self.session.get(ImportQueueEntry, entry_id)
            if failed_entry is not None:
                failed_entry.error_message = str(exc)[:2000]
                self.session.commit()
            _logger().exception(
                "Navio city processing failed",
                extra={"navio_batch_id": batch_id, "navio_queue_entry_id": entry_id},
            )
            raise
        return result

    def _current_entry(self, batch_id: str) -> ImportQueueEntry | None:
        processing = (
            self.session.query(ImportQueueEntry)
            .filter_by(batch_id=batch_id, status=ImportQueueStatus.PROCESSING)
            .order_by(ImportQueueEntry.id)
            .all()
        )
        if len(processing) > 1:
            raise DataIntegrityError(
                f"Batch {batch_id} has {len(processing)} cities in processing; expected at most one."
            )
        if processing:
            return processing[0]
        return (
            self.session.query(ImportQueueEntry)
            .filter_by(batch_id=batch_id, status=ImportQueueStatus.PENDING)
            .order_by(ImportQueueEntry.id)
            .first()
        )

    def _process_chunk(self, batch_id: str, entry: ImportQueueEntry) -> ProcessCityResult:
        now = _utcnow()
        if entry.status == ImportQueueStatus.PENDING:
            entry.status = ImportQueueStatus.PROCESSING
            entry.started_at = now

        zones = [ProviderZone.from_payload(payload) for payload in (entry.navio_areas or [])]
        offset = min(entry.zones_processed or 0, len(zones))
        chunk = zones[offset : offset + self.chunk_size]

        classifications = self._classify(entry.city_name, chunk)
        staging_city = self._get_or_create_city(batch_id, entry)
        for zone, classification in zip(chunk, classifications):
            self._stage_area(batch_id, staging_city, zone, classification)
        self.session.flush()

        hierarchy = self._hierarchy(staging_city.id)
        entry.zones_processed = offset + len(chunk)
        entry.districts_discovered = len(hierarchy)
        entry.neighborhoods_discovered = sum(len(names) for names in hierarchy.values())
        entry.discovered_hierarchy = hierarchy
        entry.last_progress_at = now
        entry.error_message = None
        staging_city.area_names = sorted({name for names in hierarchy.values() for name in names})

        finished = entry.zones_processed >= len(zones)
        if finished:
            entry.status = ImportQueueStatus.COMPLETED
            entry.completed_at = now
        self.session.flush()

        remaining = (
            self.session.query(func.count(ImportQueueEntry.id))
            .filter(
                ImportQueueEntry.batch_id == batch_id,
                ImportQueueEntry.status != ImportQueueStatus.COMPLETED,
            )
            .scalar()
            or 0
        )
        needs_mapping = sum(1 for item in classifications if item.needs_mapping)
        _logger().info(
            "Navio city chunk staged",
            extra={
                "navio_batch_id": batch_id,
                "navio_city": entry.city_name,
                "navio_zones_processed": entry.zones_processed,
                "navio_zones_total": len(zones),
                "navio_needs_mapping": needs_mapping,
            },
        )
        return ProcessCityResult(
            batch_id=batch_id,
            completed=remaining == 0,
            processed_city=entry.city_name,
            needs_more_processing=not finished,
            zones_processed=entry.zones_processed,
            zones_total=len(zones),
            districts_discovered=entry.districts_discovered,
            neighborhoods_discovered=entry.neighborhoods_discovered,
            needs_mapping=needs_mapping,
            remaining_cities=remaining,
        )

    def _classify(self, city_name: str, chunk: Sequence[ProviderZone]) -> list[ZoneClassification]:
        if not chunk:
            return []
        if city_name == UNKNOWN_CITY:
            return [
                ZoneClassification(
                    zone_id=zone.id,
                    original_name=zone.name,
                    city=None,
                    district=None,
                    area=zone.name,
                    needs_mapping=True,
                    reason="unknown_city",
                )
                for zone in chunk
            ]
        raw = self.classifier.classify(chunk, city_hint=city_name)
        reviewed = review_classifications(chunk, raw, min_confidence=self.min_confidence)
        flagged = []
        for result in reviewed:
            if not result.needs_mapping and result.city and result.city.casefold() != city_name.casefold():
                result = ZoneClassification(
                    zone_id=result.zone_id,
                    original_name=result.original_name,
                    city=result.city,
                    district=result.district,
                    area=result.area,
                    confidence=result.confidence,
                    needs_mapping=True,
                    reason="city_mismatch",
                )
            flagged.append(result)
        return flagged

    def _get_or_create_city(self, batch_id: str, entry: ImportQueueEntry) -> StagingCity:
        city = self.session.query(StagingCity).filter_by(batch_id=batch_id, name=entry.city_name).one_or_none()
        if city is None:
            city = StagingCity(
                batch_id=batch_id,
                name=entry.city_name,
                country_code=entry.country_code or DEFAULT_COUNTRY_CODE,
                area_names=[],
                status=StagingStatus.PENDING,
            )
            self.session.add(city)
            self.session.flush()
        return city

    def _get_or_create_district(self, batch_id: str, city: StagingCity, name: str, *, source: str) -> StagingDistrict:
        district = self.session.query(StagingDistrict).filter_by(staging_city_id=city.id, name=name).one_or_none()
        if district is None:
            district = StagingDistrict(
                batch_id=batch_id,
                staging_city_id=city.id,
                name=name,
                source=source,
                area_names=[],
                status=StagingStatus.PENDING,
            )
            self.session.add(district)
            self.session.flush()
        return district

    def _stage_area(
        self,
        batch_id: str,
        city: StagingCity,
        zone: ProviderZone,
        classification: ZoneClassification,
    ) -> StagingArea:
        if classification.needs_mapping and not classification.district:
            district = self._get_or_create_district(batch_id, city, UNMAPPED_DISTRICT, source="needs_mapping")
        else:
            district = self._get_or_create_district(batch_id, city, classification.district, source="ai")

        status = StagingStatus.NEEDS_MAPPING if classification.needs_mapping else StagingStatus.PENDING
        area = (
            self.session.query(StagingArea)
            .filter_by(batch_id=batch_id, navio_service_area_id=str(zone.id))
            .one_or_none()
        )
        if area is None:
            area = StagingArea(batch_id=batch_id, navio_service_area_id=str(zone.id), source="navio")
            self.session.add(area)
        elif area.status == StagingStatus.COMMITTED:
            return area
        area.staging_district_id = district.id
        area.name = classification.area or zone.name
        area.original_name = zone.name
        area.status = status
        area.confidence = classification.confidence
        area.mapping_reason = classification.reason if classification.needs_mapping else None
        area.geofence_json = zone.geofence.to_dict() if zone.geofence else None
        return area

    def _hierarchy(self, staging_city_id: int) -> dict[str, list[str]]:
        rows = (
            self.session.query(StagingDistrict.id, StagingDistrict.name)
            .filter(StagingDistrict.staging_city_id == staging_city_id)
            .order_by(StagingDistrict.name)
            .all()
        )
        hierarchy: dict[str, list[str]] = {}
        for district_id, district_name in rows:
            names = [
                name
                for (name,) in self.session.query(StagingArea.name)
                .filter(StagingArea.staging_district_id == district_id)
                .order_by(StagingArea.name)
            ]
            district = self.session.get(StagingDistrict, district_id)
            district.area_names = names
            if names:
                hierarchy[district_name] = names
        return hierarchy

    # ------------------------------------------------------------------
    # finalize
    # ------------------------------------------------------------------

    def finalize(self, batch_id: str, *, snapshot_store: SnapshotStore | None = None) -> FinalizeResult:
        batch = self.session.get(NavioImportBatch, batch_id)
        if batch is None:
            raise ValidationError(f"Unknown batch {batch_id}.")

        entries = self._queue(batch_id)
        done = sum(1 for entry in entries if entry.status == ImportQueueStatus.COMPLETED)
        if done < len(entries):
            raise PartialBatchFailure(
                f"Batch {batch_id} still has {len(entries) - done} cities to process.",
                completed=done,
                remaining=len(entries) - done,
            )

        zones = [ProviderZone.from_payload(payload) for payload in (batch.zones_json or [])]
        city_names = {
            int(zone_id): city_name
            for zone_id, city_name in self.session.query(StagingArea.navio_service_area_id, StagingCity.name)
            .join(StagingDistrict, StagingArea.staging_district_id == StagingDistrict.id)
            .join(StagingCity, StagingDistrict.staging_city_id == StagingCity.id)
            .filter(StagingArea.batch_id == batch_id, StagingCity.name != UNKNOWN_CITY)
        }

        store = snapshot_store or SnapshotStore(self.session)
        staged_ids = {
            int(zone_id)
            for (zone_id,) in self.session.query(StagingArea.navio_service_area_id).filter(
                StagingArea.batch_id == batch_id
            )
        }
        # Active zones this batch did not stage keep their previous snapshot row,
        # or stay out of the snapshot, so the next delta still reports them.
        previous = store.load()
        synced = [zone for zone in zones if not zone.is_active or zone.id in staged_ids]
        carry_over = {
            zone.id: previous[zone.id]
            for zone in zones
            if zone.is_active and zone.id not in staged_ids and zone.id in previous
        }

        counts = staging_counts(batch_id, session=self.session)
        if batch.status not in (NavioBatchStatus.COMMITTING, NavioBatchStatus.COMMITTED):
            batch.status = NavioBatchStatus.STAGED
        batch.counts_json = {**(batch.counts_json or {}), "staged": counts}
        rows = store.replace(synced, city_names=city_names, carry_over=carry_over)
        _logger().info(
            "Navio batch finalized",
            extra={"navio_batch_id": batch_id, "navio_staged": counts, "navio_snapshot_rows": rows},
        )
        return FinalizeResult(batch_id=batch_id, staged=counts, snapshot_rows=rows)

    # ------------------------------------------------------------------
    # manual mapping and housekeeping
    # ------------------------------------------------------------------

    def resolve_mapping(self, staging_area_id: int, *, district_name: str, area_name: str | None = None) -> StagingArea:
        """Place a ``needs_mapping`` area under a human-chosen district and return it to review."""

        district_name = (district_name or "").strip()
        if not district_name or district_name == UNMAPPED_DISTRICT:
            raise ValidationError("A district name is required to resolve a mapping.")
        area = self.session.get(StagingArea, staging_area_id)
        if area is None:
            raise ValidationError(f"Staging area {staging_area_id} not found.")
        if area.status not in (StagingStatus.NEEDS_MAPPING, StagingStatus.PENDING):
            raise ValidationError(f"Staging area {staging_area_id} is {area.status.value}; it can no longer be remapped.")

        previous = self.session.get(StagingDistrict, area.staging_district_id)
        if previous is None:
            raise DataIntegrityError(
                f"Staging area {staging_area_id} references missing district {area.staging_district_id}."
            )
        city = self.session.get(StagingCity, previous.staging_city_id)
        if city is None:
            raise DataIntegrityError(f"Staging district {previous.id} references missing city.")
        if city.name == UNKNOWN_CITY:
            raise ValidationError("Areas without a known city cannot be resolved into a district.")

        try:
            target = self._get_or_create_district(area.batch_id, city, district_name, source="manual")
            area.staging_district_id = target.id
            if area_name and area_name.strip():
                area.name = area_name.strip()
            area.status = StagingStatus.PENDING
            area.mapping_reason = None
            self.session.flush()
            remaining = self.session.query(StagingArea).filter_by(staging_district_id=previous.id).count()
            if remaining == 0 and previous.name == UNMAPPED_DISTRICT:
                self.session.delete(previous)
            self._hierarchy(city.id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return area

    def clear_batch(self, batch_id: str) -> dict[str, int]:
        """Discard a batch's staging rows and queue so it can be started fresh."""

        city_ids = [row_id for (row_id,) in self.session.query(StagingCity.id).filter_by(batch_id=batch_id)]
        district_ids = [
            row_id for (row_id,) in self.session.query(StagingDistrict.id).filter_by(batch_id=batch_id)
        ]
        try:
            areas = self.session.execute(delete(StagingArea).where(StagingArea.batch_id == batch_id)).rowcount
            districts = self.session.execute(
                delete(StagingDistrict).where(StagingDistrict.id.in_(district_ids))
            ).rowcount if district_ids else 0
            cities = self.session.execute(delete(StagingCity).where(StagingCity.id.in_(city_ids))).rowcount if city_ids else 0
            queue = self.session.execute(delete(ImportQueueEntry).where(ImportQueueEntry.batch_id == batch_id)).rowcount
            self.session.execute(delete(NavioImportBatch).where(NavioImportBatch.batch_id == batch_id))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        _logger().info("Navio batch cleared", extra={"navio_batch_id": batch_id})
        return {"areas": areas or 0, "districts": districts or 0, "cities": cities or 0, "queueEntries": queue or 0}

    def _queue(self, batch_id: str) -> list[ImportQueueEntry]:
        return self.session.query(ImportQueueEntry).filter_by(batch_id=batch_id).order_by(ImportQueueEntry.id).all()

    @staticmethod
    def _describe_entry(entry: ImportQueueEntry) -> dict[str, Any]:
        return {"name": entry.city_name, "zoneCount": entry.zone_count, "status": entry.status.value}
