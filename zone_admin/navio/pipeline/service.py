"""
Facade over the Navio pipeline.

Views, CLI commands and Celery tasks all talk to ``NavioPipelineService``; it
wires the collaborators together, records every operation in the operation
log and exposes both single-unit steps (``process_city``, ``commit_city``,
``sync_geo``) and driven loops (``run_import``, ``run_commit``,
``run_geo_sync``) built on the resumable step driver.
"""

from __future__ import annotations

import random
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Mapping

from flask import current_app
from sqlalchemy import func
from sqlalchemy.orm import Session

from zone_admin.models import Area, City, db
from zone_admin.models.navio import (
    ImportQueueEntry,
    ImportQueueStatus,
    NavioBatchStatus,
    NavioImportBatch,
    OperationStatus,
    OperationType,
    StagingStatus,
)

from .. import metrics
from ..clients.classifier import ZoneClassifier, create_classifier
from ..clients.provider import NavioClient, ProviderZone
from ..errors import ValidationError
from ..geofence import GeoJsonGeofence
from ..retry import RetryPolicy, call_with_retry
from .approval import ApprovalService
from .commit import CommitEngine
from .coverage import CoverageAuditor, CoverageThresholds
from .delta import compute_delta
from .geo_sync import GeoSyncer
from .operation_log import OperationLogService
from .runner import CancellationToken, LoopOutcome, LoopStatus, drive_steps
from .snapshot import SnapshotStore
from .staging import StagingBuilder, staging_counts

PIPELINE_MODES = (
    "delta_check",
    "initialize",
    "process_city",
    "finalize",
    "commit_city",
    "commit",
    "sync_geo",
    "coverage_check",
    "deactivate_orphans",
)


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _coerce_ids(values: Any) -> list[int]:
    if values is None:
        return []
    if isinstance(values, (str, int)):
        values = [values]
    try:
        return [int(value) for value in values]
    except (TypeError, ValueError) as exc:
        raise ValidationError("city_ids must be a list of integers.") from exc


class NavioPipelineService:
    def __init__(
        self,
        *,
        client: NavioClient | Any | None = None,
        classifier: ZoneClassifier | None = None,
        session: Session | None = None,
        config: Mapping[str, Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.config = config if config is not None else current_app.config
        self.session: Session = session or db.session
        self.client = client or NavioClient.from_config(self.config, logger=current_app.logger)
        self.classifier = classifier or create_classifier(self.config, logger=current_app.logger)
        self.policy = RetryPolicy.from_config(self.config)
        self.sleep = sleep
        self.random_fn = random_fn

        self.snapshots = SnapshotStore(self.session)
        self.operations = OperationLogService(self.session)
        self.staging = StagingBuilder(
            classifier=self.classifier,
            session=self.session,
            chunk_size=int(self.config.get("NAVIO_PROCESS_CHUNK_SIZE", 30)),
            min_confidence=float(self.config.get("NAVIO_CLASSIFIER_MIN_CONFIDENCE", 0.5)),
        )
        self.approval = ApprovalService(self.session)
        self.commit_engine = CommitEngine(self.session)
        self.coverage = CoverageAuditor(self.session)
        self.geo = GeoSyncer(self.session)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _tracked(
        self,
        operation: OperationType,
        *,
        batch_id: str | None = None,
        user_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> Iterator[dict[str, Any]]:
        started = time.monotonic()
        status = "failed"
        try:
            with self.operations.track(operation, batch_id=batch_id, user_id=user_id, details=details) as result:
                yield result
            status = "success"
        finally:
            metrics.record_operation(operation.value, status=status, duration_seconds=time.monotonic() - started)

    def _on_retry(self, operation: str, on_retry: Callable[[int, int], None] | None = None):
        def _hook(attempt: int, max_attempts: int) -> None:
            metrics.record_retry(operation)
            if on_retry is not None:
                on_retry(attempt, max_attempts)

        return _hook

    def fetch_zones(self, *, on_retry: Callable[[int, int], None] | None = None) -> list[ProviderZone]:
        return call_with_retry(
            self.client.fetch_zones,
            policy=self.policy,
            on_retry=self._on_retry("fetch_zones", on_retry),
            sleep=self.sleep,
            random_fn=self.random_fn,
            operation="fetch_zones",
        )

    def _set_batch_status(self, batch_id: str, status: NavioBatchStatus, *, error: str | None = None) -> None:
        batch = self.session.get(NavioImportBatch, batch_id)
        if batch is None:
            return
        batch.status = status
        if error is not None:
            batch.error_summary = error[:2000]
        self.session.commit()

    def _queue_counts(self, batch_id: str) -> tuple[int, int]:
        rows = dict(
            self.session.query(ImportQueueEntry.status, func.count(ImportQueueEntry.id))
            .filter(ImportQueueEntry.batch_id == batch_id)
            .group_by(ImportQueueEntry.status)
            .all()
        )
        completed = rows.get(ImportQueueStatus.COMPLETED, 0)
        return completed, sum(rows.values()) - completed

    # ------------------------------------------------------------------
    # delta
    # ------------------------------------------------------------------

    def delta_check(self, *, user_id: str | None = None) -> dict[str, Any]:
        with self._tracked(OperationType.DELTA_CHECK, user_id=user_id) as details:
            delta = compute_delta(self.fetch_zones(), self.snapshots.load())
            details.update(
                {
                    "summary": delta.summary(),
                    "hasChanges": delta.has_changes,
                    "isFirstImport": delta.is_first_import,
                    "affectedCities": delta.affected_cities,
                }
            )
        metrics.record_delta(delta.summary())
        return delta.as_dict()

    # ------------------------------------------------------------------
    # staging
    # ------------------------------------------------------------------

    def initialize(
        self,
        batch_id: str | None = None,
        *,
        only_affected: bool = False,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        batch_id = batch_id or str(uuid.uuid4())
        with self._tracked(
            OperationType.AI_IMPORT,
            batch_id=batch_id,
            user_id=user_id,
            details={"stage": "initialize", "onlyAffected": only_affected},
        ) as details:
            result = self._initialize(batch_id, only_affected=only_affected, user_id=user_id)
            details.update({"totalCities": result["totalCities"], "resumed": result["resumed"]})
        return result

    def _initialize(
        self,
        batch_id: str,
        *,
        only_affected: bool,
        user_id: str | None,
        fetch: Callable[[], list[ProviderZone]] | None = None,
    ) -> dict[str, Any]:
        """
        ``fetch`` defaults to the retrying ``fetch_zones``; callers that already
        retry the whole initialize pass the bare client call instead.
        """

        fetch = fetch or self.fetch_zones
        fetched: list[ProviderZone] = []

        def _fetch() -> list[ProviderZone]:
            if not fetched:
                fetched.extend(fetch())
            return fetched

        city_filter = zone_filter = None
        if only_affected and self.session.get(NavioImportBatch, batch_id) is None:
            delta = compute_delta(_fetch(), self.snapshots.load())
            if not delta.is_first_import:
                # Hint-less new zones show up under the unknown city in the delta,
                # so the zone ids decide as well as the city names.
                city_filter = delta.affected_cities
                zone_filter = delta.staging_ids
        return self.staging.initialize(
            batch_id, _fetch, city_filter=city_filter, zone_filter=zone_filter, triggered_by=user_id
        ).as_dict()

    def process_city(self, batch_id: str) -> dict[str, Any]:
        return self.staging.process_city(batch_id).as_dict()

    def finalize(self, batch_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        with self._tracked(
            OperationType.AI_IMPORT, batch_id=batch_id, user_id=user_id, details={"stage": "finalize"}
        ) as details:
            result = self.staging.finalize(batch_id, snapshot_store=self.snapshots).as_dict()
            details.update(result)
        return result

    def resolve_mapping(self, staging_area_id: int, *, district_name: str, area_name: str | None = None) -> dict:
        area = self.staging.resolve_mapping(staging_area_id, district_name=district_name, area_name=area_name)
        return {"id": area.id, "name": area.name, "status": area.status.value, "districtId": area.staging_district_id}

    def clear_batch(self, batch_id: str) -> dict[str, int]:
        return self.staging.clear_batch(batch_id)

    def run_import(
        self,
        batch_id: str | None = None,
        *,
        only_affected: bool = False,
        user_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        on_step: Callable[[Any], None] | None = None,
        on_retry: Callable[[int, int], None] | None = None,
        max_steps: int | None = None,
    ) -> dict[str, Any]:
        """Initialize (or resume) a batch, process every city, then finalize."""

        batch_id = batch_id or str(uuid.uuid4())
        with self._tracked(
            OperationType.AI_IMPORT,
            batch_id=batch_id,
            user_id=user_id,
            details={"stage": "run", "onlyAffected": only_affected},
        ) as details:
            init = call_with_retry(
                self._initialize,
                batch_id,
                only_affected=only_affected,
                user_id=user_id,
                fetch=self.client.fetch_zones,
                policy=self.policy,
                on_retry=self._on_retry("initialize", on_retry),
                sleep=self.sleep,
                random_fn=self.random_fn,
                operation="initialize",
            )
            outcome = drive_steps(
                lambda: self.staging.process_city(batch_id),
                is_done=lambda result: result.completed,
                counts=lambda: self._queue_counts(batch_id),
                policy=self.policy,
                on_retry=self._on_retry("process_city", on_retry),
                on_step=on_step,
                cancel_token=cancel_token,
                sleep=self.sleep,
                random_fn=self.random_fn,
                max_steps=max_steps,
                operation="process_city",
            )
            result = {"batchId": batch_id, "initialize": init, "loop": outcome.as_dict()}
            details.update({"totalCities": init["totalCities"], "loop": outcome.as_dict()})
            self._finish_loop("process_city", batch_id, outcome)
            if outcome.status == LoopStatus.COMPLETED:
                result["finalize"] = self.staging.finalize(batch_id, snapshot_store=self.snapshots).as_dict()
                details["staged"] = result["finalize"]["staged"]
        return result

    def _finish_loop(self, operation: str, batch_id: str, outcome: LoopOutcome) -> None:
        metrics.record_loop_outcome(operation, outcome.status.value)
        if outcome.status == LoopStatus.PAUSED:
            self._set_batch_status(
                batch_id, NavioBatchStatus.PAUSED, error=str(outcome.error) if outcome.error else None
            )
            outcome.raise_for_status()
        elif outcome.status == LoopStatus.CANCELLED:
            self._set_batch_status(batch_id, NavioBatchStatus.CANCELLED)

    # ------------------------------------------------------------------
    # approval and commit
    # ------------------------------------------------------------------

    def approve(
        self,
        city_ids: Iterable[int] | None = None,
        *,
        batch_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        ids = _coerce_ids(city_ids)
        if not ids and batch_id:
            ids = self.approval.city_ids_for_batch(batch_id, status=StagingStatus.PENDING)
        with self._tracked(
            OperationType.APPROVE, batch_id=batch_id, user_id=user_id, details={"cityIds": ids}
        ) as details:
            result = self.approval.approve(ids)
            details.update(result)
        return result

    def reject(
        self,
        city_ids: Iterable[int],
        *,
        batch_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        ids = _coerce_ids(city_ids)
        with self._tracked(
            OperationType.REJECT, batch_id=batch_id, user_id=user_id, details={"cityIds": ids}
        ) as details:
            result = self.approval.reject(ids)
            details.update(result)
        return result

    def commit_city(self, batch_id: str) -> dict[str, Any]:
        return self.commit_engine.commit_city(batch_id).as_dict()

    def run_commit(
        self,
        batch_id: str,
        *,
        user_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        on_step: Callable[[Any], None] | None = None,
        on_retry: Callable[[int, int], None] | None = None,
        max_steps: int | None = None,
    ) -> dict[str, Any]:
        """Commit every approved city of ``batch_id``; a paused loop raises ``PartialBatchFailure``."""

        with self._tracked(OperationType.COMMIT, batch_id=batch_id, user_id=user_id) as details:
            outcome = drive_steps(
                lambda: self.commit_engine.commit_city(batch_id),
                is_done=lambda result: result.completed,
                counts=lambda: (
                    self.commit_engine.committed_count(batch_id),
                    self.commit_engine.remaining(batch_id),
                ),
                policy=self.policy,
                on_retry=self._on_retry("commit_city", on_retry),
                on_step=on_step,
                cancel_token=cancel_token,
                sleep=self.sleep,
                random_fn=self.random_fn,
                max_steps=max_steps,
                operation="commit_city",
            )
            committed = [step.committed_city for step in outcome.results if step.committed_city]
            details.update({"committedCities": committed, "loop": outcome.as_dict()})
            self._finish_loop("commit_city", batch_id, outcome)
        return {"batchId": batch_id, "committedCities": committed, "loop": outcome.as_dict()}

    def commit(self, batch_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        return self.run_commit(batch_id, user_id=user_id)

    # ------------------------------------------------------------------
    # geo sync
    # ------------------------------------------------------------------

    def sync_geo(self, cursor: int | None = None, *, user_id: str | None = None) -> dict[str, Any]:
        with self._tracked(OperationType.GEO_SYNC, user_id=user_id, details={"cursor": cursor}) as details:
            result = self.geo.sync_city(self.snapshots.load(), cursor).as_dict()
            details.update(result)
        return result

    def run_geo_sync(
        self,
        *,
        user_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        on_step: Callable[[Any], None] | None = None,
        on_retry: Callable[[int, int], None] | None = None,
    ) -> dict[str, Any]:
        cursor: dict[str, Any] = {"value": None, "synced": 0}
        snapshot = self.snapshots.load()
        total = self.session.query(func.count(City.id)).filter(City.navio_city_key.isnot(None)).scalar() or 0

        def _step():
            step = self.geo.sync_city(snapshot, cursor["value"])
            cursor["value"] = step.next_cursor
            if step.synced_city:
                cursor["synced"] += 1
            return step

        with self._tracked(OperationType.GEO_SYNC, user_id=user_id, details={"stage": "run"}) as details:
            outcome = drive_steps(
                _step,
                is_done=lambda step: step.completed,
                counts=lambda: (cursor["synced"], max(0, total - cursor["synced"])),
                policy=self.policy,
                on_retry=self._on_retry("sync_geo", on_retry),
                on_step=on_step,
                cancel_token=cancel_token,
                sleep=self.sleep,
                random_fn=self.random_fn,
                operation="sync_geo",
            )
            metrics.record_loop_outcome("sync_geo", outcome.status.value)
            updated = sum(step.areas_updated for step in outcome.results)
            details.update({"areasUpdated": updated, "loop": outcome.as_dict()})
            outcome.raise_for_status()
        return {"areasUpdated": updated, "nextCursor": cursor["value"], "loop": outcome.as_dict()}

    # ------------------------------------------------------------------
    # coverage
    # ------------------------------------------------------------------

    def coverage_check(self, *, user_id: str | None = None) -> dict[str, Any]:
        with self._tracked(OperationType.COVERAGE_CHECK, user_id=user_id) as details:
            result = self.coverage.check(
                self.fetch_zones(),
                self.snapshots.load(),
                thresholds=CoverageThresholds.from_config(self.config),
                snapshot_at=self.snapshots.captured_at(),
            )
            details.update(result)
        metrics.record_coverage(result)
        return result

    def deactivate_orphans(self, *, confirm: bool = False, user_id: str | None = None) -> dict[str, Any]:
        if not confirm:
            raise ValidationError("Deactivating orphaned areas changes live delivery coverage; confirm to proceed.")
        with self._tracked(OperationType.DEACTIVATE_ORPHANS, user_id=user_id) as details:
            result = self.coverage.deactivate_orphans(self.fetch_zones(), confirm=True)
            details.update(result)
        return result

    # ------------------------------------------------------------------
    # read models
    # ------------------------------------------------------------------

    def check_delivery(self, *, lng: float, lat: float) -> dict[str, Any]:
        """Find the delivery area whose geofence covers a point."""

        rows = (
            self.session.query(Area, City.name)
            .join(City, Area.city_id == City.id)
            .filter(Area.is_delivery.is_(True), Area.geofence_json.isnot(None))
            .order_by(Area.id)
            .all()
        )
        for area, city_name in rows:
            geofence = GeoJsonGeofence.from_dict(area.geofence_json)
            if geofence is not None and geofence.contains(lng, lat):
                return {
                    "delivers": True,
                    "area": {"id": area.id, "name": area.name, "city": city_name},
                    "navioServiceAreaId": area.navio_service_area_id,
                }
        return {"delivers": False, "area": None, "navioServiceAreaId": None}

    def batch_status(self, batch_id: str) -> dict[str, Any]:
        batch = self.session.get(NavioImportBatch, batch_id)
        if batch is None:
            raise ValidationError(f"Unknown batch {batch_id}.")
        completed, remaining = self._queue_counts(batch_id)
        entries = (
            self.session.query(ImportQueueEntry)
            .filter_by(batch_id=batch_id)
            .order_by(ImportQueueEntry.id)
            .all()
        )
        return {
            "batchId": batch_id,
            "status": batch.status.value,
            "startedAt": batch.started_at.isoformat() if batch.started_at else None,
            "finishedAt": batch.finished_at.isoformat() if batch.finished_at else None,
            "queue": {"completed": completed, "remaining": remaining},
            "cities": [
                {
                    "name": entry.city_name,
                    "status": entry.status.value,
                    "zonesProcessed": entry.zones_processed,
                    "zoneCount": entry.zone_count,
                    "districtsDiscovered": entry.districts_discovered,
                    "neighborhoodsDiscovered": entry.neighborhoods_discovered,
                    "error": entry.error_message,
                }
                for entry in entries
            ],
            "staging": staging_counts(batch_id, session=self.session),
            "error": batch.error_summary,
        }

    def last_operation(self, operation_type: OperationType) -> Any:
        return self.operations.latest(operation_type, status=OperationStatus.SUCCESS)

    # ------------------------------------------------------------------
    # mode dispatch
    # ------------------------------------------------------------------

    def dispatch(self, mode: str, payload: Mapping[str, Any] | None = None, *, user_id: str | None = None) -> dict:
        """Run one pipeline ``mode``; each mode is bounded to a single unit of work."""

        payload = payload or {}
        if mode not in PIPELINE_MODES:
            raise ValidationError(f"Unknown mode '{mode}'. Expected one of: {', '.join(PIPELINE_MODES)}.")

        batch_id = payload.get("batch_id")
        if mode in {"process_city", "finalize", "commit_city", "commit"} and not batch_id:
            raise ValidationError(f"Mode '{mode}' requires batch_id.")

        if mode == "delta_check":
            return self.delta_check(user_id=user_id)
        if mode == "initialize":
            return self.initialize(
                batch_id, only_affected=_coerce_bool(payload.get("only_affected")), user_id=user_id
            )
        if mode == "process_city":
            return self.process_city(batch_id)
        if mode == "finalize":
            return self.finalize(batch_id, user_id=user_id)
        if mode == "commit_city":
            return self.commit_city(batch_id)
        if mode == "commit":
            return self.commit(batch_id, user_id=user_id)
        if mode == "sync_geo":
            cursor = payload.get("cursor")
            try:
                cursor = int(cursor) if cursor not in (None, "") else None
            except (TypeError, ValueError) as exc:
                raise ValidationError("cursor must be an integer.") from exc
            return self.sync_geo(cursor, user_id=user_id)
        if mode == "coverage_check":
            return self.coverage_check(user_id=user_id)
        return self.deactivate_orphans(confirm=_coerce_bool(payload.get("confirm")), user_id=user_id)
