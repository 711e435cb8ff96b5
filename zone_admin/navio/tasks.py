"""
Navio Celery tasks.

Each task drives one of the resumable pipeline loops. All progress is stored
in the database, so a task killed mid-run can simply be enqueued again.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from zone_admin.models import NavioBatchStatus, NavioImportBatch, db
from zone_admin.utils.navio import get_pipeline_service

from .errors import PartialBatchFailure


@shared_task(name="navio.healthcheck", bind=True)
def navio_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by the worker health checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


def _mark_failed(batch_id: str | None, exc: BaseException) -> None:
    if not batch_id:
        return
    db.session.rollback()
    batch = db.session.get(NavioImportBatch, batch_id)
    if batch is None:
        return
    batch.status = NavioBatchStatus.FAILED
    batch.error_summary = str(exc)[:2000]
    batch.finished_at = datetime.now(timezone.utc)
    db.session.commit()


@shared_task(name="navio.pipeline.run_import", bind=True)
def run_import(
    self,
    *,
    batch_id: str,
    only_affected: bool = False,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Initialize or resume ``batch_id`` and stage every queued city."""

    service = get_pipeline_service()
    try:
        result = service.run_import(batch_id, only_affected=only_affected, user_id=user_id)
    except PartialBatchFailure as exc:
        current_app.logger.warning(
            "Navio import paused",
            extra={"navio_batch_id": batch_id, "navio_completed": exc.completed, "navio_remaining": exc.remaining},
        )
        return {"batchId": batch_id, "status": "paused", **exc.as_dict()}
    except Exception as exc:
        _mark_failed(batch_id, exc)
        current_app.logger.exception(
            "Navio import failed",
            extra={"navio_batch_id": batch_id, "navio_error": str(exc)},
        )
        raise
    current_app.logger.info(
        "Navio import task finished",
        extra={"navio_batch_id": batch_id, "navio_loop": result.get("loop")},
    )
    return result


@shared_task(name="navio.pipeline.run_commit", bind=True)
def run_commit(self, *, batch_id: str, user_id: str | None = None) -> dict[str, Any]:
    """Commit every approved city of ``batch_id``."""

    service = get_pipeline_service()
    try:
        result = service.run_commit(batch_id, user_id=user_id)
    except PartialBatchFailure as exc:
        current_app.logger.warning(
            "Navio commit paused",
            extra={"navio_batch_id": batch_id, "navio_completed": exc.completed, "navio_remaining": exc.remaining},
        )
        return {"batchId": batch_id, "status": "paused", **exc.as_dict()}
    except Exception as exc:
        _mark_failed(batch_id, exc)
        current_app.logger.exception(
            "Navio commit failed",
            extra={"navio_batch_id": batch_id, "navio_error": str(exc)},
        )
        raise
    return result


@shared_task(name="navio.pipeline.run_geo_sync", bind=True)
def run_geo_sync(self, *, user_id: str | None = None) -> dict[str, Any]:
    service = get_pipeline_service()
    try:
        return service.run_geo_sync(user_id=user_id)
    except PartialBatchFailure as exc:
        return {"status": "paused", **exc.as_dict()}
