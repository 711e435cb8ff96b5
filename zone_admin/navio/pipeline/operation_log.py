"""
Append-only operation log for pipeline actions.

Entries are written in their own commits so a failed operation still leaves
a ``failed`` record behind after the caller's work has been rolled back.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping

from sqlalchemy.orm import Session

from zone_admin.models import db
from zone_admin.models.navio import OperationLogEntry, OperationStatus, OperationType

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationLogService:
    """Record and query pipeline operations."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def start(
        self,
        operation_type: OperationType | str,
        *,
        batch_id: str | None = None,
        user_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> OperationLogEntry:
        entry = OperationLogEntry(
            operation_type=OperationType(operation_type),
            status=OperationStatus.STARTED,
            started_at=_utcnow(),
            batch_id=batch_id,
            user_id=user_id,
            details=dict(details or {}),
        )
        self.session.add(entry)
        self.session.commit()
        return entry

    def finish(
        self,
        entry_id: int,
        status: OperationStatus,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> OperationLogEntry | None:
        entry = self.session.get(OperationLogEntry, entry_id)
        if entry is None:
            return None
        merged = dict(entry.details or {})
        merged.update(details or {})
        entry.details = merged
        entry.status = status
        entry.completed_at = _utcnow()
        self.session.commit()
        return entry

    @contextmanager
    def track(
        self,
        operation_type: OperationType | str,
        *,
        batch_id: str | None = None,
        user_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Wrap an operation in started/success/failed records.

        Yields a dict the caller fills with result details; it is merged into
        the entry on success. On failure the session is rolled back, the entry
        is marked failed with the error, and the exception propagates.
        """

        entry_id = self.start(operation_type, batch_id=batch_id, user_id=user_id, details=details).id
        result_details: dict[str, Any] = {}
        try:
            yield result_details
        except Exception as exc:
            self.session.rollback()
            failure = dict(result_details)
            failure.update({"error": str(exc), "error_type": type(exc).__name__})
            for attr in ("completed", "remaining"):
                if getattr(exc, attr, None) is not None:
                    failure[attr] = getattr(exc, attr)
            self.finish(entry_id, OperationStatus.FAILED, details=failure)
            raise
        self.finish(entry_id, OperationStatus.SUCCESS, details=result_details)

    def list_recent(
        self,
        *,
        limit: int = DEFAULT_LIST_LIMIT,
        operation_type: OperationType | str | None = None,
        batch_id: str | None = None,
    ) -> list[OperationLogEntry]:
        query = self.session.query(OperationLogEntry)
        if operation_type:
            query = query.filter(OperationLogEntry.operation_type == OperationType(operation_type))
        if batch_id:
            query = query.filter(OperationLogEntry.batch_id == batch_id)
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        return query.order_by(OperationLogEntry.started_at.desc(), OperationLogEntry.id.desc()).limit(limit).all()

    def latest(self, operation_type: OperationType | str, *, status: OperationStatus | None = None):
        query = self.session.query(OperationLogEntry).filter(
            OperationLogEntry.operation_type == OperationType(operation_type)
        )
        if status is not None:
            query = query.filter(OperationLogEntry.status == status)
        return query.order_by(OperationLogEntry.started_at.desc(), OperationLogEntry.id.desc()).first()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def serialize_operation(entry: OperationLogEntry) -> dict[str, Any]:
    duration = None
    if entry.started_at and entry.completed_at:
        duration = (_as_utc(entry.completed_at) - _as_utc(entry.started_at)).total_seconds()
    return {
        "id": entry.id,
        "operation_type": entry.operation_type.value,
        "status": entry.status.value,
        "batch_id": entry.batch_id,
        "user_id": entry.user_id,
        "started_at": entry.started_at.isoformat() if entry.started_at else None,
        "completed_at": entry.completed_at.isoformat() if entry.completed_at else None,
        "duration_seconds": duration,
        "details": entry.details or {},
    }
