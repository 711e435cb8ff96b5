"""
SQLAlchemy models for the Navio ingestion pipeline.

The snapshot mirrors the provider's last-known zone list, the staging tables
hold the proposed City/District/Area hierarchy for a batch until it is
approved and committed, and the queue/operation-log tables make every step
of the pipeline resumable and auditable.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NavioBatchStatus(str, enum.Enum):
    """Lifecycle states for a Navio import batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    STAGED = "staged"
    COMMITTING = "committing"
    COMMITTED = "committed"
    PAUSED = "paused"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StagingStatus(str, enum.Enum):
    """Review states shared by staged cities, districts and areas."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMMITTED = "committed"
    NEEDS_MAPPING = "needs_mapping"


class ImportQueueStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class OperationType(str, enum.Enum):
    DELTA_CHECK = "delta_check"
    AI_IMPORT = "ai_import"
    GEO_SYNC = "geo_sync"
    COMMIT = "commit"
    APPROVE = "approve"
    REJECT = "reject"
    COVERAGE_CHECK = "coverage_check"
    DEACTIVATE_ORPHANS = "deactivate_orphans"


class OperationStatus(str, enum.Enum):
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"


class NavioSnapshot(BaseModel):
    """Last-known provider state for one zone."""

    __tablename__ = "navio_snapshot"

    id: Mapped[int] = mapped_column(primary_key=True)
    navio_service_area_id: Mapped[int] = mapped_column(db.Integer, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    display_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    city_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True, index=True)
    country_code: Mapped[str | None] = mapped_column(db.String(2), nullable=True)
    geofence_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    geofence_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    snapshot_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    last_seen_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<NavioSnapshot zone={self.navio_service_area_id} name={self.name!r}>"


class NavioImportBatch(BaseModel):
    """Metadata describing one ingestion batch, from initialize to commit."""

    __tablename__ = "navio_import_batches"

    batch_id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    status: Mapped[NavioBatchStatus] = mapped_column(
        Enum(NavioBatchStatus, name="navio_batch_status_enum"),
        nullable=False,
        default=NavioBatchStatus.PENDING,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    zones_json: Mapped[list | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Full live zone payload captured at initialize; replaces the snapshot at finalize.",
    )
    city_filter_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<NavioImportBatch {self.batch_id} status={self.status}>"


class ImportQueueEntry(BaseModel):
    """Per-city unit of work for the staging builder."""

    __tablename__ = "navio_import_queue"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(
        ForeignKey("navio_import_batches.batch_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    city_name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    country_code: Mapped[str] = mapped_column(db.String(2), nullable=False, default="NO")
    status: Mapped[ImportQueueStatus] = mapped_column(
        Enum(ImportQueueStatus, name="navio_queue_status_enum"),
        nullable=False,
        default=ImportQueueStatus.PENDING,
        index=True,
    )
    navio_areas: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    zones_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    districts_discovered: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    neighborhoods_discovered: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    discovered_hierarchy: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_progress_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("batch_id", "city_name", name="uq_navio_queue_batch_city"),
        Index("idx_navio_queue_batch_status", "batch_id", "status"),
    )

    @property
    def zone_count(self) -> int:
        return len(self.navio_areas or [])


class StagingCity(BaseModel):
    __tablename__ = "navio_staging_cities"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(
        ForeignKey("navio_import_batches.batch_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    country_code: Mapped[str] = mapped_column(db.String(2), nullable=False, default="NO")
    area_names: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    status: Mapped[StagingStatus] = mapped_column(
        Enum(StagingStatus, name="navio_staging_status_enum"),
        nullable=False,
        default=StagingStatus.PENDING,
        index=True,
    )
    committed_city_id: Mapped[int | None] = mapped_column(ForeignKey("cities.id"), nullable=True)

    __table_args__ = (UniqueConstraint("batch_id", "name", name="uq_navio_staging_city_batch_name"),)

    def __repr__(self) -> str:
        return f"<StagingCity {self.name} status={self.status}>"


class StagingDistrict(BaseModel):
    __tablename__ = "navio_staging_districts"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    staging_city_id: Mapped[int] = mapped_column(ForeignKey("navio_staging_cities.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    source: Mapped[str] = mapped_column(db.String(32), nullable=False, default="ai")
    area_names: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    status: Mapped[StagingStatus] = mapped_column(
        Enum(StagingStatus, name="navio_staging_status_enum"),
        nullable=False,
        default=StagingStatus.PENDING,
        index=True,
    )
    committed_district_id: Mapped[int | None] = mapped_column(ForeignKey("districts.id"), nullable=True)

    __table_args__ = (
        UniqueConstraint("staging_city_id", "name", name="uq_navio_staging_district_city_name"),
    )

    def __repr__(self) -> str:
        return f"<StagingDistrict {self.name} status={self.status}>"


class StagingArea(BaseModel):
    __tablename__ = "navio_staging_areas"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    staging_district_id: Mapped[int] = mapped_column(
        ForeignKey("navio_staging_districts.id"), nullable=False, index=True
    )
    navio_service_area_id: Mapped[str] = mapped_column(db.String(64), nullable=False)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    original_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    source: Mapped[str] = mapped_column(db.String(32), nullable=False, default="navio")
    status: Mapped[StagingStatus] = mapped_column(
        Enum(StagingStatus, name="navio_staging_status_enum"),
        nullable=False,
        default=StagingStatus.PENDING,
        index=True,
    )
    confidence: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    mapping_reason: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    geofence_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    committed_area_id: Mapped[int | None] = mapped_column(ForeignKey("areas.id"), nullable=True)

    __table_args__ = (
        UniqueConstraint("batch_id", "navio_service_area_id", name="uq_navio_staging_area_batch_zone"),
    )

    def __repr__(self) -> str:
        return f"<StagingArea {self.name} zone={self.navio_service_area_id} status={self.status}>"


class OperationLogEntry(BaseModel):
    """Append-only audit record for pipeline operations."""

    __tablename__ = "navio_operation_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    operation_type: Mapped[OperationType] = mapped_column(
        Enum(OperationType, name="navio_operation_type_enum"),
        nullable=False,
        index=True,
    )
    status: Mapped[OperationStatus] = mapped_column(
        Enum(OperationStatus, name="navio_operation_status_enum"),
        nullable=False,
        default=OperationStatus.STARTED,
    )
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    __table_args__ = (Index("idx_navio_operation_type_started", "operation_type", "started_at"),)
