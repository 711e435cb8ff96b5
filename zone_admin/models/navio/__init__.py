"""
Navio pipeline SQLAlchemy models.

Snapshot, batches, per-city processing queue, the three-level staging
hierarchy and the operation log.
"""

from .schema import (
    ImportQueueEntry,
    ImportQueueStatus,
    NavioBatchStatus,
    NavioImportBatch,
    NavioSnapshot,
    OperationLogEntry,
    OperationStatus,
    OperationType,
    StagingArea,
    StagingCity,
    StagingDistrict,
    StagingStatus,
)

__all__ = [
    "ImportQueueEntry",
    "ImportQueueStatus",
    "NavioBatchStatus",
    "NavioImportBatch",
    "NavioSnapshot",
    "OperationLogEntry",
    "OperationStatus",
    "OperationType",
    "StagingArea",
    "StagingCity",
    "StagingDistrict",
    "StagingStatus",
]
