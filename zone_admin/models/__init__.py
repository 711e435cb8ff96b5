# zone_admin/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .geography import Area, City, District
from .navio import (
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
    "db",
    "BaseModel",
    "Area",
    "City",
    "District",
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
