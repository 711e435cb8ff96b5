"""
Pipeline stages: delta, staging, approval, commit, coverage and geo sync.
"""

from .approval import ApprovalService, WriteSet, plan_approval, plan_rejection
from .batch_cache import BatchCache, CachedBatch
from .commit import CommitEngine
from .coverage import CoverageAuditor, CoverageThresholds, assess_coverage
from .delta import DeltaResult, compute_delta
from .geo_sync import GeoSyncer
from .operation_log import OperationLogService, serialize_operation
from .runner import CancellationToken, LoopOutcome, LoopStatus, drive_steps
from .snapshot import SnapshotStore, SnapshotZone
from .staging import StagingBuilder

__all__ = [
    "ApprovalService",
    "BatchCache",
    "CachedBatch",
    "CancellationToken",
    "CommitEngine",
    "CoverageAuditor",
    "CoverageThresholds",
    "DeltaResult",
    "GeoSyncer",
    "LoopOutcome",
    "LoopStatus",
    "OperationLogService",
    "SnapshotStore",
    "SnapshotZone",
    "StagingBuilder",
    "WriteSet",
    "assess_coverage",
    "compute_delta",
    "drive_steps",
    "plan_approval",
    "plan_rejection",
    "serialize_operation",
]
