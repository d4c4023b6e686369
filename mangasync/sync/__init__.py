"""Sync module - Orchestration, worker pool and sync state."""

from mangasync.sync.orchestrator import OperationResult, SyncOrchestrator, tracked_changes
from mangasync.sync.pool import PoolStats, WorkerPool
from mangasync.sync.state import Operation, SyncStateTracker, sync_type_for

__all__ = [
    "Operation",
    "OperationResult",
    "PoolStats",
    "SyncOrchestrator",
    "SyncStateTracker",
    "WorkerPool",
    "sync_type_for",
    "tracked_changes",
]
