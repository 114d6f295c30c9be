"""
Sync engine models: runs, staged raw records, and the conflict review queue.
"""

from .schema import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    TOTAL_KEYS,
    MergeConflict,
    MergeConflictStatus,
    RawRecord,
    RawRecordStatus,
    SyncRun,
    SyncRunStatus,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "TOTAL_KEYS",
    "MergeConflict",
    "MergeConflictStatus",
    "RawRecord",
    "RawRecordStatus",
    "SyncRun",
    "SyncRunStatus",
]
