# identity_sync/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .client import DEFAULT_LIFECYCLE_STAGE, PAID_TRANSACTION_STATUS, Client, ClientIdentity, Transaction
from .sync import (
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
    "db",
    "BaseModel",
    "Client",
    "ClientIdentity",
    "Transaction",
    "DEFAULT_LIFECYCLE_STAGE",
    "PAID_TRANSACTION_STATUS",
    "SyncRun",
    "SyncRunStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "TOTAL_KEYS",
    "RawRecord",
    "RawRecordStatus",
    "MergeConflict",
    "MergeConflictStatus",
]
