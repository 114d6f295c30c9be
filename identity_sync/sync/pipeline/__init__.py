"""Sync pipeline helpers: fetch, map, resolve, checkpoint, and chain."""

from __future__ import annotations

from .chain import CeleryDispatcher, ChainOutcome, ContinuationScheduler, InlineDispatcher
from .checkpoint import ProviderCursor, RowIdCursor, RunCheckpoint, cursor_from_dict
from .coordinator import NO_WORK_STATUS, SyncCoordinator, SyncRequest, SyncResponse, source_tag
from .fetchers import (
    FetchResult,
    PayPalFetcher,
    ProviderPageFetcher,
    StagedRecordFetcher,
    StripeFetcher,
    build_fetcher,
    compute_checksum,
)
from .mappers import PayloadMappingError, map_raw_record
from .merge_policy import FieldDecision, MergePolicyResult, apply_merge_policy, merge_field
from .normalize import normalize_email, normalize_phone, normalize_tags
from .resolver import ContactSignal, IdentityResolver, MergeResult, TransactionSignal
from .run_service import RunFilters, RunSummary, SyncRunService

__all__ = [
    "CeleryDispatcher",
    "ChainOutcome",
    "ContactSignal",
    "ContinuationScheduler",
    "FetchResult",
    "FieldDecision",
    "IdentityResolver",
    "InlineDispatcher",
    "MergePolicyResult",
    "MergeResult",
    "NO_WORK_STATUS",
    "PayPalFetcher",
    "PayloadMappingError",
    "ProviderCursor",
    "ProviderPageFetcher",
    "RowIdCursor",
    "RunCheckpoint",
    "RunFilters",
    "RunSummary",
    "StagedRecordFetcher",
    "StripeFetcher",
    "SyncCoordinator",
    "SyncRequest",
    "SyncResponse",
    "SyncRunService",
    "TransactionSignal",
    "apply_merge_policy",
    "build_fetcher",
    "compute_checksum",
    "cursor_from_dict",
    "map_raw_record",
    "merge_field",
    "normalize_email",
    "normalize_phone",
    "normalize_tags",
    "source_tag",
]
