"""Prometheus metrics helpers for the sync engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_batch_counter = Counter(
    "sync_batches_total",
    "Number of source batches processed by source and outcome.",
    ["source", "outcome"],
)
_batch_duration = Histogram(
    "sync_batch_duration_seconds",
    "Duration of one source batch (fetch, merge, commit) in seconds.",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120),
)
_merge_counter = Counter(
    "sync_merge_outcomes_total",
    "Identity merge outcomes by source and action.",
    ["source", "action"],
)
_run_status_counter = Counter(
    "sync_run_transitions_total",
    "Sync run status transitions by source tag and status.",
    ["source", "status"],
)
_chain_dispatch_counter = Counter(
    "sync_chain_dispatch_total",
    "Continuation dispatch attempts by outcome.",
    ["outcome"],
)


def record_batch(source: str, outcome: str, duration_seconds: float) -> None:
    """Capture one source batch."""

    _batch_counter.labels(source=source, outcome=outcome).inc()
    _batch_duration.labels(source=source).observe(max(duration_seconds, 0.0))


def record_merge(source: str, action: str) -> None:
    _merge_counter.labels(source=source, action=action).inc()


def record_run_status(source: str, status: str) -> None:
    _run_status_counter.labels(source=source, status=status).inc()


def record_chain_dispatch(outcome: Literal["scheduled", "retry", "unavailable", "exhausted"]) -> None:
    """Increment the continuation dispatch counter."""

    _chain_dispatch_counter.labels(outcome=outcome).inc()
