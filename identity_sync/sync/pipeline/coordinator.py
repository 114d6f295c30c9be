"""
Sync run orchestration.

One ``trigger`` call performs exactly one bounded batch per requested source,
commits totals and the checkpoint after every source batch, then either
completes the run or schedules its continuation. Invocations hold no state
between calls; everything needed to resume lives on the ``SyncRun`` row.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy.orm import Session

from config.merge_policy import MergePolicyProfile, load_profile
from identity_sync.models import (
    ACTIVE_STATUSES,
    TOTAL_KEYS,
    RawRecord,
    RawRecordStatus,
    SyncRun,
    SyncRunStatus,
    db,
)

from ..errors import SourceFetchError, SyncRequestError, SyncRunNotFound, UnknownSourceError
from ..metrics import record_batch, record_merge, record_run_status
from .chain import CeleryDispatcher, ContinuationScheduler
from .checkpoint import RunCheckpoint
from .fetchers import SourceFetcher, build_fetcher
from .mappers import map_raw_record
from .resolver import IdentityResolver, MergeResult

logger = logging.getLogger(__name__)

NO_WORK_STATUS = "no_work"
DRY_RUN_STATUS = "dry_run"

_TRUE_TOKENS = {"1", "true", "yes", "on"}
_FALSE_TOKENS = {"0", "false", "no", "off", ""}

_ACTION_TOTAL_KEYS = {
    "inserted": "inserted",
    "updated": "updated",
    "conflict": "conflicts",
    "skipped": "skipped",
}
_ACTION_RECORD_STATUS = {
    "inserted": RawRecordStatus.MERGED,
    "updated": RawRecordStatus.MERGED,
    "conflict": RawRecordStatus.CONFLICT,
    "skipped": RawRecordStatus.SKIPPED,
}

Notifier = Callable[[MergeResult, str, int], None]
FetcherFactory = Callable[[str, "SyncRequest"], SourceFetcher]


def source_tag(sources: Sequence[str]) -> str:
    """Return the run tag for a set of sources (``a+b`` for composite runs)."""

    unique = sorted(set(sources))
    if len(unique) == 1:
        return unique[0]
    return "+".join(unique)


def _coerce_int(value: Any, *, field_name: str) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise SyncRequestError(f"{field_name} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SyncRequestError(f"{field_name} must be an integer.") from None


def _coerce_flag(value: Any, *, field_name: str) -> bool:
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    raise SyncRequestError(f"{field_name} must be a boolean.")


@dataclass(frozen=True)
class SyncRequest:
    sources: tuple[str, ...]
    batch_size: int
    sync_run_id: int | None = None
    import_id: str | None = None
    force_cancel: bool = False
    dry_run: bool = False

    @property
    def tag(self) -> str:
        return source_tag(self.sources)

    @classmethod
    def coerce(
        cls,
        payload: Mapping[str, Any] | None,
        *,
        allowed_sources: Iterable[str],
        default_batch_size: int = 50,
        max_batch_size: int = 500,
    ) -> "SyncRequest":
        """
        Validate a trigger payload. Accepts camelCase (HTTP) and snake_case keys.
        """

        payload = payload or {}
        allowed = tuple(allowed_sources)

        raw_sources = payload.get("sources")
        if raw_sources is None:
            raw_sources = payload.get("source")
        if isinstance(raw_sources, str):
            raw_sources = [item for item in raw_sources.split(",")]
        if raw_sources is not None and not isinstance(raw_sources, (list, tuple)):
            raise SyncRequestError("sources must be a list of source names.")
        sources: list[str] = []
        for item in raw_sources or ():
            name = str(item).strip().lower()
            if not name or name in sources:
                continue
            if name not in allowed:
                raise UnknownSourceError(
                    f"Unknown or disabled source '{name}'. Enabled sources: {', '.join(allowed) or 'none'}."
                )
            sources.append(name)

        sync_run_id = _coerce_int(
            payload.get("syncRunId", payload.get("sync_run_id")),
            field_name="syncRunId",
        )
        force_cancel = _coerce_flag(payload.get("forceCancel", payload.get("force_cancel")), field_name="forceCancel")
        dry_run = _coerce_flag(payload.get("dryRun", payload.get("dry_run")), field_name="dryRun")
        if not sources and sync_run_id is None:
            raise SyncRequestError("Provide at least one source or a syncRunId.")
        if dry_run and not sources:
            raise SyncRequestError("A dry run needs explicit sources.")

        batch_size = _coerce_int(payload.get("batchSize", payload.get("batch_size")), field_name="batchSize")
        if batch_size is None:
            batch_size = default_batch_size
        if batch_size < 1:
            raise SyncRequestError("batchSize must be a positive integer.")
        batch_size = min(batch_size, max_batch_size)

        import_id = payload.get("importId", payload.get("import_id"))
        return cls(
            sources=tuple(sources),
            batch_size=batch_size,
            sync_run_id=sync_run_id,
            import_id=str(import_id) if import_id not in (None, "") else None,
            force_cancel=force_cancel,
            dry_run=dry_run,
        )


@dataclass
class SyncResponse:
    ok: bool
    status: str
    sync_run_id: int | None = None
    has_more: bool = False
    pending: dict[str, int] = field(default_factory=dict)
    batch: dict[str, int] = field(default_factory=dict)
    totals: dict[str, int] = field(default_factory=dict)
    progress_pct: float = 0.0
    chunk: int = 0
    duration_ms: int = 0
    error: str | None = None
    cancelled: int | None = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.cancelled is not None:
            return {"ok": self.ok, "status": self.status, "cancelled": self.cancelled}
        payload: dict[str, Any] = {
            "ok": self.ok,
            "status": self.status,
            "syncRunId": self.sync_run_id,
            "hasMore": self.has_more,
            "pending": {"perSource": dict(self.pending), "total": sum(self.pending.values())},
            "batch": dict(self.batch),
            "totals": dict(self.totals),
            "progressPct": self.progress_pct,
            "chunk": self.chunk,
            "duration_ms": self.duration_ms,
        }
        if self.dry_run:
            payload["dryRun"] = True
        if self.error:
            payload["error"] = self.error
        return payload


def _empty_batch() -> dict[str, int]:
    return {"processed": 0, "inserted": 0, "updated": 0, "conflicts": 0, "skipped": 0, "errors": 0}


def _aware(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _parse_heartbeat(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return _aware(datetime.fromisoformat(value))
    except ValueError:
        return None


def _progress(run: SyncRun, remaining: int) -> float:
    if run.status == SyncRunStatus.COMPLETED:
        return 100.0
    fetched = int(run.total_fetched or 0)
    denominator = fetched + max(remaining, 0)
    if denominator <= 0:
        return 0.0
    return round(100.0 * fetched / denominator, 1)


class SyncCoordinator:
    """Drive sync runs through their state machine one invocation at a time."""

    def __init__(
        self,
        *,
        session: Session | None = None,
        config: Mapping[str, Any] | None = None,
        scheduler: ContinuationScheduler | None = None,
        fetcher_factory: FetcherFactory | None = None,
        profile: MergePolicyProfile | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.config: Mapping[str, Any] = config if config is not None else current_app.config
        self.scheduler = scheduler or ContinuationScheduler.from_config(self.config, CeleryDispatcher())
        self.fetcher_factory = fetcher_factory or self._default_fetcher
        self.profile = profile or load_profile(self.config)
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def trigger(self, request: SyncRequest) -> SyncResponse:
        started = time.monotonic()

        if request.force_cancel:
            cancelled = self.cancel(run_id=request.sync_run_id, sources=request.sources)
            return SyncResponse(ok=True, status=SyncRunStatus.CANCELLED.value, cancelled=cancelled)
        if request.dry_run:
            return self._dry_run(request, started)

        self.expire_stale_runs()
        run = self._locate_run(request)
        if run is not None and run.is_terminal:
            return self._snapshot(run, started)

        sources = request.sources
        if run is not None and not sources:
            sources = tuple((run.metadata_json or {}).get("sources") or run.source.split("+"))

        if run is None:
            run, pending = self._create_run(request)
            if run.status == SyncRunStatus.COMPLETED:
                return SyncResponse(
                    ok=True,
                    status=NO_WORK_STATUS,
                    sync_run_id=run.id,
                    has_more=False,
                    pending=pending,
                    batch=_empty_batch(),
                    totals=run.totals(),
                    progress_pct=100.0,
                    duration_ms=self._elapsed_ms(started),
                )
        else:
            self._resume(run)

        run_id = run.id
        try:
            return self._step(run, sources, request, started)
        except Exception as exc:
            self.session.rollback()
            logger.exception(
                "Sync run %s failed unexpectedly",
                run_id,
                extra={"sync_run_id": run_id, "sync_sources": list(sources)},
            )
            return self._fail(run_id, f"Unexpected error: {exc}", started)

    def cancel(self, *, run_id: int | None = None, sources: Sequence[str] = ()) -> int:
        """Move matching active runs to ``cancelled``; return how many changed."""

        if run_id is not None:
            run = self.session.get(SyncRun, run_id)
            if run is None:
                raise SyncRunNotFound(f"Sync run {run_id} not found.")
            runs = [run] if run.is_active else []
        elif sources:
            tags = {source_tag(sources), *sources}
            runs = (
                self.session.query(SyncRun)
                .filter(SyncRun.source.in_(tags), SyncRun.status.in_(ACTIVE_STATUSES))
                .all()
            )
        else:
            raise SyncRequestError("Provide a syncRunId or sources to cancel.")

        for run in runs:
            checkpoint = RunCheckpoint.from_dict(run.checkpoint)
            checkpoint.can_resume = False
            run.checkpoint = checkpoint.to_dict()
            run.mark_finished(SyncRunStatus.CANCELLED, error_message="Cancelled by operator.")
            record_run_status(run.source, SyncRunStatus.CANCELLED.value)
            logger.info("Sync run cancelled", extra={"sync_run_id": run.id, "sync_source": run.source})
        self.session.commit()
        return len(runs)

    def expire_stale_runs(self, max_idle_seconds: float | None = None) -> int:
        """
        Pause running or continuing runs whose heartbeat is older than
        ``SYNC_STALE_RUN_SECONDS``; return how many changed.

        Expired runs keep their checkpoint and can be resumed by the next
        trigger. A limit of zero disables the sweep.
        """
        if max_idle_seconds is None:
            max_idle_seconds = float(self.config.get("SYNC_STALE_RUN_SECONDS", 600))
        if max_idle_seconds <= 0:
            return 0

        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=max_idle_seconds)
        runs = (
            self.session.query(SyncRun)
            .filter(SyncRun.status.in_((SyncRunStatus.RUNNING, SyncRunStatus.CONTINUING)))
            .all()
        )
        expired = 0
        for run in runs:
            checkpoint = RunCheckpoint.from_dict(run.checkpoint)
            last_seen = _parse_heartbeat(checkpoint.last_heartbeat) or _aware(run.started_at)
            if last_seen is None or last_seen > cutoff:
                continue
            idle_seconds = int((now - last_seen).total_seconds())
            checkpoint.can_resume = True
            run.checkpoint = checkpoint.to_dict()
            run.status = SyncRunStatus.PAUSED
            run.error_message = f"Stale: no heartbeat for {idle_seconds}s."
            record_run_status(run.source, SyncRunStatus.PAUSED.value)
            logger.warning(
                "Sync run paused after missing heartbeats",
                extra={"sync_run_id": run.id, "sync_source": run.source, "sync_idle_seconds": idle_seconds},
            )
            expired += 1
        if expired:
            self.session.commit()
        return expired

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _locate_run(self, request: SyncRequest) -> SyncRun | None:
        if request.sync_run_id is not None:
            run = self.session.get(SyncRun, request.sync_run_id)
            if run is None:
                raise SyncRunNotFound(f"Sync run {request.sync_run_id} not found.")
            return run
        return (
            self.session.query(SyncRun)
            .filter(SyncRun.source == request.tag, SyncRun.status.in_(ACTIVE_STATUSES))
            .order_by(SyncRun.created_at.desc(), SyncRun.id.desc())
            .first()
        )

    def _create_run(self, request: SyncRequest) -> tuple[SyncRun, dict[str, int]]:
        now = datetime.now(timezone.utc)
        checkpoint = RunCheckpoint()
        pending: dict[str, int] = {}
        for source in request.sources:
            fetcher = self.fetcher_factory(source, request)
            cursor = fetcher.initial_cursor()
            checkpoint.advance(source, cursor)
            pending[source] = fetcher.count_pending(cursor)
        total_pending = sum(pending.values())

        run = SyncRun(
            source=request.tag,
            status=SyncRunStatus.RUNNING if total_pending else SyncRunStatus.COMPLETED,
            started_at=now,
            metadata_json={
                "sources": list(request.sources),
                "batch_size": request.batch_size,
                "import_id": request.import_id,
                "initial_pending": dict(pending),
                "initial_pending_total": total_pending,
            },
        )
        if not total_pending:
            run.completed_at = now
        checkpoint.touch(now)
        run.checkpoint = checkpoint.to_dict()
        self.session.add(run)
        self.session.commit()
        record_run_status(run.source, NO_WORK_STATUS if not total_pending else run.status.value)
        logger.info(
            "Sync run created",
            extra={
                "sync_run_id": run.id,
                "sync_source": run.source,
                "sync_status": run.status.value,
                "sync_pending_total": total_pending,
            },
        )
        return run, pending

    def _resume(self, run: SyncRun) -> None:
        if run.status != SyncRunStatus.PAUSED:
            if run.status == SyncRunStatus.CONTINUING:
                run.status = SyncRunStatus.RUNNING
                self.session.commit()
            return
        checkpoint = RunCheckpoint.from_dict(run.checkpoint)
        checkpoint.can_resume = False
        run.checkpoint = checkpoint.to_dict()
        run.status = SyncRunStatus.RUNNING
        run.error_message = None
        self.session.commit()
        logger.info("Resuming paused sync run", extra={"sync_run_id": run.id, "sync_source": run.source})

    def _step(
        self,
        run: SyncRun,
        sources: Sequence[str],
        request: SyncRequest,
        started: float,
    ) -> SyncResponse:
        checkpoint = RunCheckpoint.from_dict(run.checkpoint)
        checkpoint.chunk += 1
        batch = _empty_batch()
        resolver = IdentityResolver(self.session, profile=self.profile, run_id=run.id)
        import_id = request.import_id or (run.metadata_json or {}).get("import_id")
        effective_request = SyncRequest(
            sources=tuple(sources),
            batch_size=request.batch_size,
            sync_run_id=run.id,
            import_id=import_id,
        )
        fetchers = {source: self.fetcher_factory(source, effective_request) for source in sources}

        for source in sources:
            self.session.refresh(run)
            if run.status == SyncRunStatus.CANCELLED:
                return self._cancelled(run, batch, checkpoint, started)

            fetcher = fetchers[source]
            cursor = checkpoint.cursor_for(source) or fetcher.initial_cursor()
            batch_started = time.monotonic()
            try:
                result = fetcher.fetch(cursor, request.batch_size)
            except SourceFetchError as exc:
                self.session.rollback()
                record_batch(source, "fetch_error", time.monotonic() - batch_started)
                logger.error(
                    "Source fetch failed for %s",
                    source,
                    extra={"sync_run_id": run.id, "sync_source": source, "sync_error": str(exc)},
                )
                return self._fail(run.id, str(exc), started, batch=batch)

            counts, merged = self._process_records(run, resolver, source, result.records)
            for key, value in counts.items():
                batch[key] = batch.get(key, 0) + value
            batch["processed"] += len(result.records)

            checkpoint.advance(source, result.cursor)
            checkpoint.error_count += counts.get("errors", 0)
            run.add_totals(counts)
            checkpoint.totals = run.totals()
            checkpoint.touch()
            run.checkpoint = checkpoint.to_dict()
            self.session.commit()
            record_batch(source, "ok", time.monotonic() - batch_started)
            logger.info(
                "Processed %s batch",
                source,
                extra={
                    "sync_run_id": run.id,
                    "sync_source": source,
                    "sync_chunk": checkpoint.chunk,
                    "sync_batch_counts": counts,
                    "sync_pages_fetched": result.pages_fetched,
                },
            )
            self._notify(merged, source, run.id)

        pending = {
            source: fetchers[source].count_pending(checkpoint.cursor_for(source)) for source in sources
        }
        remaining = sum(pending.values())

        self.session.refresh(run)
        if run.status == SyncRunStatus.CANCELLED:
            return self._cancelled(run, batch, checkpoint, started)

        if remaining > 0:
            return self._continue(run, sources, effective_request, checkpoint, pending, batch, started)

        checkpoint.can_resume = False
        run.checkpoint = checkpoint.to_dict()
        run.mark_finished(SyncRunStatus.COMPLETED)
        self.session.commit()
        record_run_status(run.source, SyncRunStatus.COMPLETED.value)
        logger.info(
            "Sync run completed",
            extra={"sync_run_id": run.id, "sync_source": run.source, "sync_totals": run.totals()},
        )
        return self._response(run, checkpoint, pending, batch, started, has_more=False)

    def _continue(
        self,
        run: SyncRun,
        sources: Sequence[str],
        request: SyncRequest,
        checkpoint: RunCheckpoint,
        pending: dict[str, int],
        batch: dict[str, int],
        started: float,
    ) -> SyncResponse:
        run.status = SyncRunStatus.CONTINUING
        run.checkpoint = checkpoint.to_dict()
        self.session.commit()

        outcome = self.scheduler.schedule(
            {
                "sync_run_id": run.id,
                "sources": list(sources),
                "batch_size": request.batch_size,
                "import_id": request.import_id,
            }
        )
        if not outcome.scheduled:
            checkpoint.can_resume = True
            run.checkpoint = checkpoint.to_dict()
            run.status = SyncRunStatus.PAUSED
            run.error_message = (
                f"Continuation scheduling failed after {outcome.attempts} attempt(s): {outcome.error or 'unknown error'}"
            )
            self.session.commit()
            record_run_status(run.source, SyncRunStatus.PAUSED.value)
            logger.warning(
                "Sync run paused; continuation could not be scheduled",
                extra={"sync_run_id": run.id, "sync_source": run.source, "sync_error": outcome.error},
            )
        else:
            record_run_status(run.source, SyncRunStatus.CONTINUING.value)
        return self._response(run, checkpoint, pending, batch, started, has_more=True)

    def _dry_run(self, request: SyncRequest, started: float) -> SyncResponse:
        """
        Preview one batch per source without creating a run.

        Fetching, staging and merging all happen inside a savepoint that is
        rolled back, so raw records stay pending and no client changes.
        """
        batch = _empty_batch()
        pending: dict[str, int] = {}
        error: str | None = None
        has_more = False
        resolver = IdentityResolver(self.session, profile=self.profile)
        outer = self.session.begin_nested()
        try:
            for source in request.sources:
                fetcher = self.fetcher_factory(source, request)
                cursor = fetcher.initial_cursor()
                pending[source] = fetcher.count_pending(cursor)
                try:
                    result = fetcher.fetch(cursor, request.batch_size)
                except SourceFetchError as exc:
                    error = str(exc)
                    logger.error(
                        "Dry run fetch failed for %s",
                        source,
                        extra={"sync_source": source, "sync_error": error},
                    )
                    break
                has_more = has_more or result.has_more
                batch["processed"] += len(result.records)
                for record in result.records:
                    try:
                        merged = resolver.merge(map_raw_record(record), raw_record_id=record.id, dry_run=True)
                    except Exception as exc:
                        batch["errors"] += 1
                        logger.warning(
                            "Dry run could not merge raw record %s: %s",
                            record.id,
                            exc,
                            extra={"sync_source": source, "sync_raw_record_id": record.id},
                        )
                        continue
                    batch[_ACTION_TOTAL_KEYS[merged.action]] += 1
        finally:
            outer.rollback()
            self.session.commit()

        logger.info(
            "Dry run finished",
            extra={"sync_sources": list(request.sources), "sync_batch_counts": batch, "sync_error": error},
        )
        return SyncResponse(
            ok=error is None,
            status=DRY_RUN_STATUS,
            has_more=has_more,
            pending=pending,
            batch=batch,
            duration_ms=self._elapsed_ms(started),
            error=error,
            dry_run=True,
        )

    def _process_records(
        self,
        run: SyncRun,
        resolver: IdentityResolver,
        source: str,
        records: Sequence[RawRecord],
    ) -> tuple[dict[str, int], list[MergeResult]]:
        counts = {key: 0 for key in TOTAL_KEYS}
        counts["fetched"] = len(records)
        merged: list[MergeResult] = []
        for record in records:
            try:
                with self.session.begin_nested():
                    signal = map_raw_record(record)
                    result = resolver.merge(signal, raw_record_id=record.id)
                    record.finalize(
                        _ACTION_RECORD_STATUS[result.action],
                        run_id=run.id,
                        client_id=result.client_id,
                    )
            except Exception as exc:
                counts["errors"] += 1
                record.finalize(RawRecordStatus.ERROR, run_id=run.id, error_message=str(exc)[:1000])
                record_merge(source, "error")
                logger.warning(
                    "Raw record %s failed to merge: %s",
                    record.id,
                    exc,
                    extra={"sync_run_id": run.id, "sync_source": source, "sync_raw_record_id": record.id},
                )
                continue
            counts[_ACTION_TOTAL_KEYS[result.action]] += 1
            record_merge(source, result.action)
            if result.action in ("inserted", "updated"):
                merged.append(result)
        self.session.flush()
        return counts, merged

    def _notify(self, results: Sequence[MergeResult], source: str, run_id: int) -> None:
        if self.notifier is None:
            return
        for result in results:
            try:
                self.notifier(result, source, run_id)
            except Exception:
                logger.warning(
                    "Merge notification failed for client %s",
                    result.client_id,
                    exc_info=True,
                    extra={"sync_run_id": run_id, "sync_source": source, "sync_client_id": result.client_id},
                )

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _fail(
        self,
        run_id: int,
        message: str,
        started: float,
        *,
        batch: dict[str, int] | None = None,
    ) -> SyncResponse:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise SyncRunNotFound(f"Sync run {run_id} not found.")
        run.mark_finished(SyncRunStatus.FAILED, error_message=message)
        self.session.commit()
        record_run_status(run.source, SyncRunStatus.FAILED.value)
        checkpoint = RunCheckpoint.from_dict(run.checkpoint)
        response = self._response(run, checkpoint, {}, batch or _empty_batch(), started, has_more=False)
        response.ok = False
        response.error = message
        return response

    def _cancelled(
        self,
        run: SyncRun,
        batch: dict[str, int],
        checkpoint: RunCheckpoint,
        started: float,
    ) -> SyncResponse:
        logger.info("Sync run observed cancellation", extra={"sync_run_id": run.id, "sync_source": run.source})
        return self._response(run, checkpoint, {}, batch, started, has_more=False)

    def _snapshot(self, run: SyncRun, started: float) -> SyncResponse:
        checkpoint = RunCheckpoint.from_dict(run.checkpoint)
        response = self._response(run, checkpoint, {}, _empty_batch(), started, has_more=False)
        if run.status == SyncRunStatus.FAILED:
            response.ok = False
            response.error = run.error_message
        return response

    def _response(
        self,
        run: SyncRun,
        checkpoint: RunCheckpoint,
        pending: dict[str, int],
        batch: dict[str, int],
        started: float,
        *,
        has_more: bool,
    ) -> SyncResponse:
        return SyncResponse(
            ok=True,
            status=run.status.value,
            sync_run_id=run.id,
            has_more=has_more,
            pending=dict(pending),
            batch=dict(batch),
            totals=run.totals(),
            progress_pct=_progress(run, sum(pending.values())),
            chunk=checkpoint.chunk,
            duration_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _default_fetcher(self, source: str, request: SyncRequest) -> SourceFetcher:
        return build_fetcher(source, self.config, session=self.session, import_id=request.import_id)


__all__ = [
    "DRY_RUN_STATUS",
    "NO_WORK_STATUS",
    "SyncCoordinator",
    "SyncRequest",
    "SyncResponse",
    "source_tag",
]
