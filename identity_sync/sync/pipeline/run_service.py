"""
Read-side queries over sync runs.

``GET /sync/runs`` and ``flask sync status`` share these helpers. Filters are
validated once in :meth:`RunFilters.coerce`; everything downstream assumes a
clean ``RunFilters``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from identity_sync.models import MergeConflict, MergeConflictStatus, SyncRun, SyncRunStatus, db

from ..errors import SyncRunNotFound
from .checkpoint import RunCheckpoint

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"

SORTABLE_COLUMNS = {
    "id": SyncRun.id,
    "source": SyncRun.source,
    "status": SyncRun.status,
    "started_at": SyncRun.started_at,
    "completed_at": SyncRun.completed_at,
    "created_at": SyncRun.created_at,
}


@dataclass(frozen=True)
class RunFilters:
    """Validated listing options for sync runs."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)
    sources: tuple[str, ...] = field(default_factory=tuple)
    search: str | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        sources: Iterable[str] | None = None,
        search: str | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
    ) -> "RunFilters":
        """
        Build filters from query-string style input.

        Raises:
            ValueError: on an unknown sort column or status, a non-positive
                page number, or an unparseable/inverted date range.
        """

        sort = (sort or DEFAULT_SORT).strip()
        if sort.lstrip("-") not in SORTABLE_COLUMNS:
            raise ValueError(f"Unsupported sort field '{sort.lstrip('-')}'.")

        lower = _parse_bound(started_from, end_of_day=False)
        upper = _parse_bound(started_to, end_of_day=True)
        if lower and upper and lower > upper:
            raise ValueError("started_from must be before started_to.")

        term = (search or "").strip()
        return cls(
            page=_page_number(page, default=DEFAULT_PAGE),
            page_size=min(_page_number(page_size, default=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            sort=sort,
            statuses=tuple(_parse_status(value) for value in statuses or () if value),
            sources=tuple(sorted({value.strip().lower() for value in sources or () if value and value.strip()})),
            search=term or None,
            started_from=lower,
            started_to=upper,
        )

    def order_by(self):
        column = SORTABLE_COLUMNS[self.sort.lstrip("-")]
        return column.desc() if self.sort.startswith("-") else column.asc()

    def where_clauses(self) -> list[Any]:
        clauses: list[Any] = []
        if self.statuses:
            clauses.append(SyncRun.status.in_(self.statuses))
        if self.sources:
            clauses.append(SyncRun.source.in_(self.sources))
        if self.started_from is not None:
            clauses.append(SyncRun.started_at >= self.started_from)
        if self.started_to is not None:
            clauses.append(SyncRun.started_at <= self.started_to)
        if self.search:
            # Numeric terms also match the run id exactly.
            matches = [func.lower(SyncRun.source).contains(self.search.lower())]
            if self.search.isdigit():
                matches.append(SyncRun.id == int(self.search))
            clauses.append(or_(*matches))
        return clauses


@dataclass(slots=True)
class RunSummary:
    """Flattened view of one run for listings and the CLI."""

    id: int
    source: str
    status: str
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    totals: Mapping[str, int]
    chunk: int
    can_resume: bool
    error_message: str | None
    pending_conflicts: int
    metadata: Mapping[str, Any]

    @classmethod
    def from_run(cls, run: SyncRun, *, pending_conflicts: int = 0) -> "RunSummary":
        checkpoint = RunCheckpoint.from_dict(run.checkpoint)
        started = _aware(run.started_at)
        duration = None
        if started is not None:
            finished = _aware(run.completed_at) or datetime.now(timezone.utc)
            duration = max((finished - started).total_seconds(), 0.0)
        return cls(
            id=run.id,
            source=run.source,
            status=SyncRunStatus(run.status).value,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=duration,
            totals=run.totals(),
            chunk=checkpoint.chunk,
            can_resume=checkpoint.can_resume,
            error_message=run.error_message,
            pending_conflicts=pending_conflicts,
            metadata=dict(run.metadata_json or {}),
        )


@dataclass(slots=True)
class RunListResult:
    items: list[RunSummary]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.page_size) if self.total else 0


@dataclass(slots=True)
class RunStats:
    total: int
    statuses: Mapping[str, int]
    sources: Mapping[str, int]


class SyncRunService:
    """Query helpers for sync runs."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_runs(self, filters: RunFilters) -> RunListResult:
        clauses = filters.where_clauses()
        total = self.session.scalar(select(func.count(SyncRun.id)).where(*clauses)) or 0
        runs: Sequence[SyncRun] = ()
        if total:
            runs = self.session.scalars(
                select(SyncRun)
                .where(*clauses)
                .order_by(filters.order_by(), SyncRun.id.desc())
                .offset((filters.page - 1) * filters.page_size)
                .limit(filters.page_size)
            ).all()
        conflicts = self._pending_conflicts([run.id for run in runs])
        return RunListResult(
            items=[RunSummary.from_run(run, pending_conflicts=conflicts.get(run.id, 0)) for run in runs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
        )

    def get_run(self, run_id: int) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise SyncRunNotFound(f"Sync run {run_id} not found.")
        return run

    def get_run_summary(self, run_id: int) -> RunSummary:
        return self.summarize(self.get_run(run_id))

    def summarize(self, run: SyncRun) -> RunSummary:
        return RunSummary.from_run(run, pending_conflicts=self._pending_conflicts([run.id]).get(run.id, 0))

    def get_stats(self, filters: RunFilters | None = None) -> RunStats:
        clauses = (filters or RunFilters()).where_clauses()
        by_status = self.session.execute(
            select(SyncRun.status, func.count(SyncRun.id)).where(*clauses).group_by(SyncRun.status)
        ).all()
        by_source = self.session.execute(
            select(SyncRun.source, func.count(SyncRun.id)).where(*clauses).group_by(SyncRun.source)
        ).all()
        statuses = {SyncRunStatus(status).value: count for status, count in by_status}
        return RunStats(
            total=sum(statuses.values()),
            statuses=statuses,
            sources={source: count for source, count in by_source},
        )

    def list_sources(self) -> list[str]:
        return [
            source
            for source in self.session.scalars(select(SyncRun.source).distinct().order_by(SyncRun.source))
            if source
        ]

    def _pending_conflicts(self, run_ids: Sequence[int]) -> dict[int, int]:
        if not run_ids:
            return {}
        rows = self.session.execute(
            select(MergeConflict.sync_run_id, func.count(MergeConflict.id))
            .where(
                MergeConflict.sync_run_id.in_(run_ids),
                MergeConflict.status == MergeConflictStatus.PENDING,
            )
            .group_by(MergeConflict.sync_run_id)
        ).all()
        return {run_id: count for run_id, count in rows}


def _aware(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _page_number(value: int | str | None, *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Expected a positive integer, received '{value}'.") from None
    if number < 1:
        raise ValueError(f"Expected a positive integer, received '{value}'.")
    return number


def _parse_status(value: str | SyncRunStatus) -> SyncRunStatus:
    try:
        return SyncRunStatus(str(getattr(value, "value", value)).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _parse_bound(value: str | datetime | None, *, end_of_day: bool) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Unable to parse date '{value}'; expected YYYY-MM-DD or an ISO timestamp.") from None
        if len(text) == 10:
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
    return _aware(parsed)
