"""
SQLAlchemy models for sync runs, staged raw records, and the merge conflict
review queue.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db

TOTAL_KEYS: tuple[str, ...] = ("fetched", "inserted", "updated", "skipped", "conflicts", "errors")


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    PENDING = "pending"
    RUNNING = "running"
    CONTINUING = "continuing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES: tuple[SyncRunStatus, ...] = (
    SyncRunStatus.RUNNING,
    SyncRunStatus.CONTINUING,
    SyncRunStatus.PAUSED,
)
TERMINAL_STATUSES: tuple[SyncRunStatus, ...] = (
    SyncRunStatus.COMPLETED,
    SyncRunStatus.FAILED,
    SyncRunStatus.CANCELLED,
)


class SyncRun(BaseModel):
    """One synchronization attempt for a source or a group of sources."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.PENDING,
        index=True,
    )
    checkpoint: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    total_fetched: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_inserted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_conflicts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    conflicts = relationship("MergeConflict", back_populates="sync_run")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def totals(self) -> dict[str, int]:
        return {key: int(getattr(self, f"total_{key}") or 0) for key in TOTAL_KEYS}

    def add_totals(self, counts: dict[str, int]) -> None:
        """Accumulate batch counters into the persisted run totals."""

        for key in TOTAL_KEYS:
            increment = int(counts.get(key, 0) or 0)
            if increment:
                setattr(self, f"total_{key}", int(getattr(self, f"total_{key}") or 0) + increment)

    def mark_finished(self, status: SyncRunStatus, *, error_message: str | None = None) -> None:
        self.status = status
        self.completed_at = datetime.now(timezone.utc)
        if error_message is not None:
            self.error_message = error_message

    def __repr__(self):
        return f"<SyncRun {self.id} {self.source} {self.status.value if self.status else None}>"


class RawRecordStatus(str, enum.Enum):
    """Processing states for a staged raw record."""

    PENDING = "pending"
    MERGED = "merged"
    CONFLICT = "conflict"
    ERROR = "error"
    SKIPPED = "skipped"


class RawRecord(BaseModel):
    """
    One staged, not-yet-merged unit from a source.

    Push-delivered sources and uploads write rows here; provider fetchers
    upsert page items on (source, external_id). The engine finalizes each row
    exactly once by moving it out of ``PENDING``.
    """

    __tablename__ = "raw_records"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    import_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    payload_json: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    checksum: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    processing_status: Mapped[RawRecordStatus] = mapped_column(
        Enum(RawRecordStatus, name="raw_record_status_enum"),
        nullable=False,
        default=RawRecordStatus.PENDING,
    )
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    merged_client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True)
    sync_run_id: Mapped[int | None] = mapped_column(ForeignKey("sync_runs.id"), nullable=True)

    merged_client = relationship("Client", foreign_keys=[merged_client_id])

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_raw_records_source_external"),
        Index("idx_raw_records_pending_scan", "source", "processing_status", "id"),
    )

    def finalize(
        self,
        status: RawRecordStatus,
        *,
        run_id: int | None,
        client_id: int | None = None,
        error_message: str | None = None,
    ) -> None:
        self.processing_status = status
        self.processed_at = datetime.now(timezone.utc)
        self.sync_run_id = run_id
        self.merged_client_id = client_id
        self.error_message = error_message


class MergeConflictStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class MergeConflict(BaseModel):
    """Inbound record whose identity signals contradict an existing mapping."""

    __tablename__ = "merge_conflicts"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    conflict_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True, index=True)
    email_found: Mapped[str | None] = mapped_column(db.String(320), nullable=True)
    phone_found: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    raw_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    status: Mapped[MergeConflictStatus] = mapped_column(
        Enum(MergeConflictStatus, name="merge_conflict_status_enum"),
        nullable=False,
        default=MergeConflictStatus.PENDING,
        index=True,
    )
    sync_run_id: Mapped[int | None] = mapped_column(ForeignKey("sync_runs.id"), nullable=True)
    raw_record_id: Mapped[int | None] = mapped_column(ForeignKey("raw_records.id"), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    sync_run = relationship("SyncRun", back_populates="conflicts")

    __table_args__ = (
        Index(
            "uq_merge_conflicts_pending_key",
            "source",
            "external_id",
            "conflict_type",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )
