# identity_sync/models/client.py
"""
Canonical identity models: clients, their per-source identities, and the
payments attributed to them.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db

DEFAULT_LIFECYCLE_STAGE = "LEAD"
PAID_TRANSACTION_STATUS = "paid"


class Client(BaseModel):
    """
    Deduplicated real-world contact.

    ``email`` and ``phone_e164`` are stored normalized and are unique when
    present. Opt-in flags are tri-state: ``None`` means unknown.
    ``total_spend`` is kept in minor currency units (cents).
    """

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(320), nullable=True, unique=True)
    phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True, unique=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    tags: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    wa_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    sms_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    email_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    lifecycle_stage: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    total_spend: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    attributes_json: Mapped[dict | None] = mapped_column("attributes", db.JSON, nullable=True)
    last_sync: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    identities = relationship(
        "ClientIdentity",
        back_populates="client",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    transactions = relationship("Transaction", back_populates="client")

    def __repr__(self):
        return f"<Client {self.id} email={self.email!r} phone={self.phone_e164!r}>"


class ClientIdentity(BaseModel):
    """Maps a source-specific external id to a client (one mapping per source per client)."""

    __tablename__ = "client_identities"

    id: Mapped[int] = mapped_column(primary_key=True)
    client_id: Mapped[int] = mapped_column(
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    email_normalized: Mapped[str | None] = mapped_column(db.String(320), nullable=True)
    phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_run_id: Mapped[int | None] = mapped_column(ForeignKey("sync_runs.id"), nullable=True)

    client = relationship("Client", back_populates="identities")

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_client_identities_source_external"),
        UniqueConstraint("client_id", "source", name="uq_client_identities_client_source"),
        Index("idx_client_identities_email", "email_normalized"),
        Index("idx_client_identities_phone", "phone_e164"),
    )

    def mark_seen(self, *, run_id: int | None = None, seen_at: datetime | None = None) -> None:
        """Update bookkeeping for an identity that was observed again."""

        self.last_seen_at = seen_at or datetime.now(timezone.utc)
        if run_id is not None:
            self.last_run_id = run_id


class Transaction(BaseModel):
    """Payment pulled from a provider and attributed to a client."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(db.String(10), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(db.String(30), nullable=False, default="pending")
    occurred_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    payload_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    client = relationship("Client", back_populates="transactions")

    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_transactions_source_external"),)
