"""
Identity resolution and merge for inbound contact signals.

Lookup runs in strict priority order: the source identity mapping, then the
normalized email, then the normalized phone. The first hit wins and two
existing clients are never folded into one. Contradictions are queued as
``MergeConflict`` rows for manual review instead of being auto-resolved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

from sqlalchemy import func
from sqlalchemy.orm import Session

from config.merge_policy import MergePolicyProfile
from identity_sync.models import (
    DEFAULT_LIFECYCLE_STAGE,
    PAID_TRANSACTION_STATUS,
    Client,
    ClientIdentity,
    MergeConflict,
    MergeConflictStatus,
    Transaction,
    db,
)

from .merge_policy import MergePolicyResult, apply_merge_policy
from .normalize import clean_text, normalize_email, normalize_phone, normalize_tags

logger = logging.getLogger(__name__)

MergeAction = Literal["inserted", "updated", "conflict", "skipped"]

CONFLICT_EXTERNAL_ID_MISMATCH = "external_id_mismatch"
CONFLICT_IDENTITY_TAKEN = "identity_taken"
CONFLICT_DUPLICATE_CANDIDATE = "duplicate_candidate"

_OPT_IN_FIELDS = ("wa_opt_in", "sms_opt_in", "email_opt_in")


@dataclass(frozen=True)
class TransactionSignal:
    """Payment observed alongside a contact signal (amount in minor units)."""

    external_id: str
    amount: int
    currency: str = "usd"
    status: str = "pending"
    occurred_at: datetime | None = None
    payload: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class ContactSignal:
    """Identity signals extracted from one raw record."""

    source: str
    external_id: str
    email: str | None = None
    phone: str | None = None
    full_name: str | None = None
    wa_opt_in: bool | None = None
    sms_opt_in: bool | None = None
    email_opt_in: bool | None = None
    tags: tuple[str, ...] = ()
    attributes: Mapping[str, Any] = field(default_factory=dict)
    total_spend: int | None = None
    transaction: TransactionSignal | None = None
    raw: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class MergeResult:
    action: MergeAction
    client_id: int | None
    conflict_type: str | None = None
    changed_fields: tuple[str, ...] = ()


class IdentityResolver:
    """Resolve a ``ContactSignal`` to a client and apply the merge policy."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        profile: MergePolicyProfile | None = None,
        run_id: int | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.profile = profile
        self.run_id = run_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def merge(
        self,
        signal: ContactSignal,
        *,
        raw_record_id: int | None = None,
        dry_run: bool = False,
    ) -> MergeResult:
        """
        Resolve ``signal`` and apply it.

        With ``dry_run`` the same writes happen inside a savepoint that is always
        rolled back, so the result reports what would change and nothing does.
        Inserted previews carry no client id.
        """
        if not dry_run:
            return self._resolve(signal, raw_record_id=raw_record_id)

        savepoint = self.session.begin_nested()
        try:
            result = self._resolve(signal, raw_record_id=raw_record_id)
            self.session.flush()
        finally:
            savepoint.rollback()
        if result.action == "inserted":
            return replace(result, client_id=None)
        return result

    def _resolve(self, signal: ContactSignal, *, raw_record_id: int | None) -> MergeResult:
        if not signal.external_id:
            raise ValueError(f"Signal from source '{signal.source}' is missing an external id.")

        email = normalize_email(signal.email)
        phone = normalize_phone(signal.phone)

        identity = self._find_identity(signal.source, signal.external_id)
        if identity is not None:
            client = identity.client
            conflict_type = self._identity_mismatch(identity, client, email=email, phone=phone)
            if conflict_type:
                return self._record_conflict(signal, conflict_type, client, email, phone, raw_record_id)
        else:
            client = self._find_client(email=email, phone=phone)
            if client is None:
                if not email and not phone:
                    return MergeResult(action="skipped", client_id=None)
                return self._insert(signal, email=email, phone=phone)
            existing_mapping = self._identity_for_client(client.id, signal.source)
            if existing_mapping is not None and existing_mapping.external_id != signal.external_id:
                return self._record_conflict(signal, CONFLICT_IDENTITY_TAKEN, client, email, phone, raw_record_id)

        if self._owned_elsewhere(client, email=email, phone=phone):
            return self._record_conflict(signal, CONFLICT_DUPLICATE_CANDIDATE, client, email, phone, raw_record_id)

        return self._update(client, identity, signal, email=email, phone=phone)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _find_identity(self, source: str, external_id: str) -> ClientIdentity | None:
        return (
            self.session.query(ClientIdentity)
            .filter(ClientIdentity.source == source, ClientIdentity.external_id == external_id)
            .one_or_none()
        )

    def _identity_for_client(self, client_id: int, source: str) -> ClientIdentity | None:
        return (
            self.session.query(ClientIdentity)
            .filter(ClientIdentity.client_id == client_id, ClientIdentity.source == source)
            .one_or_none()
        )

    def _find_client(self, *, email: str | None, phone: str | None) -> Client | None:
        if email:
            client = self.session.query(Client).filter(Client.email == email).one_or_none()
            if client is not None:
                return client
        if phone:
            return self.session.query(Client).filter(Client.phone_e164 == phone).one_or_none()
        return None

    @staticmethod
    def _identity_mismatch(
        identity: ClientIdentity,
        client: Client,
        *,
        email: str | None,
        phone: str | None,
    ) -> str | None:
        recorded_email = identity.email_normalized or client.email
        recorded_phone = identity.phone_e164 or client.phone_e164
        if email and recorded_email and email != recorded_email:
            return CONFLICT_EXTERNAL_ID_MISMATCH
        if phone and recorded_phone and phone != recorded_phone:
            return CONFLICT_EXTERNAL_ID_MISMATCH
        return None

    def _owned_elsewhere(self, client: Client, *, email: str | None, phone: str | None) -> bool:
        if email and client.email is None:
            other = self.session.query(Client.id).filter(Client.email == email, Client.id != client.id).first()
            if other is not None:
                return True
        if phone and client.phone_e164 is None:
            other = (
                self.session.query(Client.id).filter(Client.phone_e164 == phone, Client.id != client.id).first()
            )
            if other is not None:
                return True
        return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert(self, signal: ContactSignal, *, email: str | None, phone: str | None) -> MergeResult:
        now = datetime.now(timezone.utc)
        client = Client(
            email=email,
            phone_e164=phone,
            full_name=clean_text(signal.full_name),
            tags=list(normalize_tags(signal.tags)),
            wa_opt_in=signal.wa_opt_in,
            sms_opt_in=signal.sms_opt_in,
            email_opt_in=signal.email_opt_in,
            lifecycle_stage=DEFAULT_LIFECYCLE_STAGE,
            total_spend=max(0, int(signal.total_spend or 0)),
            attributes_json=_clean_attributes(signal.attributes) or None,
            last_sync=now,
        )
        self.session.add(client)
        self.session.flush()

        self.session.add(
            ClientIdentity(
                client_id=client.id,
                source=signal.source,
                external_id=signal.external_id,
                email_normalized=email,
                phone_e164=phone,
                first_seen_at=now,
                last_seen_at=now,
                last_run_id=self.run_id,
            )
        )
        if signal.transaction is not None:
            self._upsert_transaction(client, signal.source, signal.transaction)
            self.session.flush()
            client.total_spend = max(client.total_spend or 0, self._paid_total(client.id))
        self.session.flush()
        logger.debug(
            "Inserted client from %s",
            signal.source,
            extra={"sync_source": signal.source, "sync_client_id": client.id, "sync_run_id": self.run_id},
        )
        return MergeResult(action="inserted", client_id=client.id)

    def _update(
        self,
        client: Client,
        identity: ClientIdentity | None,
        signal: ContactSignal,
        *,
        email: str | None,
        phone: str | None,
    ) -> MergeResult:
        now = datetime.now(timezone.utc)
        spend_candidate = signal.total_spend
        if signal.transaction is not None:
            self._upsert_transaction(client, signal.source, signal.transaction)
            self.session.flush()
            paid_total = self._paid_total(client.id)
            spend_candidate = max(spend_candidate or 0, paid_total)

        result = apply_merge_policy(
            _client_snapshot(client),
            _incoming_values(signal, email=email, phone=phone, total_spend=spend_candidate),
            profile=self.profile,
        )
        _apply_resolved(client, result)
        client.last_sync = now

        if identity is None:
            self.session.add(
                ClientIdentity(
                    client_id=client.id,
                    source=signal.source,
                    external_id=signal.external_id,
                    email_normalized=email,
                    phone_e164=phone,
                    first_seen_at=now,
                    last_seen_at=now,
                    last_run_id=self.run_id,
                )
            )
        else:
            identity.mark_seen(run_id=self.run_id, seen_at=now)
            if identity.email_normalized is None and email:
                identity.email_normalized = email
            if identity.phone_e164 is None and phone:
                identity.phone_e164 = phone
        self.session.flush()
        return MergeResult(action="updated", client_id=client.id, changed_fields=result.changed_fields)

    def _record_conflict(
        self,
        signal: ContactSignal,
        conflict_type: str,
        client: Client | None,
        email: str | None,
        phone: str | None,
        raw_record_id: int | None,
    ) -> MergeResult:
        client_id = client.id if client is not None else None
        conflict = (
            self.session.query(MergeConflict)
            .filter(
                MergeConflict.source == signal.source,
                MergeConflict.external_id == signal.external_id,
                MergeConflict.conflict_type == conflict_type,
                MergeConflict.status == MergeConflictStatus.PENDING,
            )
            .one_or_none()
        )
        if conflict is None:
            conflict = MergeConflict(
                source=signal.source,
                external_id=signal.external_id,
                conflict_type=conflict_type,
                status=MergeConflictStatus.PENDING,
            )
            self.session.add(conflict)
        conflict.client_id = client_id
        conflict.email_found = email
        conflict.phone_found = phone
        conflict.raw_data = dict(signal.raw) if signal.raw is not None else None
        conflict.sync_run_id = self.run_id
        conflict.raw_record_id = raw_record_id
        self.session.flush()
        logger.info(
            "Merge conflict queued for review",
            extra={
                "sync_source": signal.source,
                "sync_external_id": signal.external_id,
                "sync_conflict_type": conflict_type,
                "sync_client_id": client_id,
                "sync_run_id": self.run_id,
            },
        )
        return MergeResult(action="conflict", client_id=client_id, conflict_type=conflict_type)

    def _upsert_transaction(self, client: Client, source: str, signal: TransactionSignal) -> Transaction:
        transaction = (
            self.session.query(Transaction)
            .filter(Transaction.source == source, Transaction.external_id == signal.external_id)
            .one_or_none()
        )
        if transaction is None:
            transaction = Transaction(source=source, external_id=signal.external_id)
            self.session.add(transaction)
        transaction.client_id = client.id
        transaction.amount = int(signal.amount)
        transaction.currency = (signal.currency or "usd").lower()
        transaction.status = signal.status
        transaction.occurred_at = signal.occurred_at
        transaction.payload_json = dict(signal.payload) if signal.payload is not None else None
        return transaction

    def _paid_total(self, client_id: int) -> int:
        total = (
            self.session.query(func.coalesce(func.sum(Transaction.amount), 0))
            .filter(Transaction.client_id == client_id, Transaction.status == PAID_TRANSACTION_STATUS)
            .scalar()
        )
        return int(total or 0)


def _clean_attributes(attributes: Mapping[str, Any] | None) -> dict[str, Any]:
    if not attributes:
        return {}
    return {str(key): value for key, value in attributes.items() if value not in (None, "")}


def _client_snapshot(client: Client) -> dict[str, Any]:
    return {
        "full_name": client.full_name,
        "email": client.email,
        "phone_e164": client.phone_e164,
        "lifecycle_stage": client.lifecycle_stage,
        "total_spend": client.total_spend,
        "tags": list(client.tags or ()),
        "attributes": dict(client.attributes_json or {}),
        "wa_opt_in": client.wa_opt_in,
        "sms_opt_in": client.sms_opt_in,
        "email_opt_in": client.email_opt_in,
    }


def _incoming_values(
    signal: ContactSignal,
    *,
    email: str | None,
    phone: str | None,
    total_spend: int | None,
) -> dict[str, Any]:
    incoming: dict[str, Any] = {
        "full_name": clean_text(signal.full_name),
        "email": email,
        "phone_e164": phone,
        "tags": list(normalize_tags(signal.tags)),
        "attributes": _clean_attributes(signal.attributes),
    }
    if total_spend is not None:
        incoming["total_spend"] = int(total_spend)
    for name in _OPT_IN_FIELDS:
        incoming[name] = getattr(signal, name)
    return incoming


def _apply_resolved(client: Client, result: MergePolicyResult) -> None:
    for field_name, value in result.resolved_values.items():
        if field_name == "attributes":
            client.attributes_json = dict(value)
        elif field_name == "tags":
            client.tags = list(value)
        else:
            setattr(client, field_name, value)
