"""
Typed resume state persisted on ``SyncRun.checkpoint``.

Each source keeps its own cursor. Staged sources resume from the last raw
record id they finalized; provider sources resume from the provider's page
token and pin the query window in ``params`` so pages stay stable across
invocations.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Mapping, Union

ROW_ID_KIND = "row_id"
PROVIDER_TOKEN_KIND = "provider_token"


@dataclass(frozen=True)
class RowIdCursor:
    """Keyset position over ``raw_records.id`` for a staged source."""

    kind: ClassVar[str] = ROW_ID_KIND

    last_id: int = 0

    def advance(self, last_id: int | None) -> "RowIdCursor":
        if last_id is None or last_id <= self.last_id:
            return self
        return replace(self, last_id=last_id)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "last_id": self.last_id}


@dataclass(frozen=True)
class ProviderCursor:
    """Page token position for a paginated provider API."""

    kind: ClassVar[str] = PROVIDER_TOKEN_KIND

    token: str | None = None
    pages_fetched: int = 0
    exhausted: bool = False
    params: Mapping[str, Any] = field(default_factory=dict)

    def next_page(self, token: str | None, *, has_more: bool) -> "ProviderCursor":
        return replace(
            self,
            token=token if has_more else self.token,
            pages_fetched=self.pages_fetched + 1,
            exhausted=not has_more,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "token": self.token,
            "pages_fetched": self.pages_fetched,
            "exhausted": self.exhausted,
            "params": dict(self.params),
        }


SourceCursor = Union[RowIdCursor, ProviderCursor]


def cursor_from_dict(raw: Mapping[str, Any]) -> SourceCursor:
    kind = raw.get("kind")
    if kind == ROW_ID_KIND:
        return RowIdCursor(last_id=int(raw.get("last_id") or 0))
    if kind == PROVIDER_TOKEN_KIND:
        return ProviderCursor(
            token=raw.get("token"),
            pages_fetched=int(raw.get("pages_fetched") or 0),
            exhausted=bool(raw.get("exhausted", False)),
            params=dict(raw.get("params") or {}),
        )
    raise ValueError(f"Unknown checkpoint cursor kind '{kind}'.")


@dataclass
class RunCheckpoint:
    """Resume state for one run, serialized to JSON between invocations."""

    chunk: int = 0
    cursors: dict[str, SourceCursor] = field(default_factory=dict)
    totals: dict[str, int] = field(default_factory=dict)
    error_count: int = 0
    can_resume: bool = False
    last_heartbeat: str | None = None

    def cursor_for(self, source: str) -> SourceCursor | None:
        return self.cursors.get(source)

    def advance(self, source: str, cursor: SourceCursor) -> None:
        self.cursors[source] = cursor

    def touch(self, now: datetime | None = None) -> None:
        self.last_heartbeat = (now or datetime.now(timezone.utc)).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk": self.chunk,
            "cursors": {source: cursor.to_dict() for source, cursor in sorted(self.cursors.items())},
            "totals": dict(self.totals),
            "error_count": self.error_count,
            "can_resume": self.can_resume,
            "last_heartbeat": self.last_heartbeat,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "RunCheckpoint":
        if not raw:
            return cls()
        cursors = {
            str(source): cursor_from_dict(payload)
            for source, payload in (raw.get("cursors") or {}).items()
            if isinstance(payload, Mapping)
        }
        return cls(
            chunk=int(raw.get("chunk") or 0),
            cursors=cursors,
            totals={str(key): int(value or 0) for key, value in (raw.get("totals") or {}).items()},
            error_count=int(raw.get("error_count") or 0),
            can_resume=bool(raw.get("can_resume", False)),
            last_heartbeat=raw.get("last_heartbeat"),
        )


__all__ = [
    "PROVIDER_TOKEN_KIND",
    "ProviderCursor",
    "ROW_ID_KIND",
    "RowIdCursor",
    "RunCheckpoint",
    "SourceCursor",
    "cursor_from_dict",
]
