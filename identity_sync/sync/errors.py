"""Exception hierarchy for the sync engine."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base error for sync engine failures."""


class SyncRequestError(SyncError, ValueError):
    """Raised when a trigger request is malformed."""


class UnknownSourceError(SyncRequestError):
    """Raised when a request names a source that is not registered or enabled."""


class SyncRunNotFound(SyncError):
    """Raised when a run id does not reference an existing sync run."""


class SourceFetchError(SyncError):
    """Raised when a source cannot return its next page of work."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class ChainDispatchError(SyncError):
    """Raised by a dispatcher when a continuation could not be published."""


class ChainUnavailable(ChainDispatchError):
    """Raised when no durable queue is configured; retrying cannot help."""
