"""
Scheduling of continuation invocations for runs that still have work.

Continuations go through the Celery queue so a scheduled follow-up survives a
restart of the process that scheduled it. Publishing is retried with a
growing backoff; when every attempt fails the caller pauses the run instead
of leaving it stranded in ``continuing``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

from flask import Flask, current_app

from ..errors import ChainDispatchError, ChainUnavailable
from ..metrics import record_chain_dispatch

logger = logging.getLogger(__name__)

CONTINUE_TASK_NAME = "sync.continue_run"


class ContinuationDispatcher(Protocol):
    def __call__(self, payload: Mapping[str, Any], *, countdown: float) -> str | None: ...


@dataclass(frozen=True)
class ChainOutcome:
    scheduled: bool
    attempts: int
    task_id: str | None = None
    error: str | None = None


class CeleryDispatcher:
    """Publish ``sync.continue_run`` on the app's Celery instance."""

    def __init__(self, app: Flask | None = None) -> None:
        self.app = app

    def __call__(self, payload: Mapping[str, Any], *, countdown: float) -> str | None:
        from ..celery_app import get_celery_app

        app = self.app or current_app._get_current_object()  # type: ignore[attr-defined]
        state = app.extensions.get("sync") or {}
        if not state.get("worker_enabled"):
            raise ChainUnavailable("SYNC_WORKER_ENABLED is false; no worker will pick up continuations.")
        celery_app = get_celery_app(app)
        if celery_app is None:
            raise ChainUnavailable("Celery is not configured for the sync extension.")
        task = celery_app.tasks.get(CONTINUE_TASK_NAME)
        if task is None:
            raise ChainUnavailable(f"Celery task '{CONTINUE_TASK_NAME}' is not registered.")
        try:
            result = task.apply_async(kwargs=dict(payload), countdown=countdown or None)
        except Exception as exc:
            raise ChainDispatchError(str(exc)) from exc
        return getattr(result, "id", None)


class InlineDispatcher:
    """Accept continuations without publishing; the caller drives the next invocation."""

    def __init__(self) -> None:
        self.payloads: list[dict[str, Any]] = []

    def __call__(self, payload: Mapping[str, Any], *, countdown: float) -> str | None:
        self.payloads.append(dict(payload))
        return None


class ContinuationScheduler:
    """Schedule the next invocation of a run with bounded retries."""

    def __init__(
        self,
        dispatch: ContinuationDispatcher,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        debounce_seconds: float = 1.0,
        max_wait_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.dispatch = dispatch
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.debounce_seconds = max(0.0, float(debounce_seconds))
        # Caps total backoff sleep; retries run on the caller's thread.
        self.max_wait_seconds = None if max_wait_seconds is None else max(0.0, float(max_wait_seconds))
        self.sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        dispatch: ContinuationDispatcher,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ContinuationScheduler":
        return cls(
            dispatch,
            max_attempts=config.get("SYNC_CHAIN_MAX_ATTEMPTS", 3),
            backoff_seconds=config.get("SYNC_CHAIN_BACKOFF_SECONDS", 2.0),
            debounce_seconds=config.get("SYNC_CHAIN_DEBOUNCE_SECONDS", 1.0),
            max_wait_seconds=config.get("SYNC_CHAIN_MAX_WAIT_SECONDS", 3.0),
            sleep=sleep,
        )

    def schedule(self, payload: Mapping[str, Any]) -> ChainOutcome:
        run_id = payload.get("sync_run_id")
        last_error: str | None = None
        waited = 0.0
        for attempt in range(1, self.max_attempts + 1):
            try:
                task_id = self.dispatch(payload, countdown=self.debounce_seconds)
            except ChainUnavailable as exc:
                record_chain_dispatch("unavailable")
                logger.warning(
                    "Continuation not scheduled: %s",
                    exc,
                    extra={"sync_run_id": run_id, "sync_chain_attempt": attempt},
                )
                return ChainOutcome(scheduled=False, attempts=attempt, error=str(exc))
            except ChainDispatchError as exc:
                last_error = str(exc)
                record_chain_dispatch("retry")
                logger.warning(
                    "Continuation dispatch attempt %s/%s failed: %s",
                    attempt,
                    self.max_attempts,
                    exc,
                    extra={"sync_run_id": run_id, "sync_chain_attempt": attempt},
                )
                if attempt < self.max_attempts:
                    delay = self._backoff(attempt, waited)
                    if delay:
                        self.sleep(delay)
                        waited += delay
                continue
            record_chain_dispatch("scheduled")
            logger.info(
                "Continuation scheduled",
                extra={"sync_run_id": run_id, "sync_chain_attempt": attempt, "sync_chain_task_id": task_id},
            )
            return ChainOutcome(scheduled=True, attempts=attempt, task_id=task_id)
        record_chain_dispatch("exhausted")
        return ChainOutcome(scheduled=False, attempts=self.max_attempts, error=last_error)

    def _backoff(self, attempt: int, waited: float) -> float:
        delay = self.backoff_seconds * attempt
        if self.max_wait_seconds is not None:
            delay = min(delay, max(0.0, self.max_wait_seconds - waited))
        return delay


__all__ = [
    "CONTINUE_TASK_NAME",
    "CeleryDispatcher",
    "ChainOutcome",
    "ContinuationDispatcher",
    "ContinuationScheduler",
    "InlineDispatcher",
]
