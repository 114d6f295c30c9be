"""
Sync Celery tasks.

``sync.continue_run`` is the continuation published by a run that still has
pending work; it performs one more invocation of the same run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from .errors import SyncRunNotFound
from .pipeline.coordinator import SyncCoordinator, SyncRequest


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="sync.continue_run", bind=True)
def continue_run(
    self,
    *,
    sync_run_id: int,
    sources: list[str] | None = None,
    batch_size: int | None = None,
    import_id: str | None = None,
) -> dict[str, Any]:
    """Run the next bounded batch of an existing sync run."""

    config = current_app.config
    request = SyncRequest(
        sources=tuple(sources or ()),
        batch_size=min(
            int(batch_size or config.get("SYNC_DEFAULT_BATCH_SIZE", 50)),
            int(config.get("SYNC_MAX_BATCH_SIZE", 500)),
        ),
        sync_run_id=sync_run_id,
        import_id=import_id,
    )
    try:
        coordinator = SyncCoordinator(notifier=current_app.extensions.get("sync", {}).get("notifier"))
        response = coordinator.trigger(request)
    except SyncRunNotFound:
        current_app.logger.warning(
            "Continuation references a missing sync run",
            extra={"sync_run_id": sync_run_id, "sync_task_id": self.request.id},
        )
        raise
    current_app.logger.info(
        "Sync continuation finished",
        extra={
            "sync_run_id": sync_run_id,
            "sync_status": response.status,
            "sync_has_more": response.has_more,
            "sync_task_id": self.request.id,
        },
    )
    return response.to_dict()
