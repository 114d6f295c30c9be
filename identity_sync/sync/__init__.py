"""
Sync engine feature package.

Provides conditional blueprint and CLI registration along with source registry
validation while remaining lightweight when sync is disabled.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Tuple

from flask import Flask

from identity_sync.utils.sync import get_sync_sources, is_sync_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .pipeline.coordinator import SyncCoordinator, SyncRequest, SyncResponse
from .pipeline.run_service import RunFilters, SyncRunService
from .registry import SourceDescriptor, get_source_registry, resolve_sources
from .views import sync_blueprint

SYNC_EXTENSION_KEY = "sync"

__all__ = [
    "init_sync",
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
    "register_notifier",
    "RunFilters",
    "SyncCoordinator",
    "SyncRequest",
    "SyncResponse",
    "SyncRunService",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_sources": (),
            "active_sources": (),
            "worker_enabled": False,
            "celery_app": None,
            "notifier": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def register_notifier(app: Flask, notifier: Callable[..., Any] | None) -> None:
    """
    Install the callable invoked after each inserted/updated merge.

    It receives ``(merge_result, source, run_id)``; failures are logged and
    never affect the run.
    """
    _ensure_extension_state(app)["notifier"] = notifier


def init_sync(app: Flask) -> None:
    """
    Conditionally mount the sync blueprint and CLI based on configuration.

    Records state inside ``app.extensions['sync']`` for reuse by the CLI,
    views, and the continuation dispatcher.
    """
    enabled = is_sync_enabled(app)
    configured_sources: Tuple[str, ...] = get_sync_sources(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_sources": configured_sources,
            "worker_enabled": bool(app.config.get("SYNC_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        state["active_sources"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    active: Iterable[SourceDescriptor] = resolve_sources(configured_sources, get_source_registry())
    state["active_sources"] = tuple(active)
    ensure_celery_app(app, state)

    for descriptor in state["active_sources"]:
        readiness = descriptor.readiness(app.config)
        if readiness["status"] != "ready":
            app.logger.warning(
                "Sync source '%s' is missing configuration: %s",
                descriptor.name,
                ", ".join(readiness["missing_config"]),
                extra={"sync_source": descriptor.name, "sync_missing_config": readiness["missing_config"]},
            )

    if sync_blueprint.name not in app.blueprints:
        app.register_blueprint(sync_blueprint)
    _set_cli(app, enabled=True)

    source_names = ", ".join(source.name for source in state["active_sources"]) or "none"
    app.logger.info("Sync enabled with sources: %s", source_names)
