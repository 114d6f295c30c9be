"""
Celery wiring for sync continuations.

A run with pending work publishes ``sync.continue_run`` to the ``sync``
queue. Without ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` the broker and
result backend share one SQLite file under the instance folder.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "sync"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"

_TASK_MODULES = ("identity_sync.sync.tasks",)
_NOISY_LOGGERS = ("celery.worker.strategy",)


def _transport_urls(app: Flask) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)``, filling gaps with SQLite URLs."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    sqlite_path = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not sqlite_path.is_absolute():
        sqlite_path = Path(app.instance_path) / sqlite_path
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    location = sqlite_path.as_posix()
    return broker_url or f"sqla+sqlite:///{location}", result_backend or f"db+sqlite:///{location}"


def _worker_settings(app: Flask) -> dict[str, Any]:
    # One continuation per worker slot; a lost worker redelivers the batch.
    return {
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_default_exchange": DEFAULT_QUEUE_NAME,
        "task_default_routing_key": DEFAULT_QUEUE_NAME,
        "task_queues": [Queue(DEFAULT_QUEUE_NAME)],
        "task_routes": {"sync.*": {"queue": DEFAULT_QUEUE_NAME}},
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "task_track_started": True,
        "worker_prefetch_multiplier": 1,
        "result_extended": True,
        "result_expires": app.config.get("SYNC_RESULT_EXPIRES", 24 * 60 * 60),
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("SYNC_TASK_TIME_LIMIT", 5 * 60),
        "task_soft_time_limit": app.config.get("SYNC_TASK_SOFT_TIME_LIMIT", 4 * 60),
        "worker_hijack_root_logger": False,
        "worker_log_format": "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        "worker_task_log_format": (
            "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"
        ),
    }


def _config_overrides(app: Flask) -> Mapping[str, Any]:
    """Read ``CELERY_CONFIG`` as a mapping or a JSON object string."""
    raw = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
        return {}
    if not isinstance(parsed, dict):
        app.logger.warning("CELERY_CONFIG must be a JSON object; ignoring value.")
        return {}
    return parsed


def _quiet_worker_logs(app: Flask) -> None:
    names = list(_NOISY_LOGGERS)
    if not app.config.get("SQLALCHEMY_ECHO", False):
        names.append("sqlalchemy.engine")
    for name in names:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_celery_app(app: Flask) -> Celery:
    """
    Build a Celery app whose tasks run inside ``app``'s application context.
    """
    broker_url, result_backend = _transport_urls(app)
    celery_app = Celery(app.import_name, broker=broker_url, backend=result_backend, include=_TASK_MODULES)
    celery_app.conf.update(_worker_settings(app))

    overrides = _config_overrides(app)
    celery_app.conf.update(overrides)
    app.logger.info(
        "Sync Celery configuration resolved",
        extra={
            "sync_celery_broker_url": broker_url,
            "sync_celery_result_backend": result_backend,
            "sync_celery_overrides": sorted(overrides),
            "sync_worker_enabled": app.config.get("SYNC_WORKER_ENABLED"),
        },
    )
    _quiet_worker_logs(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Create the Celery app once and cache it in the sync extension state."""
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """
    Return the sync Celery app, or ``None`` when sync was never initialised or is
    disabled.
    """
    state: dict[str, Any] | None = app.extensions.get("sync")  # type: ignore[arg-type]
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
