# identity_sync/utils/logging_config.py

"""
Logging setup for the web app and the sync worker.

Structured context is passed with ``extra={"sync_run_id": ...}``; the JSON
formatter emits every ``sync_*`` attribute as a top-level key.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone

_STANDARD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
_CONTEXT_PREFIXES = ("sync_",)
_HANDLER_MARKER = "_identity_sync_handler"


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def __init__(self, app_name=None, app_version=None):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name
        if self.app_version:
            payload["version"] = self.app_version
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or not key.startswith(_CONTEXT_PREFIXES):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text formatter that appends ``sync_*`` context as key=value pairs."""

    def format(self, record):
        base = super().format(record)
        context = " ".join(
            f"{key}={value}"
            for key, value in sorted(record.__dict__.items())
            if key not in _STANDARD_ATTRS and key.startswith(_CONTEXT_PREFIXES)
        )
        return f"{base} [{context}]" if context else base


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "text")).lower() == "json":
        return JsonFormatter(app.config.get("APP_NAME"), app.config.get("APP_VERSION"))
    return ContextTextFormatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")


def _mark(handler):
    setattr(handler, _HANDLER_MARKER, True)
    return handler


def setup_logging(app):
    """Configure console and rotating file handlers from the app config."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(app)

    targets = (app.logger, logging.getLogger("identity_sync"))
    for target in targets:
        for handler in list(target.handlers):
            if getattr(handler, _HANDLER_MARKER, False):
                target.removeHandler(handler)
        target.setLevel(level)

    handlers = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        handlers.append(_mark(console))

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "identity_sync.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(_mark(file_handler))

    for target in targets:
        for handler in handlers:
            target.addHandler(handler)
    # Propagate to root only when no handler of our own is installed.
    logging.getLogger("identity_sync").propagate = not handlers

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    app.logger.debug(
        "Logging configured",
        extra={"sync_log_level": logging.getLevelName(level), "sync_log_handlers": len(handlers)},
    )
