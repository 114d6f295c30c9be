# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from identity_sync.models import db  # noqa: E402
from identity_sync.sync import init_sync  # noqa: E402
from identity_sync.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool):
    """Return a connection hook applying concurrency-friendly pragmas."""

    def _configure_sqlite_connection(dbapi_connection, connection_record):
        # pysqlite's own transaction handling breaks SAVEPOINT; the "begin"
        # listener below emits BEGIN instead.
        dbapi_connection.isolation_level = None
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)

    return _configure_sqlite_connection


def _emit_begin(connection):
    connection.exec_driver_sql("BEGIN")


def _load_config(app: Flask, flask_env: str) -> None:
    if flask_env == "production":
        app.config.from_object(ProductionConfig)
        app.config.from_object(ProductionMonitoringConfig)
    elif flask_env == "testing":
        app.config.from_object(TestingConfig)
        app.config.from_object(TestingMonitoringConfig)
    else:
        app.config.from_object(DevelopmentConfig)
        app.config.from_object(DevelopmentMonitoringConfig)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"ok": False, "error": "Not found"}), 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"ok": False, "error": "Internal server error"}), 500


def create_app(**overrides) -> Flask:
    """
    Build the Flask application.

    Keyword overrides are applied on top of the environment-selected config;
    ``INSTANCE_PATH`` relocates the instance folder (SQLite files, Celery
    transport).
    """
    instance_path = overrides.pop("INSTANCE_PATH", None)
    app = Flask(__name__, instance_path=instance_path) if instance_path else Flask(__name__)

    # Validate environment variables (only in production)
    flask_env = os.environ.get("FLASK_ENV", "development")
    if flask_env == "production":
        validate_and_exit(flask_env)

    _load_config(app, flask_env)
    app.config.update(overrides)

    db.init_app(app)
    setup_logging(app)

    with app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite"):
            if not getattr(engine, "_sqlite_pragmas_configured", False):
                pragma_hook = _configure_sqlite_connection_factory(
                    enable_foreign_keys=not app.config.get("TESTING", False)
                )
                event.listen(engine, "connect", pragma_hook)
                event.listen(engine, "begin", _emit_begin)
                engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]
        # Create the database tables only if not in testing mode
        if not app.config.get("TESTING", False):
            db.create_all()

    init_sync(app)
    _register_error_handlers(app)
    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
