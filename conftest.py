# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so TestingConfig is selected
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from identity_sync.models import db  # noqa: E402

EAGER_CELERY = {"task_always_eager": True, "task_eager_propagates": True}


@pytest.fixture(scope="function")
def app(tmp_path_factory):
    """Create a Flask application backed by an isolated SQLite file."""
    tmp_path = tmp_path_factory.mktemp("app")
    db_fd, temp_db = tempfile.mkstemp(suffix=".db", dir=tmp_path)
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()

    try:
        flask_app = create_app(
            INSTANCE_PATH=str(instance_dir),
            SQLALCHEMY_DATABASE_URI=f"sqlite:///{temp_db}",
            SECRET_KEY="test-secret-key-for-testing-only",
            SYNC_ENABLED=True,
            SYNC_SOURCES=("ghl", "manychat", "csv", "stripe", "paypal"),
            SYNC_WORKER_ENABLED=False,
            SYNC_ADMIN_API_KEY=None,
            CELERY_CONFIG=EAGER_CELERY,
            STRIPE_SECRET_KEY="sk_test_123",
            PAYPAL_CLIENT_ID="paypal-client",
            PAYPAL_CLIENT_SECRET="paypal-secret",
        )

        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()

