import pytest

from config.validation import validate_and_exit, validate_environment

PRODUCTION_ENV = {
    "FLASK_ENV": "production",
    "SECRET_KEY": "a-real-secret",
    "DATABASE_URL": "postgresql://sync@db/sync",
    "SYNC_ADMIN_API_KEY": "admin-key",
    "SYNC_SOURCES": "csv,ghl",
}


def test_non_production_is_always_valid():
    assert validate_environment("development", env={}) == (True, [])
    assert validate_environment("testing", env={}) == (True, [])


def test_complete_production_env_is_valid():
    assert validate_environment(env=PRODUCTION_ENV) == (True, [])


def test_production_reports_every_missing_setting():
    is_valid, errors = validate_environment("production", env={"SECRET_KEY": "your-secret-key"})

    assert is_valid is False
    joined = "\n".join(errors)
    assert "SECRET_KEY" in joined
    assert "DATABASE_URL" in joined
    assert "SYNC_ADMIN_API_KEY" in joined
    # Default source list includes both providers.
    assert "STRIPE_SECRET_KEY" in joined
    assert "PAYPAL_CLIENT_SECRET" in joined


def test_provider_credentials_follow_configured_sources():
    env = dict(PRODUCTION_ENV, SYNC_SOURCES="csv,stripe")
    _, errors = validate_environment(env=env)
    assert errors == ["STRIPE_SECRET_KEY is required when 'stripe' is listed in SYNC_SOURCES."]

    _, disabled_errors = validate_environment(env=dict(env, SYNC_ENABLED="false"))
    assert disabled_errors == []


def test_worker_requires_broker():
    _, errors = validate_environment(env=dict(PRODUCTION_ENV, SYNC_WORKER_ENABLED="true"))
    assert errors == ["CELERY_BROKER_URL is required when SYNC_WORKER_ENABLED=true."]


def test_validate_and_exit_exits_on_failure(monkeypatch, capsys):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        validate_and_exit("production")

    assert excinfo.value.code == 1
    assert "Environment validation failed" in capsys.readouterr().err
