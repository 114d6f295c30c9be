# config/validation.py

"""
Startup checks for production environment variables.

Only ``FLASK_ENV=production`` is validated; development and testing fall
back to the defaults in ``config.base``.
"""

import os
import sys
from typing import List, Mapping, Optional, Tuple

_PLACEHOLDER_SECRETS = {"your-secret-key", "your_secret_key", "changeme"}

_PROVIDER_CREDENTIALS = {
    "stripe": ("STRIPE_SECRET_KEY",),
    "paypal": ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"),
}

_DEFAULT_SOURCES = "ghl,manychat,csv,stripe,paypal"


def _flag(env: Mapping[str, str], name: str, default: str = "false") -> bool:
    return env.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _sources(env: Mapping[str, str]) -> List[str]:
    return [item.strip().lower() for item in env.get("SYNC_SOURCES", _DEFAULT_SOURCES).split(",") if item.strip()]


def validate_environment(
    flask_env: Optional[str] = None, env: Optional[Mapping[str, str]] = None
) -> Tuple[bool, List[str]]:
    """
    Collect every missing or placeholder production setting.

    Returns ``(is_valid, errors)``; non-production environments are always valid.
    """
    env = os.environ if env is None else env
    if (flask_env or env.get("FLASK_ENV", "development")) != "production":
        return True, []

    errors: List[str] = []
    if env.get("SECRET_KEY", "") in _PLACEHOLDER_SECRETS | {""}:
        errors.append("SECRET_KEY is required in production and must not be a placeholder value.")
    if not env.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")
    if not env.get("SYNC_ADMIN_API_KEY"):
        errors.append("SYNC_ADMIN_API_KEY is required in production to protect the sync endpoints.")
    if _flag(env, "SYNC_WORKER_ENABLED") and not env.get("CELERY_BROKER_URL"):
        errors.append("CELERY_BROKER_URL is required when SYNC_WORKER_ENABLED=true.")

    if _flag(env, "SYNC_ENABLED", default="true"):
        for source in _sources(env):
            errors.extend(
                f"{name} is required when '{source}' is listed in SYNC_SOURCES."
                for name in _PROVIDER_CREDENTIALS.get(source, ())
                if not env.get(name)
            )
    return not errors, errors


def validate_and_exit(flask_env: Optional[str] = None) -> None:
    """Print validation failures to stderr and exit with status 1."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return
    lines = ["Environment validation failed. Missing or invalid settings:"]
    lines.extend(f"  {index}. {error}" for index, error in enumerate(errors, 1))
    lines.append("Check your .env file or the process environment.")
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
