# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_source_list(value):
    """
    Parse a comma-separated source list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized source identifiers.
    """
    if not value:
        return ()

    seen = set()
    sources = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        sources.append(item)
    return tuple(sources)


def _env_int(name, default, *, minimum=None):
    try:
        value = int(os.environ.get(name, str(default)))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name, default, *, minimum=0.0):
    try:
        value = float(os.environ.get(name, str(default)))
    except ValueError:
        value = default
    return max(minimum, value)


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError("SECRET_KEY environment variable is required in production.")

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    ENV_IS_PRODUCTION = _is_production

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sync engine configuration
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=True)
    SYNC_SOURCES = _parse_source_list(os.environ.get("SYNC_SOURCES", "ghl,manychat,csv,stripe,paypal"))

    if SYNC_ENABLED and not SYNC_SOURCES:
        raise ValueError("SYNC_ENABLED is true but SYNC_SOURCES is empty. Provide at least one source name.")

    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    SYNC_DEFAULT_BATCH_SIZE = _env_int("SYNC_DEFAULT_BATCH_SIZE", 50, minimum=1)
    SYNC_MAX_BATCH_SIZE = _env_int("SYNC_MAX_BATCH_SIZE", 500, minimum=1)
    if SYNC_DEFAULT_BATCH_SIZE > SYNC_MAX_BATCH_SIZE:
        SYNC_DEFAULT_BATCH_SIZE = SYNC_MAX_BATCH_SIZE

    SYNC_CHAIN_MAX_ATTEMPTS = _env_int("SYNC_CHAIN_MAX_ATTEMPTS", 3, minimum=1)
    SYNC_CHAIN_DEBOUNCE_SECONDS = _env_float("SYNC_CHAIN_DEBOUNCE_SECONDS", 1.0)
    SYNC_CHAIN_BACKOFF_SECONDS = _env_float("SYNC_CHAIN_BACKOFF_SECONDS", 2.0)
    SYNC_CHAIN_MAX_WAIT_SECONDS = _env_float("SYNC_CHAIN_MAX_WAIT_SECONDS", 3.0)
    SYNC_STALE_RUN_SECONDS = _env_int("SYNC_STALE_RUN_SECONDS", 600, minimum=0)
    SYNC_TASK_TIME_LIMIT = _env_int("SYNC_TASK_TIME_LIMIT", 5 * 60, minimum=10)
    SYNC_TASK_SOFT_TIME_LIMIT = _env_int("SYNC_TASK_SOFT_TIME_LIMIT", 4 * 60, minimum=5)

    SYNC_PROVIDER_CALL_DELAY_SECONDS = _env_float("SYNC_PROVIDER_CALL_DELAY_SECONDS", 0.25)
    SYNC_PROVIDER_MAX_PAGES = _env_int("SYNC_PROVIDER_MAX_PAGES", 5, minimum=1)
    SYNC_PROVIDER_PAGE_SIZE = _env_int("SYNC_PROVIDER_PAGE_SIZE", 100, minimum=1)
    SYNC_PROVIDER_TIMEOUT_SECONDS = _env_float("SYNC_PROVIDER_TIMEOUT_SECONDS", 30.0, minimum=1.0)
    SYNC_PAYPAL_LOOKBACK_DAYS = _env_int("SYNC_PAYPAL_LOOKBACK_DAYS", 30, minimum=1)

    SYNC_ADMIN_API_KEY = os.environ.get("SYNC_ADMIN_API_KEY")
    SYNC_MERGE_POLICY_PATH = os.environ.get("SYNC_MERGE_POLICY_PATH")

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_API_BASE = os.environ.get("STRIPE_API_BASE", "https://api.stripe.com")
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")
    PAYPAL_API_BASE = os.environ.get("PAYPAL_API_BASE", "https://api-m.paypal.com")

    SYNC_RUNS_PAGE_SIZE_DEFAULT = _env_int("SYNC_RUNS_PAGE_SIZE_DEFAULT", 25, minimum=1)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes on Windows
    db_path = os.path.join(instance_path, "identity_sync_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SYNC_ENABLED = True
    SYNC_WORKER_ENABLED = False
    SYNC_ADMIN_API_KEY = None
    SYNC_PROVIDER_CALL_DELAY_SECONDS = 0.0
    SYNC_CHAIN_DEBOUNCE_SECONDS = 0.0
    SYNC_CHAIN_BACKOFF_SECONDS = 0.0


class ProductionConfig(Config):
    DEBUG = False
    ENV_IS_PRODUCTION = True
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
