# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Logging configuration shared by the web app and the sync worker"""

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    APP_NAME = os.environ.get("APP_NAME", "identity-sync")
    APP_VERSION = os.environ.get("APP_VERSION", "0.1.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific logging configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific logging configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific logging configuration"""

    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class SyncApiMonitoring:
    """Prometheus metric helpers for the sync HTTP endpoints."""

    TRIGGER_COUNTER = Counter(
        "sync_trigger_requests_total",
        "Total sync trigger API requests by response status.",
        labelnames=("status",),
    )
    TRIGGER_LATENCY = Histogram(
        "sync_trigger_request_seconds",
        "Latency histogram for the sync trigger API.",
        labelnames=("status",),
        buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
    )
    RUNS_LIST_COUNTER = Counter(
        "sync_runs_list_requests_total",
        "Total sync runs list API requests.",
        labelnames=("status",),
    )
    RUNS_LIST_LATENCY = Histogram(
        "sync_runs_list_request_seconds",
        "Latency histogram for the sync runs list API.",
        labelnames=("status",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
    )
    RUNS_DETAIL_COUNTER = Counter(
        "sync_runs_detail_requests_total",
        "Total sync run detail API requests.",
        labelnames=("status",),
    )

    @classmethod
    def record_trigger(cls, *, duration_seconds: float, status: str):
        cls.TRIGGER_COUNTER.labels(status=status).inc()
        cls.TRIGGER_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_runs_list(cls, *, duration_seconds: float, status: str):
        cls.RUNS_LIST_COUNTER.labels(status=status).inc()
        cls.RUNS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_runs_detail(cls, *, status: str):
        cls.RUNS_DETAIL_COUNTER.labels(status=status).inc()
