# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


def _env_flag(name, default):
    return os.environ.get(name, str(default)).strip().lower() == "true"


class LoggingConfig:
    """Log handler settings read by ``setup_logging``."""

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    # 'json' for shipping to a collector, 'text' for humans
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024))
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))
    ENABLE_FILE_LOGGING = _env_flag("ENABLE_FILE_LOGGING", True)
    ENABLE_CONSOLE_LOGGING = _env_flag("ENABLE_CONSOLE_LOGGING", True)

    # Stamped on every JSON log line
    APP_NAME = os.environ.get("APP_NAME", "Client Registry")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(LoggingConfig):
    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(LoggingConfig):
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    # stdout is collected by the container runtime
    ENABLE_CONSOLE_LOGGING = _env_flag("ENABLE_CONSOLE_LOGGING", False)


class TestingMonitoringConfig(LoggingConfig):
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class ExchangeMonitoring:
    """Prometheus metric helpers for exchange jobs and bulk mutations."""

    JOB_TRANSITIONS = Counter(
        "exchange_job_transitions_total",
        "Exchange job state transitions by job kind and target status.",
        labelnames=("kind", "status"),
    )
    ROWS_PROCESSED = Counter(
        "exchange_rows_total",
        "Rows handled by exchange jobs by outcome.",
        labelnames=("kind", "outcome"),
    )
    BATCH_LATENCY = Histogram(
        "exchange_batch_duration_seconds",
        "Duration of a single exchange batch.",
        labelnames=("kind",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
    )
    BULK_MUTATIONS = Counter(
        "exchange_bulk_mutations_total",
        "Bulk mutations executed by operation and outcome.",
        labelnames=("operation", "outcome"),
    )
    BULK_TARGET_COUNT = Histogram(
        "exchange_bulk_mutation_targets",
        "Number of clients targeted per bulk mutation.",
        labelnames=("operation",),
        buckets=(1, 5, 10, 25, 50, 100),
    )
    AUDIT_FAILURES = Counter(
        "exchange_audit_failures_total",
        "Audit events the sink failed to accept.",
        labelnames=("action",),
    )

    @classmethod
    def record_transition(cls, *, kind: str, status: str):
        cls.JOB_TRANSITIONS.labels(kind=kind, status=status).inc()

    @classmethod
    def record_batch(cls, *, kind: str, duration_seconds: float, outcomes: dict[str, int]):
        cls.BATCH_LATENCY.labels(kind=kind).observe(max(duration_seconds, 0.0))
        for outcome, count in outcomes.items():
            if count > 0:
                cls.ROWS_PROCESSED.labels(kind=kind, outcome=outcome).inc(count)

    @classmethod
    def record_bulk_mutation(cls, *, operation: str, successful: int, failed: int):
        outcome = "success" if failed == 0 else ("partial" if successful else "failure")
        cls.BULK_MUTATIONS.labels(operation=operation, outcome=outcome).inc()
        cls.BULK_TARGET_COUNT.labels(operation=operation).observe(float(successful + failed))

    @classmethod
    def record_audit_failure(cls, *, action: str):
        cls.AUDIT_FAILURES.labels(action=action).inc()
