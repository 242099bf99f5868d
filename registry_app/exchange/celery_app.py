"""
Celery wiring for the exchange worker.

Queued execution is optional: with ``EXCHANGE_WORKER_ENABLED`` off the service
runs jobs inline and no Celery app is built. Without an explicit broker the
worker talks to a SQLite file in the instance folder, so local development
does not need Redis.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "exchange"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
EXTENSION_KEY = "exchange"
TASK_MODULES = ("registry_app.exchange.tasks",)

# Loggers that drown task output at INFO level
NOISY_LOGGERS = ("celery.worker.strategy", "kombu.transport.sqlalchemy")


def _sqlite_transport_path(app: Flask) -> Path:
    """Path of the SQLite file backing the default broker and result backend."""
    configured = app.config.get("CELERY_SQLITE_PATH")
    path = Path(configured) if configured else Path(DEFAULT_SQLITE_FILENAME)
    if not path.is_absolute():
        path = Path(app.instance_path) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def resolve_transport_urls(app: Flask) -> tuple[str, str]:
    """
    Return ``(broker_url, result_backend)``.

    Either URL falls back to the SQLite transport when it is not configured.
    """
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows
    sqlite_path = _sqlite_transport_path(app).as_posix()
    return (
        broker_url or f"sqla+sqlite:///{sqlite_path}",
        result_backend or f"db+sqlite:///{sqlite_path}",
    )


def _config_overrides(app: Flask) -> dict[str, Any]:
    raw: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return {}
    if not isinstance(raw, Mapping):
        app.logger.warning("CELERY_CONFIG must be a JSON object; ignoring value.")
        return {}
    return dict(raw)


def build_celery_settings(app: Flask) -> dict[str, Any]:
    """Celery settings for the exchange worker, ``CELERY_CONFIG`` applied last."""
    settings: dict[str, Any] = {
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_queues": [Queue(DEFAULT_QUEUE_NAME)],
        "task_default_exchange": DEFAULT_QUEUE_NAME,
        "task_default_routing_key": DEFAULT_QUEUE_NAME,
        "task_serializer": "json",
        "result_serializer": "json",
        "accept_content": ["json"],
        # A job is only acknowledged once its executor has settled the job row
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_prefetch_multiplier": 1,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("EXCHANGE_TASK_TIME_LIMIT", 30 * 60),
        "task_soft_time_limit": app.config.get("EXCHANGE_TASK_SOFT_TIME_LIMIT", 25 * 60),
        "worker_hijack_root_logger": False,
        "worker_log_format": "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        "worker_task_log_format": (
            "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"
        ),
    }
    settings.update(_config_overrides(app))
    return settings


def _quiet_worker_loggers(app: Flask) -> None:
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_celery_app(app: Flask) -> Celery:
    """Build a Celery app whose tasks run inside ``app``'s application context."""
    broker_url, result_backend = resolve_transport_urls(app)
    celery_app = Celery(app.import_name, broker=broker_url, backend=result_backend, include=TASK_MODULES)
    settings = build_celery_settings(app)
    celery_app.conf.update(settings)

    app.logger.info(
        "Exchange Celery configuration resolved",
        extra={
            "exchange_celery_broker_url": broker_url,
            "exchange_celery_result_backend": result_backend,
            "exchange_celery_overrides": sorted(_config_overrides(app)),
        },
    )
    _quiet_worker_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Return the Celery app cached in the extension state, building it once."""
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """
    Celery app for ``app``, or None when the exchange is disabled.

    Built on first use when the exchange is enabled but the worker was off at
    startup, which lets the CLI queue work against a running worker.
    """
    state: dict[str, Any] | None = app.extensions.get(EXTENSION_KEY)  # type: ignore[arg-type]
    if not state:
        return None
    if state.get("celery_app") is None and not state.get("enabled"):
        return None
    return ensure_celery_app(app, state)
