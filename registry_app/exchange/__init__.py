"""
Bulk data exchange: CSV/XLSX import and export, job tracking and bulk
mutations over a tenant's client registry.

``init_exchange`` records feature state under ``app.extensions['exchange']``
and mounts the matching CLI group.
"""

from __future__ import annotations

from flask import Flask

from .bulk import BulkMutationExecutor, BulkMutationResult, ReversalResult, parse_operation
from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import exchange_cli, get_disabled_exchange_group
from .errors import (
    BulkMutationRequestError,
    ExchangeError,
    JobNotFoundError,
    JobStateError,
    MappingError,
    ParseError,
    ProcessingError,
    ReversalError,
    StorageError,
    TemplateError,
)
from .jobs import JobFilters, JobRegistry, JobStatus
from .service import ExchangeService
from .utils import is_exchange_enabled, is_worker_enabled

__all__ = [
    "init_exchange",
    "EXTENSION_KEY",
    "get_celery_app",
    "ExchangeService",
    "JobRegistry",
    "JobStatus",
    "JobFilters",
    "BulkMutationExecutor",
    "BulkMutationResult",
    "ReversalResult",
    "parse_operation",
    "ExchangeError",
    "ParseError",
    "MappingError",
    "TemplateError",
    "StorageError",
    "JobNotFoundError",
    "JobStateError",
    "ProcessingError",
    "BulkMutationRequestError",
    "ReversalError",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = exchange_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(exchange_cli)
    else:
        app.cli.add_command(get_disabled_exchange_group())


def init_exchange(app: Flask) -> None:
    """Mount the exchange CLI and, when the worker is enabled, its Celery app."""
    enabled = is_exchange_enabled(app)
    worker_enabled = is_worker_enabled(app)

    state = _ensure_extension_state(app)
    state.update({"enabled": enabled, "worker_enabled": worker_enabled})

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Exchange disabled via EXCHANGE_ENABLED flag; skipping registration.")
        return

    if worker_enabled:
        ensure_celery_app(app, state)
    _set_cli(app, enabled=True)
    app.logger.info(
        "Exchange enabled",
        extra={"exchange_worker_enabled": worker_enabled, "exchange_batch_size": app.config.get("EXCHANGE_BATCH_SIZE")},
    )
