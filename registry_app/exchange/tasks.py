"""
Exchange Celery tasks.

Each task wraps an executor; the executors own job state, so a task that
raises has already marked its job FAILED.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from .exporter import ExportExecutor
from .importer import ImportExecutor


@shared_task(name="exchange.healthcheck", bind=True)
def exchange_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask exchange worker ping``."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="exchange.run_import_job", bind=True)
def run_import_job(self, *, job_id: int) -> dict[str, Any]:
    current_app.logger.info(
        "Exchange import task started",
        extra={"exchange_job_id": job_id, "exchange_task_id": self.request.id},
    )
    summary = ImportExecutor(job_id).run()
    return summary.as_dict()


@shared_task(name="exchange.run_export_job", bind=True)
def run_export_job(self, *, job_id: int) -> dict[str, Any]:
    current_app.logger.info(
        "Exchange export task started",
        extra={"exchange_job_id": job_id, "exchange_task_id": self.request.id},
    )
    summary = ExportExecutor(job_id).run()
    return summary.as_dict()
