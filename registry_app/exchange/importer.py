"""
Import executor.

Reads a validated job's source file back from blob storage and writes clients
in batches. Each batch commits its writes together with the job counters, so
a batch is either fully reflected in the counters or not at all. Cancellation
is checked at every batch boundary; a cancel that lands mid-batch makes the
counter update fail and the batch is rolled back.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.monitoring import ExchangeMonitoring
from registry_app.models import db
from registry_app.models.exchange import DuplicateStrategy, ExchangeJobKind, ExchangeJobStatus, RowErrorKind

from .audit import AuditSink, LoggingAuditSink
from .errors import JobStateError, ParseError, ProcessingError, StorageError
from .jobs import JobRegistry
from .mapping import MappingSet, ResolvedRow, normalize_key
from .parsing import ParsedRow, parse_file
from .storage import BlobStorage, LocalBlobStorage
from .store import ClientStore
from .utils import chunked
from .validation import RowIssue

DEFAULT_BATCH_SIZE = 100


@dataclass
class ImportSummary:
    job_id: int
    status: str
    total: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    batches: int = 0
    error: str | None = None

    @property
    def successful(self) -> int:
        return self.created + self.updated

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "total": self.total,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "successful": self.successful,
            "skipped": self.skipped,
            "failed": self.failed,
            "batches": self.batches,
            "error": self.error,
        }


@dataclass
class _BatchOutcome:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def as_metrics(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated, "skipped": self.skipped, "failed": self.failed}


class ImportExecutor:
    """Apply a job's rows to the client store according to its duplicate strategy."""

    def __init__(
        self,
        job_id: int,
        *,
        storage: BlobStorage | None = None,
        batch_size: int | None = None,
        session: Session | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self.job_id = job_id
        self.session = session or db.session
        self.storage = storage or LocalBlobStorage.from_app()
        self.batch_size = batch_size or current_app.config.get("EXCHANGE_BATCH_SIZE", DEFAULT_BATCH_SIZE)
        self.audit_sink = audit_sink if audit_sink is not None else LoggingAuditSink()

    def run(self) -> ImportSummary:
        job = JobRegistry(session=self.session).get(self.job_id, refresh=True)
        if job.kind is not ExchangeJobKind.IMPORT:
            raise ProcessingError(self.job_id, "not an import job")
        registry = JobRegistry(
            job.organization_id,
            session=self.session,
            audit_sink=self.audit_sink,
            user_id=job.created_by_user_id,
        )
        summary = ImportSummary(job_id=self.job_id, status=job.status.value)
        if job.status is ExchangeJobStatus.CANCELLED:
            return summary
        if job.status is not ExchangeJobStatus.PROCESSING:
            raise JobStateError(self.job_id, job.status.value, f"Import job {self.job_id} is not processing.")

        try:
            parsed = parse_file(
                self.storage.get(job.storage_key),
                job.file_format,
                encoding=job.encoding,
                header_rows=job.header_rows,
                delimiter=job.delimiter,
            )
        except (ParseError, StorageError) as exc:
            registry.fail(self.job_id, str(exc))
            summary.status = ExchangeJobStatus.FAILED.value
            summary.error = str(exc)
            return summary

        try:
            return self._execute(job, registry, parsed.rows, summary)
        except Exception as exc:
            self.session.rollback()
            registry.fail(self.job_id, str(exc))
            current_app.logger.exception(
                "Exchange import failed",
                extra={"exchange_job_id": self.job_id, "exchange_error": str(exc)},
            )
            raise

    def _execute(
        self,
        job,
        registry: JobRegistry,
        rows: tuple[ParsedRow, ...],
        summary: ImportSummary,
    ) -> ImportSummary:
        mapping_set = MappingSet.from_payload(job.mapping_json)
        store = ClientStore(job.organization_id, session=self.session)
        strategy = job.duplicate_strategy or DuplicateStrategy.SKIP
        key_field = job.duplicate_key_field if mapping_set.for_target(job.duplicate_key_field or "") else None
        key_map = store.key_map(key_field) if key_field else {}
        invalid_rows = registry.invalid_row_numbers(self.job_id)

        summary.total = len(rows)
        if job.total_records != summary.total:
            registry.set_total(self.job_id, summary.total)

        cancelled = False
        for batch in chunked(rows, self.batch_size):
            if registry.is_cancelled(self.job_id):
                cancelled = True
                break
            started = time.perf_counter()
            outcome = _BatchOutcome()
            issues: list[RowIssue] = []
            for row in batch:
                if row.row_number in invalid_rows:
                    outcome.failed += 1
                    continue
                issue = self._apply_row(store, mapping_set.resolve_row(row), strategy, key_field, key_map, outcome)
                if issue is not None:
                    issues.append(issue)

            for issue in issues:
                registry.add_row_error(self.job_id, issue)
            if not registry.advance(
                self.job_id,
                processed=len(batch),
                successful=outcome.created + outcome.updated,
                failed=outcome.failed,
                skipped=outcome.skipped,
            ):
                # Cancelled between the boundary check and now.
                self.session.rollback()
                cancelled = True
                break
            self.session.commit()

            summary.batches += 1
            summary.processed += len(batch)
            summary.created += outcome.created
            summary.updated += outcome.updated
            summary.skipped += outcome.skipped
            summary.failed += outcome.failed
            ExchangeMonitoring.record_batch(
                kind=ExchangeJobKind.IMPORT.value,
                duration_seconds=time.perf_counter() - started,
                outcomes=outcome.as_metrics(),
            )
            current_app.logger.debug(
                "Exchange import batch committed",
                extra={"exchange_job_id": self.job_id, "exchange_batch": summary.batches, **outcome.as_metrics()},
            )

        if cancelled or not registry.complete(self.job_id):
            summary.status = registry.current_status(self.job_id).value
            current_app.logger.info(
                "Exchange import stopped before completion",
                extra={"exchange_job_id": self.job_id, "exchange_status": summary.status, **summary.as_dict()},
            )
            return summary

        summary.status = ExchangeJobStatus.COMPLETED.value
        current_app.logger.info(
            "Exchange import completed",
            extra={
                "exchange_job_id": self.job_id,
                "exchange_rows_processed": summary.processed,
                "exchange_rows_created": summary.created,
                "exchange_rows_updated": summary.updated,
                "exchange_rows_skipped": summary.skipped,
                "exchange_rows_failed": summary.failed,
            },
        )
        return summary

    def _apply_row(
        self,
        store: ClientStore,
        row: ResolvedRow,
        strategy: DuplicateStrategy,
        key_field: str | None,
        key_map: dict[str, int],
        outcome: _BatchOutcome,
    ) -> RowIssue | None:
        key = normalize_key(key_field, row.values.get(key_field)) if key_field else None
        existing_id = key_map.get(key) if key is not None else None
        if existing_id is not None and strategy is DuplicateStrategy.SKIP:
            outcome.skipped += 1
            return None

        client = None
        try:
            with self.session.begin_nested():
                existing = store.get(existing_id) if existing_id is not None else None
                if existing is not None and strategy is DuplicateStrategy.UPDATE:
                    store.update(existing, row.values)
                else:
                    client = store.create(row.values)
        except (SQLAlchemyError, ValueError) as exc:
            outcome.failed += 1
            return RowIssue(
                row_number=row.row_number,
                field_name=None,
                error_kind=RowErrorKind.PROCESSING_ERROR,
                message=str(exc),
            )
        if client is None:
            outcome.updated += 1
        else:
            outcome.created += 1
            if key is not None:
                key_map.setdefault(key, client.id)
        return None
