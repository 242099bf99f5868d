"""
Job registry: lifecycle, progress and querying of exchange jobs.

Status changes are compare-and-set updates guarded by the expected current
status, so when a cancel request and a finishing executor race, whichever
commits first wins and the loser observes a failed transition instead of
overwriting a terminal state. Counters move forward in a single UPDATE per
batch so pollers never see ``processed`` decrease.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from flask import current_app
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from config.monitoring import ExchangeMonitoring
from registry_app.models import db
from registry_app.models.exchange import (
    ExchangeJob,
    ExchangeJobKind,
    ExchangeJobStatus,
    JobRowError,
    RowErrorKind,
)

from .audit import AuditEvent, AuditSink, emit_safely
from .errors import JobNotFoundError, JobStateError
from .validation import RowIssue

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100

# Source states from which each target state may be entered.
ALLOWED_SOURCES: dict[ExchangeJobStatus, frozenset[ExchangeJobStatus]] = {
    ExchangeJobStatus.VALIDATING: frozenset({ExchangeJobStatus.PENDING, ExchangeJobStatus.VALIDATING}),
    ExchangeJobStatus.PROCESSING: frozenset({ExchangeJobStatus.PENDING, ExchangeJobStatus.VALIDATING}),
    ExchangeJobStatus.COMPLETED: frozenset({ExchangeJobStatus.PROCESSING}),
    ExchangeJobStatus.FAILED: frozenset(
        {ExchangeJobStatus.PENDING, ExchangeJobStatus.VALIDATING, ExchangeJobStatus.PROCESSING}
    ),
    ExchangeJobStatus.CANCELLED: frozenset(
        {ExchangeJobStatus.PENDING, ExchangeJobStatus.VALIDATING, ExchangeJobStatus.PROCESSING}
    ),
}

VALIDATION_ERROR_KINDS = (RowErrorKind.REQUIRED, RowErrorKind.INVALID_FORMAT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; they are stored as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def compute_progress(total: int, processed: int) -> float:
    if total <= 0:
        return 0.0
    return round(min(processed, total) / total * 100.0, 1)


def estimate_seconds_remaining(job: ExchangeJob, *, now: datetime | None = None) -> float | None:
    """
    Linear ETA from the average time per processed record.

    ``None`` until at least one record has been processed; 0 once terminal.
    """
    if job.status.is_terminal:
        return 0.0
    started_at = _as_aware(job.started_at)
    if started_at is None or job.processed_records <= 0:
        return None
    now = now or _utcnow()
    elapsed = max((now - started_at).total_seconds(), 0.0)
    remaining = max(job.total_records - job.processed_records, 0)
    return round(elapsed / job.processed_records * remaining, 1)


@dataclass(slots=True)
class JobStatus:
    """Point-in-time view of a job for status polling."""

    id: int
    kind: str
    status: str
    file_name: str | None
    file_format: str | None
    total: int
    processed: int
    successful: int
    failed: int
    skipped: int
    progress_percent: float
    error_count: int
    result_artifact_ref: str | None
    error_summary: str | None
    created_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    estimated_seconds_remaining: float | None

    @classmethod
    def from_job(cls, job: ExchangeJob, *, error_count: int, now: datetime | None = None) -> "JobStatus":
        return cls(
            id=job.id,
            kind=job.kind.value,
            status=job.status.value,
            file_name=job.file_name,
            file_format=job.file_format.value if job.file_format else None,
            total=job.total_records,
            processed=job.processed_records,
            successful=job.successful_records,
            failed=job.failed_records,
            skipped=job.skipped_records,
            progress_percent=compute_progress(job.total_records, job.processed_records),
            error_count=error_count,
            result_artifact_ref=job.result_storage_key,
            error_summary=job.error_summary,
            created_at=_as_aware(job.created_at),
            started_at=_as_aware(job.started_at),
            completed_at=_as_aware(job.completed_at),
            estimated_seconds_remaining=estimate_seconds_remaining(job, now=now),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "file_name": self.file_name,
            "file_format": self.file_format,
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "progress_percent": self.progress_percent,
            "error_count": self.error_count,
            "result_artifact_ref": self.result_artifact_ref,
            "error_summary": self.error_summary,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
        }


@dataclass(frozen=True)
class JobFilters:
    """Canonical set of filter options applied to job listings."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    kinds: tuple[ExchangeJobKind, ...] = field(default_factory=tuple)
    statuses: tuple[ExchangeJobStatus, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        kinds: Iterable[str] | None = None,
        statuses: Iterable[str] | None = None,
    ) -> "JobFilters":
        """
        Coerce mixed user input into a validated ``JobFilters`` instance.
        """
        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
        resolved_kinds = tuple(_coerce_enum(ExchangeJobKind, value) for value in (kinds or ()) if value)
        resolved_statuses = tuple(_coerce_enum(ExchangeJobStatus, value) for value in (statuses or ()) if value)
        return cls(page=resolved_page, page_size=resolved_size, kinds=resolved_kinds, statuses=resolved_statuses)


def _coerce_positive_int(value: int | str | None, *, fallback: int) -> int:
    if value is None or value == "":
        return fallback
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Expected a positive integer, got {value!r}.") from None
    if number < 1:
        raise ValueError(f"Expected a positive integer, got {value!r}.")
    return number


def _coerce_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported {enum_cls.__name__} value '{value}'.") from None


class JobRegistry:
    """
    Create, transition and query exchange jobs.

    When ``organization_id`` is set every lookup is restricted to that tenant;
    background workers construct an unscoped registry from a job id alone.
    """

    def __init__(
        self,
        organization_id: int | None = None,
        *,
        session: Session | None = None,
        audit_sink: AuditSink | None = None,
        user_id: int | None = None,
    ) -> None:
        self.organization_id = organization_id
        self.session = session or db.session
        self.audit_sink = audit_sink
        self.user_id = user_id

    # Lookup ---------------------------------------------------------------

    def get(self, job_id: int, *, refresh: bool = False) -> ExchangeJob:
        job = self.session.get(ExchangeJob, job_id, populate_existing=refresh)
        if job is None or (self.organization_id is not None and job.organization_id != self.organization_id):
            raise JobNotFoundError(job_id)
        return job

    def current_status(self, job_id: int) -> ExchangeJobStatus:
        """Read the committed status straight from the database."""
        status = self.session.execute(select(ExchangeJob.status).where(ExchangeJob.id == job_id)).scalar_one_or_none()
        if status is None:
            raise JobNotFoundError(job_id)
        return status

    def is_cancelled(self, job_id: int) -> bool:
        return self.current_status(job_id) is ExchangeJobStatus.CANCELLED

    # Creation -------------------------------------------------------------

    def create(self, kind: ExchangeJobKind, **attributes: Any) -> ExchangeJob:
        if self.organization_id is None:
            raise ValueError("A tenant-scoped registry is required to create jobs.")
        job = ExchangeJob(
            organization_id=self.organization_id,
            kind=kind,
            status=ExchangeJobStatus.PENDING,
            created_by_user_id=self.user_id,
            **attributes,
        )
        self.session.add(job)
        self.session.commit()
        ExchangeMonitoring.record_transition(kind=kind.value, status=ExchangeJobStatus.PENDING.value)
        self._audit(job, "EXCHANGE_JOB_CREATED", {"file_name": job.file_name})
        current_app.logger.info(
            "Exchange job created",
            extra={
                "exchange_job_id": job.id,
                "exchange_job_kind": kind.value,
                "exchange_organization_id": job.organization_id,
            },
        )
        return job

    # Transitions ----------------------------------------------------------

    def transition(
        self,
        job_id: int,
        target: ExchangeJobStatus,
        *,
        values: Mapping[str, Any] | None = None,
        commit: bool = True,
    ) -> bool:
        """
        Move a job into ``target`` if its current status allows it.

        Returns False when the job had already left every allowed source
        status (for example because it was cancelled concurrently).
        """
        sources = ALLOWED_SOURCES.get(target)
        if not sources:
            raise ValueError(f"{target.value} is not a transition target.")
        job = self.get(job_id)
        payload: dict[str, Any] = {"status": target}
        now = _utcnow()
        if target is ExchangeJobStatus.PROCESSING:
            payload.setdefault("started_at", now)
        if target.is_terminal:
            payload["completed_at"] = now
        payload.update(values or {})

        result = self.session.execute(
            update(ExchangeJob)
            .where(ExchangeJob.id == job_id, ExchangeJob.status.in_(tuple(sources)))
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if commit:
            self.session.commit()
        job = self.get(job_id, refresh=True)
        if changed:
            ExchangeMonitoring.record_transition(kind=job.kind.value, status=target.value)
            if commit:
                self._audit(job, f"EXCHANGE_JOB_{target.name}", {"error_summary": job.error_summary})
        return changed

    def begin_validation(self, job_id: int) -> ExchangeJob:
        if not self.transition(job_id, ExchangeJobStatus.VALIDATING):
            job = self.get(job_id, refresh=True)
            raise JobStateError(job_id, job.status.value, f"Job {job_id} cannot be validated while {job.status.value}.")
        return self.get(job_id)

    def start_processing(self, job_id: int, *, total: int | None = None) -> bool:
        values = {"total_records": total} if total is not None else None
        return self.transition(job_id, ExchangeJobStatus.PROCESSING, values=values)

    def complete(self, job_id: int, *, values: Mapping[str, Any] | None = None) -> bool:
        return self.transition(job_id, ExchangeJobStatus.COMPLETED, values=values)

    def fail(self, job_id: int, message: str) -> bool:
        changed = self.transition(job_id, ExchangeJobStatus.FAILED, values={"error_summary": message[:4000]})
        if changed:
            current_app.logger.warning(
                "Exchange job failed",
                extra={"exchange_job_id": job_id, "exchange_error": message},
            )
        return changed

    def cancel(self, job_id: int) -> ExchangeJob:
        """
        Request cancellation. Running executors stop at their next batch boundary.

        Raises:
            JobStateError: The job already reached a terminal status.
        """
        job = self.get(job_id)
        if not self.transition(job_id, ExchangeJobStatus.CANCELLED):
            job = self.get(job_id, refresh=True)
            raise JobStateError(job_id, job.status.value, f"Job {job_id} is {job.status.value} and cannot be cancelled.")
        current_app.logger.info("Exchange job cancelled", extra={"exchange_job_id": job.id})
        return self.get(job_id)

    # Progress -------------------------------------------------------------

    def set_total(self, job_id: int, total: int) -> None:
        self.session.execute(
            update(ExchangeJob)
            .where(ExchangeJob.id == job_id)
            .values(total_records=total)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def advance(
        self,
        job_id: int,
        *,
        processed: int,
        successful: int = 0,
        failed: int = 0,
        skipped: int = 0,
    ) -> bool:
        """
        Add one batch's outcomes to the job counters in a single statement.

        Does not commit; the caller commits the batch's writes and counters
        together. Returns False when the job is no longer processing.
        """
        result = self.session.execute(
            update(ExchangeJob)
            .where(ExchangeJob.id == job_id, ExchangeJob.status == ExchangeJobStatus.PROCESSING)
            .values(
                processed_records=ExchangeJob.processed_records + processed,
                successful_records=ExchangeJob.successful_records + successful,
                failed_records=ExchangeJob.failed_records + failed,
                skipped_records=ExchangeJob.skipped_records + skipped,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # Row errors -----------------------------------------------------------

    def replace_validation_errors(self, job_id: int, issues: Iterable[RowIssue]) -> int:
        """Swap the job's validation errors for ``issues`` (re-validation is idempotent)."""
        self.session.execute(
            delete(JobRowError)
            .where(JobRowError.job_id == job_id, JobRowError.error_kind.in_(VALIDATION_ERROR_KINDS))
            .execution_options(synchronize_session=False)
        )
        count = 0
        for issue in issues:
            self.add_row_error(job_id, issue)
            count += 1
        return count

    def add_row_error(self, job_id: int, issue: RowIssue) -> JobRowError:
        error = JobRowError(
            job_id=job_id,
            row_number=issue.row_number,
            field_name=issue.field_name,
            error_kind=issue.error_kind,
            message=issue.message,
            raw_value=issue.raw_value,
        )
        self.session.add(error)
        return error

    def invalid_row_numbers(self, job_id: int) -> set[int]:
        stmt = select(JobRowError.row_number).where(
            JobRowError.job_id == job_id,
            JobRowError.error_kind.in_(VALIDATION_ERROR_KINDS),
        )
        return set(self.session.execute(stmt).scalars())

    def count_row_errors(self, job_id: int) -> int:
        stmt = select(func.count(JobRowError.id)).where(JobRowError.job_id == job_id)
        return int(self.session.execute(stmt).scalar_one())

    def list_row_errors(self, job_id: int, *, page: int = 1, page_size: int = 100) -> tuple[list[JobRowError], int]:
        self.get(job_id)
        page = max(page, 1)
        page_size = max(min(page_size, 1000), 1)
        total = self.count_row_errors(job_id)
        stmt = (
            select(JobRowError)
            .where(JobRowError.job_id == job_id)
            .order_by(JobRowError.row_number, JobRowError.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(self.session.execute(stmt).scalars()), total

    # Queries --------------------------------------------------------------

    def status(self, job_id: int) -> JobStatus:
        job = self.get(job_id, refresh=True)
        return JobStatus.from_job(job, error_count=self.count_row_errors(job_id))

    def list_jobs(self, filters: JobFilters | None = None) -> tuple[list[JobStatus], int]:
        filters = filters or JobFilters()
        stmt = select(ExchangeJob)
        count_stmt = select(func.count(ExchangeJob.id))
        conditions = []
        if self.organization_id is not None:
            conditions.append(ExchangeJob.organization_id == self.organization_id)
        if filters.kinds:
            conditions.append(ExchangeJob.kind.in_(filters.kinds))
        if filters.statuses:
            conditions.append(ExchangeJob.status.in_(filters.statuses))
        if conditions:
            stmt = stmt.where(*conditions)
            count_stmt = count_stmt.where(*conditions)
        total = int(self.session.execute(count_stmt).scalar_one())
        stmt = (
            stmt.order_by(ExchangeJob.created_at.desc(), ExchangeJob.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        )
        jobs = list(self.session.execute(stmt).scalars())
        error_counts = self._error_counts([job.id for job in jobs])
        now = _utcnow()
        return [JobStatus.from_job(job, error_count=error_counts.get(job.id, 0), now=now) for job in jobs], total

    def _error_counts(self, job_ids: list[int]) -> dict[int, int]:
        if not job_ids:
            return {}
        stmt = (
            select(JobRowError.job_id, func.count(JobRowError.id))
            .where(JobRowError.job_id.in_(job_ids))
            .group_by(JobRowError.job_id)
        )
        return {job_id: int(count) for job_id, count in self.session.execute(stmt)}

    def delete(self, job_id: int) -> None:
        """Delete a finished job together with its row errors."""
        job = self.get(job_id, refresh=True)
        if not job.status.is_terminal:
            raise JobStateError(job_id, job.status.value, f"Job {job_id} is still {job.status.value}; cancel it first.")
        event = self._event(job, "EXCHANGE_JOB_DELETED", {})
        self.session.delete(job)
        self.session.commit()
        emit_safely(self.audit_sink, event)

    # Audit ----------------------------------------------------------------

    def _event(self, job: ExchangeJob, action: str, details: Mapping[str, Any]) -> AuditEvent:
        return AuditEvent(
            action=action,
            organization_id=job.organization_id,
            user_id=self.user_id,
            entity_type="exchange_job",
            entity_id=job.id,
            details={"kind": job.kind.value, "status": job.status.value, **details},
        )

    def _audit(self, job: ExchangeJob, action: str, details: Mapping[str, Any]) -> None:
        emit_safely(self.audit_sink, self._event(job, action, details))
