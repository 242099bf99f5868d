"""
Command facade for the exchange engine.

Every command is scoped to one organization and acting user. Long-running
work (import and export execution) is handed to the Celery worker when
``EXCHANGE_WORKER_ENABLED`` is set and runs inline otherwise; callers always
receive the job id synchronously and poll ``get_job_status`` for progress.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy.orm import Session

from registry_app.models import db
from registry_app.models.exchange import (
    DuplicateStrategy,
    ExchangeJob,
    ExchangeJobKind,
    ExchangeJobStatus,
    FileFormat,
    JobRowError,
)

from .audit import AuditSink, LoggingAuditSink
from .bulk import BulkMutationExecutor, BulkMutationResult, ReversalResult
from .celery_app import get_celery_app
from .errors import JobStateError, MappingError, ParseError, StorageError
from .exporter import ExportExecutor, ExportFilter, validate_export_fields, validate_export_sort
from .importer import ImportExecutor
from .jobs import JobFilters, JobRegistry, JobStatus
from .mapping import MappingSet, resolve_target_field
from .parsing import detect_format, parse_file
from .storage import BlobStorage, LocalBlobStorage
from .store import ClientStore
from .templates import MappingTemplateService
from .utils import build_storage_key, is_worker_enabled, max_upload_bytes
from .validation import ValidationEngine, ValidationReport

IMPORT_TASK_NAME = "exchange.run_import_job"
EXPORT_TASK_NAME = "exchange.run_export_job"


def _coerce_strategy(value: DuplicateStrategy | str | None) -> DuplicateStrategy:
    if value is None or value == "":
        return DuplicateStrategy.SKIP
    if isinstance(value, DuplicateStrategy):
        return value
    try:
        return DuplicateStrategy(str(value).strip().lower())
    except ValueError:
        raise MappingError(f"Unknown duplicate strategy '{value}'.") from None


class ExchangeService:
    """Import, export, job and bulk-mutation commands for one organization."""

    def __init__(
        self,
        organization_id: int,
        *,
        user_id: int | None = None,
        session: Session | None = None,
        storage: BlobStorage | None = None,
        audit_sink: AuditSink | None = None,
        inline: bool | None = None,
    ) -> None:
        self.organization_id = organization_id
        self.user_id = user_id
        self.inline = inline
        self.session = session or db.session
        self.storage = storage or LocalBlobStorage.from_app()
        self.audit_sink = audit_sink if audit_sink is not None else LoggingAuditSink()
        self.registry = JobRegistry(
            organization_id,
            session=self.session,
            audit_sink=self.audit_sink,
            user_id=user_id,
        )
        self.templates = MappingTemplateService(organization_id, session=self.session, user_id=user_id)

    # Import ---------------------------------------------------------------

    def _resolve_mapping(
        self,
        mapping: MappingSet | Sequence[Mapping[str, Any]] | None,
        template_id: int | None,
        overrides: Iterable[Mapping[str, Any]],
    ) -> MappingSet:
        if template_id is not None:
            base = self.templates.mapping_set(template_id)
            return base.override(overrides)
        if isinstance(mapping, MappingSet):
            return mapping.override(overrides) if overrides else mapping
        if not mapping:
            raise MappingError("A column mapping or mapping template is required.")
        resolved = MappingSet.build(mapping)
        return resolved.override(overrides) if overrides else resolved

    def create_import_job(
        self,
        data: bytes,
        file_name: str,
        *,
        mapping: MappingSet | Sequence[Mapping[str, Any]] | None = None,
        template_id: int | None = None,
        overrides: Iterable[Mapping[str, Any]] = (),
        duplicate_strategy: DuplicateStrategy | str | None = None,
        duplicate_key_field: str | None = None,
        file_format: FileFormat | str | None = None,
        encoding: str | None = None,
        header_rows: int = 1,
        delimiter: str | None = None,
        block_on_validation_errors: bool = False,
    ) -> ExchangeJob:
        """
        Register an import job for an uploaded file.

        The file is parsed once up front so unreadable uploads are rejected
        before a job exists.

        Raises:
            ParseError: The file is too large, of an unsupported type or unreadable.
            MappingError: The mapping, template or strategy is invalid.
        """
        max_bytes = max_upload_bytes()
        if len(data) > max_bytes:
            raise ParseError(f"File exceeds the {max_bytes // (1024 * 1024)} MB upload limit.")
        resolved_format = FileFormat(file_format) if file_format else detect_format(file_name)
        resolved_encoding = encoding or current_app.config.get("EXCHANGE_DEFAULT_ENCODING")
        parsed = parse_file(
            data,
            resolved_format,
            encoding=resolved_encoding,
            header_rows=header_rows,
            delimiter=delimiter,
        )

        mapping_set = self._resolve_mapping(mapping, template_id, overrides)
        strategy = _coerce_strategy(duplicate_strategy)
        key_field = duplicate_key_field or current_app.config.get("EXCHANGE_DUPLICATE_KEY_FIELD", "tax_id")
        key_field = resolve_target_field(key_field).name

        storage_key = build_storage_key(
            f"imports/{self.organization_id}",
            file_name,
            default_extension=f".{resolved_format.value}",
        )
        self.storage.put(storage_key, data)
        return self.registry.create(
            ExchangeJobKind.IMPORT,
            file_name=file_name,
            file_format=resolved_format,
            file_size=len(data),
            storage_key=storage_key,
            header_rows=header_rows,
            encoding=resolved_encoding,
            delimiter=parsed.delimiter,
            mapping_json=mapping_set.to_payload(),
            duplicate_strategy=strategy,
            duplicate_key_field=key_field,
            block_on_validation_errors=block_on_validation_errors,
            total_records=parsed.row_count,
        )

    def validate_import(self, job_id: int) -> ValidationReport:
        """
        Validate every row of the job's file and persist the findings.

        Re-validation replaces earlier REQUIRED / INVALID_FORMAT errors.
        """
        job = self.registry.begin_validation(job_id)
        try:
            parsed = parse_file(
                self.storage.get(job.storage_key),
                job.file_format,
                encoding=job.encoding,
                header_rows=job.header_rows,
                delimiter=job.delimiter,
            )
        except (ParseError, StorageError) as exc:
            self.registry.fail(job_id, str(exc))
            raise

        try:
            report = self._run_validation(job, parsed)
        except Exception as exc:
            self.session.rollback()
            self.registry.fail(job_id, f"Validation failed unexpectedly: {exc}")
            current_app.logger.exception(
                "Exchange import validation failed",
                extra={"exchange_job_id": job_id, "exchange_error": str(exc)},
            )
            raise

        current_app.logger.info(
            "Exchange import validated",
            extra={
                "exchange_job_id": job_id,
                "exchange_valid_records": report.valid_records,
                "exchange_total_records": report.total_records,
                "exchange_error_count": len(report.errors),
                "exchange_duplicate_count": len(report.duplicates),
            },
        )
        if job.block_on_validation_errors and not report.is_valid:
            self.registry.fail(
                job_id,
                f"Validation failed: {len(report.errors)} error(s) in {len(report.invalid_rows)} row(s).",
            )
        return report

    def _run_validation(self, job: ExchangeJob, parsed) -> ValidationReport:
        mapping_set = MappingSet.from_payload(job.mapping_json)
        key_field = job.duplicate_key_field if mapping_set.for_target(job.duplicate_key_field or "") else None
        existing_keys = ClientStore(self.organization_id, session=self.session).key_map(key_field) if key_field else {}
        report = ValidationEngine(mapping_set, key_field=key_field, existing_keys=existing_keys).validate(
            parsed.rows,
            headers=parsed.headers,
        )

        self.registry.replace_validation_errors(job.id, report.errors)
        job.validation_summary_json = {
            **report.summary(),
            "duplicates": [entry.as_dict() for entry in report.duplicates],
        }
        job.total_records = report.total_records
        self.session.commit()
        return report

    def start_import(self, job_id: int) -> JobStatus:
        """
        Move a validated job to PROCESSING and dispatch it.

        A job still PENDING is validated first.
        """
        job = self.registry.get(job_id, refresh=True)
        if job.kind is not ExchangeJobKind.IMPORT:
            raise JobStateError(job_id, job.status.value, f"Job {job_id} is not an import job.")
        if job.status is ExchangeJobStatus.PENDING:
            self.validate_import(job_id)
            job = self.registry.get(job_id, refresh=True)
        if job.status is not ExchangeJobStatus.VALIDATING:
            if job.status is ExchangeJobStatus.FAILED:
                return self.registry.status(job_id)
            raise JobStateError(job_id, job.status.value, f"Job {job_id} cannot start while {job.status.value}.")
        if not self.registry.start_processing(job_id):
            status = self.registry.current_status(job_id)
            raise JobStateError(job_id, status.value, f"Job {job_id} cannot start while {status.value}.")
        self._dispatch(IMPORT_TASK_NAME, job_id)
        return self.registry.status(job_id)

    def submit_import(self, data: bytes, file_name: str, **options: Any) -> JobStatus:
        """Create, validate and start an import in one call."""
        job = self.create_import_job(data, file_name, **options)
        return self.start_import(job.id)

    # Export ---------------------------------------------------------------

    def start_export(
        self,
        *,
        file_format: FileFormat | str = FileFormat.CSV,
        fields: Iterable[str] | None = None,
        filters: Mapping[str, Any] | ExportFilter | None = None,
        sort: str | None = None,
        file_name: str | None = None,
    ) -> JobStatus:
        """
        Register and dispatch an export.

        Raises:
            MappingError: Unknown export field or sort.
            ValueError: The filter cannot be interpreted.
        """
        resolved_format = FileFormat(file_format)
        resolved_fields = validate_export_fields(fields)
        resolved_sort = validate_export_sort(sort)
        export_filter = filters if isinstance(filters, ExportFilter) else ExportFilter.coerce(filters)
        if not file_name:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
            file_name = f"clients-{stamp}.{resolved_format.value}"

        job = self.registry.create(
            ExchangeJobKind.EXPORT,
            file_name=file_name,
            file_format=resolved_format,
            export_fields_json=list(resolved_fields),
            export_filter_json=export_filter.to_payload(),
            export_sort=resolved_sort,
        )
        self._dispatch(EXPORT_TASK_NAME, job.id)
        return self.registry.status(job.id)

    def download_export(self, job_id: int) -> bytes:
        job = self.registry.get(job_id, refresh=True)
        if job.kind is not ExchangeJobKind.EXPORT or job.status is not ExchangeJobStatus.COMPLETED:
            raise JobStateError(job_id, job.status.value, f"Job {job_id} has no export artifact.")
        return self.storage.get(job.result_storage_key)

    # Jobs -----------------------------------------------------------------

    def cancel_job(self, job_id: int) -> JobStatus:
        self.registry.cancel(job_id)
        return self.registry.status(job_id)

    def get_job_status(self, job_id: int) -> JobStatus:
        return self.registry.status(job_id)

    def list_jobs(
        self,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        kinds: Iterable[str] | None = None,
        statuses: Iterable[str] | None = None,
    ) -> tuple[list[JobStatus], int]:
        filters = JobFilters.coerce(
            page=page,
            page_size=page_size or current_app.config.get("EXCHANGE_JOBS_PAGE_SIZE_DEFAULT"),
            kinds=kinds,
            statuses=statuses,
        )
        return self.registry.list_jobs(filters)

    def list_row_errors(self, job_id: int, *, page: int = 1, page_size: int = 100) -> tuple[list[JobRowError], int]:
        return self.registry.list_row_errors(job_id, page=page, page_size=page_size)

    def delete_job(self, job_id: int) -> None:
        """Delete a terminal job, its row errors and its stored files."""
        job = self.registry.get(job_id, refresh=True)
        keys = [key for key in (job.storage_key, job.result_storage_key) if key]
        self.registry.delete(job_id)
        for key in keys:
            self.storage.delete(key)

    # Bulk mutations -------------------------------------------------------

    def _bulk_executor(self) -> BulkMutationExecutor:
        return BulkMutationExecutor(
            self.organization_id,
            user_id=self.user_id,
            session=self.session,
            audit_sink=self.audit_sink,
        )

    def execute_bulk_mutation(self, client_ids: Sequence[Any], operation: Mapping[str, Any]) -> BulkMutationResult:
        return self._bulk_executor().execute(client_ids, operation)

    def reverse_bulk_mutation(self, mutation_id: int) -> ReversalResult:
        return self._bulk_executor().reverse(mutation_id)

    def list_bulk_mutations(self, *, page: int = 1, page_size: int = 25, operation_type: str | None = None):
        return self._bulk_executor().list(page=page, page_size=page_size, operation_type=operation_type)

    # Dispatch -------------------------------------------------------------

    def _dispatch(self, task_name: str, job_id: int) -> None:
        inline = self.inline if self.inline is not None else not is_worker_enabled()
        if not inline:
            celery_app = get_celery_app(current_app)
            if celery_app is None:
                raise JobStateError(job_id, "pending", "Exchange Celery app is unavailable.")
            try:
                async_result = celery_app.send_task(task_name, kwargs={"job_id": job_id})
            except Exception as exc:
                self.registry.fail(job_id, f"Failed to enqueue job: {exc}")
                raise
            current_app.logger.info(
                "Exchange job queued",
                extra={"exchange_job_id": job_id, "exchange_task_id": async_result.id, "exchange_task": task_name},
            )
            return

        if task_name == IMPORT_TASK_NAME:
            executor = ImportExecutor(job_id, storage=self.storage, session=self.session, audit_sink=self.audit_sink)
        else:
            executor = ExportExecutor(job_id, storage=self.storage, session=self.session, audit_sink=self.audit_sink)
        executor.run()
