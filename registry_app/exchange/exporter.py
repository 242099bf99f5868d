"""
Export executor.

Writes a filtered client set to CSV (UTF-8 with BOM, RFC 4180 quoting, CRLF)
or XLSX and stores the artifact in blob storage. Records are read in a
deterministic order so two exports of unchanged data are identical.
"""

from __future__ import annotations

import csv
import json
import io
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Sequence

from flask import current_app
from openpyxl import Workbook
from sqlalchemy.orm import Session

from config.monitoring import ExchangeMonitoring
from registry_app.models import Client, ClientStatus, db
from registry_app.models.exchange import ExchangeJobKind, ExchangeJobStatus, FileFormat

from .audit import AuditSink, LoggingAuditSink
from .errors import MappingError, ProcessingError, StorageError
from .jobs import JobRegistry
from .mapping import CUSTOM_FIELD_PREFIX
from .storage import BlobStorage, LocalBlobStorage
from .store import DEFAULT_SORT, VALID_SORT_FIELDS, ClientStore
from .utils import build_storage_key, chunked

DEFAULT_BATCH_SIZE = 100
CSV_LINE_TERMINATOR = "\r\n"
XLSX_SHEET_TITLE = "Clients"


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


FIELD_EXTRACTORS: dict[str, Callable[[Client], Any]] = {
    "id": lambda client: client.id,
    "client_type": lambda client: _enum_value(client.client_type),
    "display_name": lambda client: client.display_name,
    "company_name": lambda client: client.company_name,
    "first_name": lambda client: client.first_name,
    "last_name": lambda client: client.last_name,
    "tax_id": lambda client: client.tax_id,
    "regon": lambda client: client.regon,
    "email": lambda client: client.email,
    "phone": lambda client: client.phone,
    "street": lambda client: client.street,
    "city": lambda client: client.city,
    "postal_code": lambda client: client.postal_code,
    "country": lambda client: client.country,
    "notes": lambda client: client.notes,
    "status": lambda client: _enum_value(client.status),
    "manager_id": lambda client: client.manager_id,
    "tags": lambda client: ", ".join(tag.name for tag in client.tags),
    "created_at": lambda client: _timestamp(client.created_at),
    "updated_at": lambda client: _timestamp(client.updated_at),
}

DEFAULT_EXPORT_FIELDS: tuple[str, ...] = (
    "display_name",
    "client_type",
    "tax_id",
    "regon",
    "email",
    "phone",
    "street",
    "city",
    "postal_code",
    "country",
    "status",
)


def validate_export_fields(fields: Iterable[str] | None) -> tuple[str, ...]:
    """
    Normalize a requested field list, rejecting unknown names.

    Raises:
        MappingError: A field is neither extractable nor a ``custom.<key>`` name.
    """
    requested = tuple(name.strip() for name in (fields or ()) if name and name.strip())
    if not requested:
        return DEFAULT_EXPORT_FIELDS
    unknown = [
        name
        for name in requested
        if name not in FIELD_EXTRACTORS
        and not (name.startswith(CUSTOM_FIELD_PREFIX) and len(name) > len(CUSTOM_FIELD_PREFIX))
    ]
    if unknown:
        raise MappingError(f"Unknown export field(s): {', '.join(unknown)}.")
    if len(set(requested)) != len(requested):
        raise MappingError("Export fields must not repeat.")
    return requested


def validate_export_sort(sort: str | None) -> str:
    resolved = (sort or DEFAULT_SORT).strip()
    if resolved.lstrip("-") not in VALID_SORT_FIELDS:
        raise MappingError(f"Unsupported export sort '{resolved}'.")
    return resolved


def extract_value(client: Client, field_name: str) -> Any:
    if field_name.startswith(CUSTOM_FIELD_PREFIX):
        value = (client.custom_fields or {}).get(field_name[len(CUSTOM_FIELD_PREFIX) :])
        # Lists and objects are written as JSON text
        if isinstance(value, (Mapping, list, tuple)):
            return json.dumps(value, ensure_ascii=False, sort_keys=True)
        return value
    return FIELD_EXTRACTORS[field_name](client)


def _parse_date(value: Any, *, end_of_day: bool = False) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, dt_time.max if end_of_day else dt_time.min)
    else:
        text = str(value).strip()
        try:
            if len(text) == 10:
                parsed = datetime.combine(date.fromisoformat(text), dt_time.max if end_of_day else dt_time.min)
            else:
                parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid date '{value}'. Use YYYY-MM-DD.") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ExportFilter:
    """Canonical filter applied to exported clients."""

    statuses: tuple[ClientStatus, ...] = ()
    tag_ids: tuple[int, ...] = ()
    created_from: datetime | None = None
    created_to: datetime | None = None
    search: str | None = None
    custom_fields: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, payload: Mapping[str, Any] | None = None) -> "ExportFilter":
        """
        Build a filter from loosely typed input (API payloads, CLI options, stored JSON).

        A date-only ``created_to`` covers the whole day.
        """
        payload = payload or {}
        statuses = []
        for value in payload.get("statuses") or ():
            try:
                statuses.append(value if isinstance(value, ClientStatus) else ClientStatus(str(value).strip().lower()))
            except ValueError:
                raise ValueError(f"Unsupported client status '{value}'.") from None
        try:
            tag_ids = tuple(int(value) for value in payload.get("tag_ids") or ())
        except (TypeError, ValueError):
            raise ValueError("Tag ids must be integers.") from None
        search = (payload.get("search") or "").strip() or None
        custom_fields = payload.get("custom_fields") or {}
        if not isinstance(custom_fields, Mapping):
            raise ValueError("custom_fields must be a mapping of key to value.")
        return cls(
            statuses=tuple(statuses),
            tag_ids=tag_ids,
            created_from=_parse_date(payload.get("created_from")),
            created_to=_parse_date(payload.get("created_to"), end_of_day=True),
            search=search,
            custom_fields=dict(custom_fields),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "statuses": [status.value for status in self.statuses],
            "tag_ids": list(self.tag_ids),
            "created_from": self.created_from.isoformat() if self.created_from else None,
            "created_to": self.created_to.isoformat() if self.created_to else None,
            "search": self.search,
            "custom_fields": dict(self.custom_fields),
        }


class _CsvSink:
    extension = ".csv"

    def __init__(self, headers: Sequence[str]) -> None:
        self.buffer = io.StringIO()
        self.writer = csv.writer(self.buffer, quoting=csv.QUOTE_MINIMAL, lineterminator=CSV_LINE_TERMINATOR)
        self.writer.writerow(headers)

    def write(self, values: Sequence[Any]) -> None:
        self.writer.writerow(["" if value is None else value for value in values])

    def finish(self) -> bytes:
        return self.buffer.getvalue().encode("utf-8-sig")


class _XlsxSink:
    extension = ".xlsx"

    def __init__(self, headers: Sequence[str]) -> None:
        self.workbook = Workbook(write_only=True)
        self.sheet = self.workbook.create_sheet(title=XLSX_SHEET_TITLE)
        self.sheet.append(list(headers))

    def write(self, values: Sequence[Any]) -> None:
        self.sheet.append(list(values))

    def finish(self) -> bytes:
        output = io.BytesIO()
        self.workbook.save(output)
        return output.getvalue()


@dataclass
class ExportSummary:
    job_id: int
    status: str
    total: int = 0
    exported: int = 0
    result_storage_key: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "total": self.total,
            "exported": self.exported,
            "result_storage_key": self.result_storage_key,
            "error": self.error,
        }


class ExportExecutor:
    """Run an export job end to end."""

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

    def run(self) -> ExportSummary:
        job = JobRegistry(session=self.session).get(self.job_id, refresh=True)
        if job.kind is not ExchangeJobKind.EXPORT:
            raise ProcessingError(self.job_id, "not an export job")
        registry = JobRegistry(
            job.organization_id,
            session=self.session,
            audit_sink=self.audit_sink,
            user_id=job.created_by_user_id,
        )
        summary = ExportSummary(job_id=self.job_id, status=job.status.value)
        if job.status is ExchangeJobStatus.PENDING:
            if not registry.start_processing(self.job_id):
                summary.status = registry.current_status(self.job_id).value
                return summary
        elif job.status is ExchangeJobStatus.CANCELLED:
            return summary
        elif job.status is not ExchangeJobStatus.PROCESSING:
            raise ProcessingError(self.job_id, f"export cannot run while {job.status.value}")

        try:
            return self._execute(job, registry, summary)
        except StorageError as exc:
            self.session.rollback()
            registry.fail(self.job_id, str(exc))
            summary.status = ExchangeJobStatus.FAILED.value
            summary.error = str(exc)
            return summary
        except Exception as exc:
            self.session.rollback()
            registry.fail(self.job_id, str(exc))
            current_app.logger.exception(
                "Exchange export failed",
                extra={"exchange_job_id": self.job_id, "exchange_error": str(exc)},
            )
            raise

    def _execute(self, job, registry: JobRegistry, summary: ExportSummary) -> ExportSummary:
        fields = validate_export_fields(job.export_fields_json)
        filters = ExportFilter.coerce(job.export_filter_json)
        store = ClientStore(job.organization_id, session=self.session)
        # Values are read before any commit expires the loaded clients
        rows = [
            [extract_value(client, name) for name in fields]
            for client in store.find_by_filter(
                statuses=filters.statuses,
                tag_ids=filters.tag_ids,
                created_from=filters.created_from,
                created_to=filters.created_to,
                search=filters.search,
                custom_fields=filters.custom_fields,
                sort=job.export_sort,
            )
        ]
        summary.total = len(rows)
        registry.set_total(self.job_id, summary.total)

        file_format = job.file_format or FileFormat.CSV
        sink = _XlsxSink(fields) if file_format is FileFormat.XLSX else _CsvSink(fields)
        for batch in chunked(rows, self.batch_size):
            if registry.is_cancelled(self.job_id):
                summary.status = ExchangeJobStatus.CANCELLED.value
                return summary
            started = time.perf_counter()
            for values in batch:
                sink.write(values)
            if not registry.advance(self.job_id, processed=len(batch), successful=len(batch)):
                self.session.rollback()
                summary.status = registry.current_status(self.job_id).value
                return summary
            self.session.commit()
            summary.exported += len(batch)
            ExchangeMonitoring.record_batch(
                kind=ExchangeJobKind.EXPORT.value,
                duration_seconds=time.perf_counter() - started,
                outcomes={"exported": len(batch)},
            )

        key = build_storage_key(f"exports/{job.organization_id}", None, default_extension=sink.extension)
        self.storage.put(key, sink.finish())
        if not registry.complete(self.job_id, values={"result_storage_key": key}):
            self.storage.delete(key)
            summary.status = registry.current_status(self.job_id).value
            return summary

        summary.status = ExchangeJobStatus.COMPLETED.value
        summary.result_storage_key = key
        current_app.logger.info(
            "Exchange export completed",
            extra={
                "exchange_job_id": self.job_id,
                "exchange_rows_exported": summary.exported,
                "exchange_file_format": file_format.value,
                "exchange_result_key": key,
            },
        )
        return summary
