"""
SQLAlchemy models backing bulk data exchange.

Jobs track imports and exports through their lifecycle; row errors are owned by
their job; bulk mutations keep the snapshot needed to reverse them.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ExchangeJobKind(str, enum.Enum):
    """Direction of a data exchange job."""

    IMPORT = "import"
    EXPORT = "export"


class ExchangeJobStatus(str, enum.Enum):
    """Lifecycle states for an exchange job."""

    PENDING = "pending"
    VALIDATING = "validating"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExchangeJobStatus.COMPLETED, ExchangeJobStatus.FAILED, ExchangeJobStatus.CANCELLED)


class FileFormat(str, enum.Enum):
    """Spreadsheet formats accepted for import and produced on export."""

    CSV = "csv"
    XLSX = "xlsx"


class DuplicateStrategy(str, enum.Enum):
    """What an import does with a row whose key already exists."""

    SKIP = "skip"
    UPDATE = "update"
    CREATE_NEW = "create_new"


class RowErrorKind(str, enum.Enum):
    """Classification of a per-row import problem."""

    REQUIRED = "required"
    INVALID_FORMAT = "invalid_format"
    PROCESSING_ERROR = "processing_error"


class BulkOperationType(str, enum.Enum):
    """Variants of a bulk mutation."""

    STATUS_CHANGE = "status_change"
    ADD_TAGS = "add_tags"
    REMOVE_TAGS = "remove_tags"
    UPDATE_FIELD = "update_field"
    ASSIGN_MANAGER = "assign_manager"
    BATCH_DELETE = "batch_delete"


class ExchangeJob(BaseModel):
    """A single import or export execution."""

    __tablename__ = "exchange_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    kind: Mapped[ExchangeJobKind] = mapped_column(
        Enum(ExchangeJobKind, name="exchange_job_kind_enum"),
        nullable=False,
        index=True,
    )
    status: Mapped[ExchangeJobStatus] = mapped_column(
        Enum(ExchangeJobStatus, name="exchange_job_status_enum"),
        nullable=False,
        default=ExchangeJobStatus.PENDING,
        index=True,
    )

    # Source or target file
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    file_format: Mapped[FileFormat] = mapped_column(
        Enum(FileFormat, name="exchange_file_format_enum"),
        nullable=False,
        default=FileFormat.CSV,
    )
    file_size: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    storage_key: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    header_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    encoding: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    delimiter: Mapped[str | None] = mapped_column(db.String(4), nullable=True)

    # Import options
    mapping_json: Mapped[list | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Resolved column mappings (source column -> target field definition).",
    )
    duplicate_strategy: Mapped[DuplicateStrategy | None] = mapped_column(
        Enum(DuplicateStrategy, name="exchange_duplicate_strategy_enum"),
        nullable=True,
    )
    duplicate_key_field: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    block_on_validation_errors: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    validation_summary_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    # Export options
    export_filter_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    export_fields_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    export_sort: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    result_storage_key: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    # Progress counters
    total_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    successful_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    created_by_user = relationship("User", foreign_keys=[created_by_user_id])
    row_errors = relationship(
        "JobRowError",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobRowError.row_number",
    )

    __table_args__ = (
        CheckConstraint("processed_records <= total_records", name="ck_exchange_jobs_processed_le_total"),
        CheckConstraint(
            "successful_records + failed_records + skipped_records <= processed_records",
            name="ck_exchange_jobs_outcomes_le_processed",
        ),
        Index("idx_exchange_jobs_org_created", "organization_id", "created_at"),
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ExchangeJob id={self.id} kind={self.kind} status={self.status}>"


class JobRowError(BaseModel):
    """A problem found in one source row of an import job."""

    __tablename__ = "exchange_job_row_errors"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("exchange_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    field_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    error_kind: Mapped[RowErrorKind] = mapped_column(
        Enum(RowErrorKind, name="exchange_row_error_kind_enum"),
        nullable=False,
        index=True,
    )
    message: Mapped[str] = mapped_column(db.Text, nullable=False)
    raw_value: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    job = relationship("ExchangeJob", back_populates="row_errors")

    __table_args__ = (Index("idx_exchange_row_errors_job_row", "job_id", "row_number"),)


class MappingTemplate(BaseModel):
    """Reusable column mapping saved by a tenant."""

    __tablename__ = "exchange_mapping_templates"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    mapping_json: Mapped[list] = mapped_column(db.JSON, nullable=False)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_exchange_mapping_templates_org_name"),)


class BulkMutation(BaseModel):
    """Record of one bulk mutation, with the snapshot needed to reverse it."""

    __tablename__ = "exchange_bulk_mutations"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    operation_type: Mapped[BulkOperationType] = mapped_column(
        Enum(BulkOperationType, name="exchange_bulk_operation_type_enum"),
        nullable=False,
        index=True,
    )
    operation_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    target_ids_json: Mapped[list] = mapped_column(db.JSON, nullable=False)
    snapshot_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Prior field values keyed by client id (string) for reversible operations.",
    )
    errors_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    successful_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    reversible: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    reversed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    reversed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    created_by_user = relationship("User", foreign_keys=[created_by_user_id])
    reversed_by_user = relationship("User", foreign_keys=[reversed_by_user_id])
