from .schema import (
    BulkMutation,
    BulkOperationType,
    DuplicateStrategy,
    ExchangeJob,
    ExchangeJobKind,
    ExchangeJobStatus,
    FileFormat,
    JobRowError,
    MappingTemplate,
    RowErrorKind,
)

__all__ = [
    "BulkMutation",
    "BulkOperationType",
    "DuplicateStrategy",
    "ExchangeJob",
    "ExchangeJobKind",
    "ExchangeJobStatus",
    "FileFormat",
    "JobRowError",
    "MappingTemplate",
    "RowErrorKind",
]
