# registry_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .client import Client, ClientStatus, ClientType, Tag, client_tags
from .exchange import (
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
from .organization import Organization
from .user import User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "Organization",
    # Registry models
    "Client",
    "ClientStatus",
    "ClientType",
    "Tag",
    "client_tags",
    # Exchange models
    "ExchangeJob",
    "ExchangeJobKind",
    "ExchangeJobStatus",
    "FileFormat",
    "DuplicateStrategy",
    "JobRowError",
    "RowErrorKind",
    "MappingTemplate",
    "BulkMutation",
    "BulkOperationType",
]
