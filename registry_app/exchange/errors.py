"""Exception hierarchy for the data exchange engine."""

from __future__ import annotations

from typing import Sequence


class ExchangeError(Exception):
    """Base exception for exchange failures."""


class ParseError(ExchangeError):
    """Raised when an uploaded file cannot be read in its declared format."""


class MappingError(ExchangeError):
    """Raised when a column mapping definition is invalid."""


class TemplateError(ExchangeError):
    """Raised when a mapping template cannot be created or found."""


class StorageError(ExchangeError):
    """Raised when a blob cannot be written or read."""


class JobNotFoundError(ExchangeError):
    """Raised when a job id does not resolve within the caller's tenant."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Exchange job {job_id} not found.")
        self.job_id = job_id


class JobStateError(ExchangeError):
    """Raised when a command is not valid for the job's current status."""

    def __init__(self, job_id: int, status: str, message: str | None = None) -> None:
        super().__init__(message or f"Exchange job {job_id} cannot perform this action while {status}.")
        self.job_id = job_id
        self.status = status


class ProcessingError(ExchangeError):
    """Raised when a job fails outside of per-row handling."""

    def __init__(self, job_id: int, message: str) -> None:
        super().__init__(f"Exchange job {job_id} failed: {message}")
        self.job_id = job_id


class BulkMutationRequestError(ExchangeError):
    """Raised when a bulk mutation request fails its preconditions."""

    status_code = 400

    def __init__(self, message: str, *, client_ids: Sequence[int] | None = None) -> None:
        super().__init__(message)
        self.client_ids = tuple(client_ids or ())


class ReversalError(ExchangeError):
    """Raised when a bulk mutation cannot be reversed."""

    def __init__(self, mutation_id: int, message: str) -> None:
        super().__init__(message)
        self.mutation_id = mutation_id
