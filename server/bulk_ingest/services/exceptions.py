"""Domain exceptions raised by the ingestion services."""
from __future__ import annotations

from uuid import UUID


class IngestionError(Exception):
    """Base class for every ingestion failure."""


class InvalidInput(IngestionError):
    """A caller supplied unusable arguments."""


class JobNotFound(IngestionError):
    def __init__(self, job_id: UUID | str) -> None:
        super().__init__(f"Import job not found: {job_id}")
        self.job_id = job_id


class InvalidState(IngestionError):
    """The requested lifecycle operation is not valid for the job's status."""

    def __init__(self, job_id: UUID | str, status: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} import job {job_id} while it is {status}")
        self.job_id = job_id
        self.status = status
        self.operation = operation


class FileFormatError(IngestionError):
    """The source file cannot be decoded or does not have the expected shape."""

    def __init__(self, message: str, *, row_number: int = 0) -> None:
        super().__init__(message)
        self.row_number = row_number


class SystemFailure(IngestionError):
    """Store unreachable or resource exhaustion; fatal but resumable."""

    def __init__(self, message: str, *, row_number: int = 0) -> None:
        super().__init__(message)
        self.row_number = row_number


class PersistenceCeilingExceeded(IngestionError):
    """Too many batches failed to persist for the job to continue."""

    def __init__(self, failed_batches: int, ceiling: int) -> None:
        super().__init__(f"{failed_batches} batches failed to persist (ceiling {ceiling})")
        self.failed_batches = failed_batches
        self.ceiling = ceiling
