"""ORM models exposed for external modules."""
from .base import Base
from .import_job import (
    ControlRequest,
    ErrorCategory,
    ImportErrorEntry,
    ImportJob,
    ImportStatus,
    ImportWarningEntry,
    TERMINAL_STATUSES,
)
from .tracked_object import TrackedObject

__all__ = [
    "Base",
    "ControlRequest",
    "ErrorCategory",
    "ImportErrorEntry",
    "ImportJob",
    "ImportStatus",
    "ImportWarningEntry",
    "TERMINAL_STATUSES",
    "TrackedObject",
]
