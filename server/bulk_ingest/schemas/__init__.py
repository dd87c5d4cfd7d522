"""Public schema exports."""

from .import_job import (
    ImportErrorPage,
    ImportErrorResponse,
    ImportJobCreate,
    ImportJobOptions,
    ImportJobResponse,
    ImportProgress,
    ImportWarningPage,
    ImportWarningResponse,
)
from .import_record import KNOWN_FIELDS, REQUIRED_FIELDS, ImportRecord, NaturalKey, ObjectRow

__all__ = [
    "ImportErrorPage",
    "ImportErrorResponse",
    "ImportJobCreate",
    "ImportJobOptions",
    "ImportJobResponse",
    "ImportProgress",
    "ImportWarningPage",
    "ImportWarningResponse",
    "ImportRecord",
    "KNOWN_FIELDS",
    "NaturalKey",
    "ObjectRow",
    "REQUIRED_FIELDS",
]
