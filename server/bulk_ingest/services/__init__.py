"""Ingestion pipeline services."""

from .batch_assembler import AssemblyOutcome, BatchAssembler, PipelineOptions
from .duplicate_detector import DuplicateDetector
from .exceptions import (
    FileFormatError,
    IngestionError,
    InvalidInput,
    InvalidState,
    JobNotFound,
    PersistenceCeilingExceeded,
    SystemFailure,
)
from .job_manager import JobManager, build_job_manager
from .job_store import BatchResult, ImportJobRepository, RowError, RowWarning
from .object_repository import ObjectRepository, WriteResult
from .progress import NotificationChannel, ProgressBroadcaster, RedisNotificationChannel
from .record_validator import FieldIssue, RecordValidation, RecordValidator
from .stream_parser import RecordChannel, RecordSource, open_parser

__all__ = [
    "AssemblyOutcome",
    "BatchAssembler",
    "BatchResult",
    "DuplicateDetector",
    "FieldIssue",
    "FileFormatError",
    "ImportJobRepository",
    "IngestionError",
    "InvalidInput",
    "InvalidState",
    "JobManager",
    "JobNotFound",
    "NotificationChannel",
    "ObjectRepository",
    "PersistenceCeilingExceeded",
    "PipelineOptions",
    "ProgressBroadcaster",
    "RecordChannel",
    "RecordSource",
    "RecordValidation",
    "RecordValidator",
    "RedisNotificationChannel",
    "RowError",
    "RowWarning",
    "SystemFailure",
    "WriteResult",
    "build_job_manager",
    "open_parser",
]
