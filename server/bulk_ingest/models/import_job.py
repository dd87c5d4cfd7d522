"""Import job, error and warning model definitions."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum as PgEnum,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class ImportStatus(str, Enum):
    """Enumerates the lifecycle states an import job can be in."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED})


class ErrorCategory(str, Enum):
    """Categories of recorded import errors."""

    FILE_FORMAT = "file_format"
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    PERSISTENCE = "persistence"
    SYSTEM = "system"


class ControlRequest(str, Enum):
    """Pending lifecycle request observed by the pipeline at batch boundaries."""

    PAUSE = "pause"
    CANCEL = "cancel"


class ImportJob(Base):
    """Tracks metadata, counters and resume state for a bulk import."""

    __tablename__ = "import_jobs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    object_type: Mapped[str] = mapped_column(Text, nullable=False, default="docket", server_default="docket")
    status: Mapped[ImportStatus] = mapped_column(
        PgEnum(ImportStatus, name="import_job_status", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ImportStatus.PENDING,
        server_default=ImportStatus.PENDING.value,
    )
    total_records: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    successful_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    warnings_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    # Last data row whose batch outcome has been committed.
    resume_from_row: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    control_request: Mapped[ControlRequest | None] = mapped_column(
        PgEnum(ControlRequest, name="import_control_request", values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    resumable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    column_mapping: Mapped[dict[str, str] | None] = mapped_column(JSONType, nullable=True)
    options: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("idx_import_jobs_status", "status"),
        Index("idx_import_jobs_created", "created_at"),
    )


class ImportErrorEntry(Base):
    """Append-only row-level (or job-level) failure attached to an import job."""

    __tablename__ = "import_errors"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False
    )
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[ErrorCategory] = mapped_column(
        PgEnum(ErrorCategory, name="import_error_category", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    field_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    field_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    row_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("idx_import_errors_job_row", "job_id", "row_number"),)


class ImportWarningEntry(Base):
    """Append-only advisory note about an accepted row."""

    __tablename__ = "import_warnings"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False
    )
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    field_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    field_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("idx_import_warnings_job_row", "job_id", "row_number"),)
