"""Pydantic schemas describing import job payloads."""
from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bulk_ingest.models.import_job import ErrorCategory, ImportStatus


class ImportJobOptions(BaseModel):
    """Per-job overrides of the pipeline defaults."""

    batch_size: int | None = Field(default=None, ge=1, le=50_000)
    duplicate_check: bool | None = Field(
        default=None,
        description="Disable only for first-time loads known to be clean",
    )
    conflict_policy: Literal["strict", "skip"] | None = Field(
        default=None,
        description="strict rejects natural-key collisions, skip ignores them; rows are never overwritten",
    )
    delimiter: str | None = Field(default=None, min_length=1, max_length=1)
    encoding: str | None = Field(default=None)


class ImportJobCreate(BaseModel):
    """Payload used when registering an already-uploaded file as an import job."""

    filename: str = Field(description="Original filename supplied during upload")
    stored_file_path: str = Field(description="Path of the stored upload readable by the worker")
    file_size_bytes: int | None = Field(default=None, ge=0)
    owner_id: int | None = Field(default=None, description="User that owns the job")
    object_type: str = Field(default="docket", min_length=1, max_length=50)
    column_mapping: dict[str, str] | None = Field(
        default=None,
        description="Source column header -> object field",
    )
    options: ImportJobOptions | None = None
    auto_start: bool = Field(default=False, description="Start processing right after creation")

    @field_validator("filename", "stored_file_path")
    @classmethod
    def ensure_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "value cannot be empty"
            raise ValueError(msg)
        return value


class ImportJobResponse(BaseModel):
    """Full representation of an import job."""

    id: UUID
    filename: str
    file_path: str
    file_size: int | None = None
    object_type: str
    status: ImportStatus
    total_records: int | None = Field(default=None, ge=0)
    processed_records: int = Field(ge=0)
    successful_records: int = Field(ge=0)
    failed_records: int = Field(ge=0)
    warnings_count: int = Field(default=0, ge=0)
    resume_from_row: int = Field(default=0, ge=0)
    resumable: bool = False
    error_message: str | None = None
    column_mapping: dict[str, str] | None = None
    options: dict | None = None
    created_by_id: int | None = None
    processing_time_ms: int | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def progress_percent(self) -> float:
        if not self.total_records:
            return 100.0 if self.status == ImportStatus.COMPLETED else 0.0
        return round(min(self.processed_records / self.total_records, 1.0) * 100, 2)


class ImportErrorResponse(BaseModel):
    """One recorded import error."""

    id: int
    row_number: int
    category: ErrorCategory
    field_name: str | None = None
    field_value: str | None = None
    message: str
    row_data: dict | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ImportWarningResponse(BaseModel):
    """One recorded import warning."""

    id: int
    row_number: int
    kind: str
    field_name: str | None = None
    field_value: str | None = None
    message: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ImportErrorPage(BaseModel):
    """Paginated error listing ordered by row number."""

    items: list[ImportErrorResponse]
    total: int
    page: int
    page_size: int


class ImportWarningPage(BaseModel):
    """Paginated warning listing ordered by row number."""

    items: list[ImportWarningResponse]
    total: int
    page: int
    page_size: int


class ImportProgress(BaseModel):
    """Progress payload pushed to the notification channel and SSE clients."""

    job_id: UUID
    status: ImportStatus
    event: str = Field(default="progress", description="progress or the lifecycle transition that triggered it")
    processed: int = Field(ge=0)
    total: int | None = Field(default=None, ge=0)
    successful: int = Field(ge=0)
    failed: int = Field(ge=0)
    percent: float = Field(ge=0, le=100, description="Derived percentage to simplify client rendering")
    updated_at: datetime | None = None
