"""Durable import job state: lifecycle, counters, and the error/warning log."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import case, func, insert, or_, select, update
from sqlalchemy.orm import Session

from bulk_ingest.models.import_job import (
    ControlRequest,
    ErrorCategory,
    ImportErrorEntry,
    ImportJob,
    ImportStatus,
    ImportWarningEntry,
)
from bulk_ingest.schemas.import_job import ImportJobCreate
from bulk_ingest.services.exceptions import JobNotFound


@dataclass(frozen=True)
class RowError:
    """An error waiting to be appended to a job's error log."""

    row_number: int
    category: ErrorCategory
    message: str
    field_name: str | None = None
    field_value: str | None = None
    row_data: dict[str, Any] | None = None


@dataclass(frozen=True)
class RowWarning:
    """A warning waiting to be appended to a job's warning log."""

    row_number: int
    kind: str
    message: str
    field_name: str | None = None
    field_value: str | None = None


@dataclass
class BatchResult:
    """Outcome of one batch, applied to the job counters in a single update."""

    first_row: int = 0
    last_row: int = 0
    attempted: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[RowError] = field(default_factory=list)
    warnings: list[RowWarning] = field(default_factory=list)


class ImportJobRepository:
    """Handles persistence for ImportJob entities and their error/warning logs.

    Methods flush but never commit; the caller owns the transaction so that a
    batch's counters, log entries and inserted objects commit together.
    """

    def __init__(self, session: Session) -> None:
        """Initialize repository with a SQLAlchemy session.

        Args:
            session: Active database session for executing queries
        """
        self._session = session

    def create(self, job_data: ImportJobCreate, *, options: dict[str, Any] | None = None) -> ImportJob:
        """Create a new import job record in the pending state.

        Args:
            job_data: Import job creation payload
            options: Effective per-job options to store with the job

        Returns:
            Newly created ImportJob instance with generated ID
        """
        job = ImportJob(
            filename=job_data.filename,
            file_path=job_data.stored_file_path,
            file_size=job_data.file_size_bytes,
            object_type=job_data.object_type,
            created_by_id=job_data.owner_id,
            column_mapping=job_data.column_mapping,
            options=options,
            status=ImportStatus.PENDING,
            processed_records=0,
            successful_records=0,
            failed_records=0,
            warnings_count=0,
            resume_from_row=0,
            resumable=False,
        )
        self._session.add(job)
        self._session.flush()
        self._session.refresh(job)
        return job

    def get_by_id(self, job_id: UUID) -> ImportJob | None:
        """Fetch an import job by its UUID, bypassing stale identity-map state."""

        return self._session.get(ImportJob, job_id, populate_existing=True)

    def require(self, job_id: UUID) -> ImportJob:
        job = self.get_by_id(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def transition(
        self,
        job_id: UUID,
        *,
        from_statuses: Iterable[ImportStatus],
        to_status: ImportStatus,
        idle_since: datetime | None = None,
        **values: Any,
    ) -> bool:
        """Move a job to ``to_status`` only if it is currently in ``from_statuses``.

        The status check and the write are one conditional UPDATE, so two
        callers racing on the same job cannot both succeed. With ``idle_since``
        the job must also not have been touched after that instant.

        Returns:
            True if the row was updated
        """
        now = datetime.now(timezone.utc)
        conditions = [ImportJob.id == job_id, ImportJob.status.in_(list(from_statuses))]
        if idle_since is not None:
            conditions.append(ImportJob.updated_at < idle_since)
        stmt = (
            update(ImportJob)
            .where(*conditions)
            .values(status=to_status, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(stmt).rowcount > 0

    def mark_started(self, job_id: UUID) -> None:
        """Stamp started_at the first time a job begins processing."""

        self._session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.started_at.is_(None))
            .values(started_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    def apply_batch(self, job_id: UUID, result: BatchResult) -> None:
        """Append a batch's log entries and advance the counters and resume offset.

        Counters are incremented in SQL. ``total_records`` is raised to the
        processed count when the stream turns out longer than the estimate.
        """
        self.append_errors(job_id, result.errors)
        self.append_warnings(job_id, result.warnings)

        processed = ImportJob.processed_records + result.attempted
        stmt = (
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(
                processed_records=processed,
                successful_records=ImportJob.successful_records + result.successful,
                failed_records=ImportJob.failed_records + result.failed,
                warnings_count=ImportJob.warnings_count + len(result.warnings),
                total_records=case(
                    (
                        or_(ImportJob.total_records.is_(None), ImportJob.total_records < processed),
                        processed,
                    ),
                    else_=ImportJob.total_records,
                ),
                resume_from_row=result.last_row,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        self._session.execute(stmt)

    def set_total(self, job_id: UUID, total: int) -> None:
        self._session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(total_records=total, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    def append_errors(self, job_id: UUID, errors: Sequence[RowError]) -> None:
        if not errors:
            return
        self._session.execute(
            insert(ImportErrorEntry),
            [
                {
                    "job_id": job_id,
                    "row_number": error.row_number,
                    "category": error.category,
                    "field_name": error.field_name,
                    "field_value": error.field_value,
                    "message": error.message,
                    "row_data": error.row_data,
                }
                for error in errors
            ],
        )

    def append_warnings(self, job_id: UUID, warnings: Sequence[RowWarning]) -> None:
        if not warnings:
            return
        self._session.execute(
            insert(ImportWarningEntry),
            [
                {
                    "job_id": job_id,
                    "row_number": warning.row_number,
                    "kind": warning.kind,
                    "field_name": warning.field_name,
                    "field_value": warning.field_value,
                    "message": warning.message,
                }
                for warning in warnings
            ],
        )

    def list_errors(
        self,
        job_id: UUID,
        *,
        page: int = 1,
        page_size: int = 100,
        category: ErrorCategory | None = None,
    ) -> tuple[list[ImportErrorEntry], int]:
        """Return one page of a job's errors ordered by row number, plus the total count."""

        conditions = [ImportErrorEntry.job_id == job_id]
        if category is not None:
            conditions.append(ImportErrorEntry.category == category)
        total = self._session.execute(
            select(func.count()).select_from(ImportErrorEntry).where(*conditions)
        ).scalar_one()
        items = (
            self._session.execute(
                select(ImportErrorEntry)
                .where(*conditions)
                .order_by(ImportErrorEntry.row_number, ImportErrorEntry.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            .scalars()
            .all()
        )
        return list(items), total

    def list_warnings(
        self, job_id: UUID, *, page: int = 1, page_size: int = 100
    ) -> tuple[list[ImportWarningEntry], int]:
        """Return one page of a job's warnings ordered by row number, plus the total count."""

        total = self._session.execute(
            select(func.count()).select_from(ImportWarningEntry).where(ImportWarningEntry.job_id == job_id)
        ).scalar_one()
        items = (
            self._session.execute(
                select(ImportWarningEntry)
                .where(ImportWarningEntry.job_id == job_id)
                .order_by(ImportWarningEntry.row_number, ImportWarningEntry.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            .scalars()
            .all()
        )
        return list(items), total

    def count_errors_by_category(self, job_id: UUID) -> dict[ErrorCategory, int]:
        rows = self._session.execute(
            select(ImportErrorEntry.category, func.count())
            .where(ImportErrorEntry.job_id == job_id)
            .group_by(ImportErrorEntry.category)
        )
        return {category: count for category, count in rows}

    def request_control(self, job_id: UUID, request: ControlRequest, *, statuses: Iterable[ImportStatus]) -> bool:
        """Record a pause/cancel request for a job in one of ``statuses``."""

        stmt = (
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.status.in_(list(statuses)))
            .values(control_request=request, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(stmt).rowcount > 0

    def get_control_request(self, job_id: UUID) -> ControlRequest | None:
        return self._session.execute(
            select(ImportJob.control_request).where(ImportJob.id == job_id)
        ).scalar_one_or_none()

    def get_recent(self, limit: int = 50) -> list[ImportJob]:
        """Fetch recent import jobs ordered by creation time.

        Args:
            limit: Maximum number of jobs to return

        Returns:
            List of ImportJob instances
        """
        return (
            self._session.query(ImportJob)
            .order_by(ImportJob.created_at.desc())
            .limit(limit)
            .all()
        )

    def find_by_status(self, statuses: Iterable[ImportStatus]) -> list[ImportJob]:
        return list(
            self._session.execute(select(ImportJob).where(ImportJob.status.in_(list(statuses)))).scalars().all()
        )

    def find_idle(self, statuses: Iterable[ImportStatus], idle_since: datetime) -> list[ImportJob]:
        """Jobs in ``statuses`` whose row has not been updated since ``idle_since``."""
        stmt = select(ImportJob).where(ImportJob.status.in_(list(statuses)), ImportJob.updated_at < idle_since)
        return list(self._session.execute(stmt).scalars().all())
