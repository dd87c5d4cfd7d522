"""Import job lifecycle orchestration.

A JobManager is built once per process (API lifespan or Celery worker) and
handed to whatever issues job commands. Jobs run on a fixed-size thread pool,
which is the global ceiling on concurrently processing jobs; jobs waiting for
a slot stay ``queued``.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import func, text
from sqlalchemy.orm import Session, sessionmaker

from bulk_ingest.core.config import Settings, get_settings
from bulk_ingest.models.import_job import (
    ControlRequest,
    ErrorCategory,
    ImportErrorEntry,
    ImportJob,
    ImportStatus,
    ImportWarningEntry,
)
from bulk_ingest.schemas.import_job import ImportJobCreate, ImportJobOptions
from bulk_ingest.services.batch_assembler import AssemblyOutcome, BatchAssembler, PipelineOptions
from bulk_ingest.services.exceptions import (
    FileFormatError,
    InvalidInput,
    InvalidState,
    PersistenceCeilingExceeded,
    SystemFailure,
)
from bulk_ingest.services.job_store import ImportJobRepository, RowError
from bulk_ingest.services.object_repository import ObjectRepository
from bulk_ingest.services.progress import (
    NotificationChannel,
    NullNotificationChannel,
    ProgressBroadcaster,
    RedisNotificationChannel,
)
from bulk_ingest.services.stream_parser import RecordChannel, RecordSource, open_parser

logger = logging.getLogger(__name__)

Dispatcher = Callable[[UUID], None]

STARTABLE = (ImportStatus.PENDING, ImportStatus.PAUSED)
INTERRUPTIBLE = (ImportStatus.PROCESSING, ImportStatus.QUEUED)
CANCELLABLE_AT_REST = (ImportStatus.PENDING, ImportStatus.QUEUED, ImportStatus.PAUSED)


class JobManager:
    """Owns the ImportJob state machine and runs one pipeline per active job."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        settings: Settings | None = None,
        channel: NotificationChannel | None = None,
        dispatcher: Dispatcher | None = None,
        writer_factory: Callable[[Session], ObjectRepository] = ObjectRepository,
        today: date | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._channel = channel or NullNotificationChannel()
        self._broadcaster = ProgressBroadcaster(self._channel)
        self._writer_factory = writer_factory
        self._today = today
        self._executor = ThreadPoolExecutor(
            max_workers=self._settings.max_concurrent_jobs,
            thread_name_prefix="import-job",
        )
        self._futures: dict[UUID, Future[ImportStatus]] = {}
        self._lock = threading.Lock()
        self._dispatch = dispatcher or self._submit

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_job(
        self,
        filename: str,
        stored_file_path: str,
        file_size_bytes: int | None = None,
        owner_id: int | None = None,
        *,
        object_type: str = "docket",
        column_mapping: Mapping[str, str] | None = None,
        options: ImportJobOptions | Mapping[str, Any] | None = None,
    ) -> ImportJob:
        """Persist a new job in the pending state.

        Raises:
            InvalidInput: blank filename/path or unusable options
        """
        try:
            payload = ImportJobCreate(
                filename=filename,
                stored_file_path=stored_file_path,
                file_size_bytes=file_size_bytes,
                owner_id=owner_id,
                object_type=object_type,
                column_mapping=dict(column_mapping) if column_mapping else None,
                options=options,
            )
        except ValidationError as exc:
            raise InvalidInput(f"Invalid import job: {exc.errors()[0]['msg']}") from exc

        with self._session_factory() as session:
            job = ImportJobRepository(session).create(payload, options=self._effective_options(payload.options))
            session.commit()
        logger.info(f"Created import job {job.id} for {payload.filename}")
        self._broadcaster.broadcast(job, "created")
        return job

    def start_job(self, job_id: UUID) -> ImportJob:
        """Queue a pending (or paused) job for processing."""

        job = self._transition(job_id, STARTABLE, ImportStatus.QUEUED, "start", control_request=None)
        self._dispatch(job_id)
        return job

    def resume_job(self, job_id: UUID) -> ImportJob:
        """Queue a paused job, or a failed job marked resumable, from its resume offset."""

        job = self.get_job(job_id)
        if job.status == ImportStatus.FAILED and job.resumable:
            job = self._transition(
                job_id,
                (ImportStatus.FAILED,),
                ImportStatus.QUEUED,
                "resume",
                resumable=False,
                error_message=None,
                completed_at=None,
                control_request=None,
            )
        else:
            job = self._transition(job_id, (ImportStatus.PAUSED,), ImportStatus.QUEUED, "resume", control_request=None)
        logger.info(f"Resuming import job {job_id} after row {job.resume_from_row}")
        self._dispatch(job_id)
        return job

    def pause_job(self, job_id: UUID) -> ImportJob:
        """Pause a queued job immediately, or a processing job at its next batch boundary."""

        return self._control(job_id, ControlRequest.PAUSE, ImportStatus.PAUSED, (ImportStatus.QUEUED,))

    def cancel_job(self, job_id: UUID) -> ImportJob:
        """Cancel a job at rest immediately, or a processing job at its next batch boundary."""

        return self._control(job_id, ControlRequest.CANCEL, ImportStatus.CANCELLED, CANCELLABLE_AT_REST)

    def _control(
        self,
        job_id: UUID,
        request: ControlRequest,
        target: ImportStatus,
        at_rest: tuple[ImportStatus, ...],
    ) -> ImportJob:
        values: dict[str, Any] = {"control_request": None}
        if target.is_terminal:
            values["completed_at"] = datetime.now(timezone.utc)
        with self._session_factory() as session:
            repo = ImportJobRepository(session)
            if repo.transition(job_id, from_statuses=at_rest, to_status=target, **values):
                session.commit()
                job = repo.require(job_id)
                logger.info(f"Import job {job_id} {target.value}")
                self._broadcaster.broadcast(job, target.value)
                return job
            if repo.request_control(job_id, request, statuses=(ImportStatus.PROCESSING,)):
                session.commit()
                logger.info(f"Import job {job_id}: {request.value} requested, effective at next batch boundary")
                return repo.require(job_id)
            job = repo.require(job_id)
        raise InvalidState(job_id, job.status.value, request.value)

    def _transition(
        self,
        job_id: UUID,
        from_statuses: tuple[ImportStatus, ...],
        to_status: ImportStatus,
        operation: str,
        **values: Any,
    ) -> ImportJob:
        with self._session_factory() as session:
            repo = ImportJobRepository(session)
            if not repo.transition(job_id, from_statuses=from_statuses, to_status=to_status, **values):
                job = repo.require(job_id)
                raise InvalidState(job_id, job.status.value, operation)
            session.commit()
            job = repo.require(job_id)
        self._broadcaster.broadcast(job, to_status.value)
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: UUID) -> ImportJob:
        with self._session_factory() as session:
            return ImportJobRepository(session).require(job_id)

    def list_jobs(self, limit: int = 50) -> list[ImportJob]:
        with self._session_factory() as session:
            return ImportJobRepository(session).get_recent(limit=limit)

    def running_jobs(self) -> int:
        """Number of locally dispatched runs that have not returned yet."""
        with self._lock:
            return sum(1 for future in self._futures.values() if not future.done())

    def ping_store(self) -> None:
        """Round-trip the job store; raises whatever the driver raises."""
        with self._session_factory() as session:
            session.execute(text("SELECT 1"))

    def list_errors(self, job_id: UUID, *, page: int = 1, page_size: int = 100) -> tuple[list[ImportErrorEntry], int]:
        if page < 1 or page_size < 1:
            raise InvalidInput("page and page_size must be positive")
        with self._session_factory() as session:
            repo = ImportJobRepository(session)
            repo.require(job_id)
            return repo.list_errors(job_id, page=page, page_size=page_size)

    def list_warnings(
        self, job_id: UUID, *, page: int = 1, page_size: int = 100
    ) -> tuple[list[ImportWarningEntry], int]:
        if page < 1 or page_size < 1:
            raise InvalidInput("page and page_size must be positive")
        with self._session_factory() as session:
            repo = ImportJobRepository(session)
            repo.require(job_id)
            return repo.list_warnings(job_id, page=page, page_size=page_size)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _submit(self, job_id: UUID) -> None:
        with self._lock:
            self._futures[job_id] = self._executor.submit(self.run_job, job_id)

    def wait(self, job_id: UUID, timeout: float | None = None) -> ImportStatus | None:
        """Block until the locally dispatched run of ``job_id`` returns."""

        with self._lock:
            future = self._futures.get(job_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def run_job(self, job_id: UUID, *, takeover: bool = False) -> ImportStatus:
        """Process a queued job until it completes, fails, or honours a pause/cancel.

        This is the body of a worker slot; it never raises for pipeline
        failures, which are recorded on the job instead.

        With ``takeover`` a job left ``processing`` by a lost worker is picked
        up again from its last committed batch. A control request stored
        while it was orphaned stays pending and is honoured before the first
        batch.
        """
        with self._session_factory() as session:
            repo = ImportJobRepository(session)
            claimed = repo.transition(
                job_id,
                from_statuses=(ImportStatus.QUEUED,),
                to_status=ImportStatus.PROCESSING,
                control_request=None,
            )
            if not claimed and takeover:
                claimed = repo.transition(
                    job_id,
                    from_statuses=(ImportStatus.PROCESSING,),
                    to_status=ImportStatus.PROCESSING,
                )
                if claimed:
                    logger.warning(f"Import job {job_id}: taking over from a lost worker")
            if not claimed:
                job = repo.require(job_id)
                logger.info(f"Import job {job_id} is {job.status.value}, nothing to run")
                return job.status
            repo.mark_started(job_id)
            session.commit()
            job = repo.require(job_id)
        self._broadcaster.broadcast(job, ImportStatus.PROCESSING.value)

        started = time.perf_counter()
        options = PipelineOptions(**self._pipeline_options(job))
        stored = job.options or {}
        source: RecordSource | None = None
        logger.info(f"Job {job_id}: processing {job.filename} from row {job.resume_from_row + 1}")

        try:
            source = open_parser(
                job.file_path,
                column_mapping=job.column_mapping,
                delimiter=stored.get("delimiter"),
                encoding=stored.get("encoding"),
                max_spreadsheet_mb=self._settings.max_spreadsheet_size_mb,
            )
            if self._settings.precount_rows and job.total_records is None:
                self._precount(job_id, source)

            assembler = BatchAssembler(
                job_id,
                self._session_factory,
                options=options,
                broadcaster=self._broadcaster,
                writer_factory=self._writer_factory,
                today=self._today,
            )
            with RecordChannel(
                source.records(start_after=job.resume_from_row),
                capacity=self._settings.channel_capacity,
            ) as channel:
                outcome = assembler.run(channel)
        except FileFormatError as exc:
            row_number = max(exc.row_number, (source.rows_read if source else 0) + 1)
            logger.error(f"Job {job_id}: file format error at row {row_number}: {exc}")
            return self._fail(job_id, str(exc), started, category=ErrorCategory.FILE_FORMAT, row_number=row_number)
        except SystemFailure as exc:
            logger.error(f"Job {job_id}: system failure, job is resumable: {exc}")
            return self._fail(
                job_id,
                str(exc),
                started,
                category=ErrorCategory.SYSTEM,
                row_number=exc.row_number or job.resume_from_row + 1,
                resumable=True,
            )
        except PersistenceCeilingExceeded as exc:
            logger.error(f"Job {job_id}: {exc}")
            return self._fail(job_id, str(exc), started, resumable=True)
        except Exception as exc:
            logger.exception(f"Job {job_id}: unexpected failure")
            return self._fail(
                job_id,
                f"{type(exc).__name__}: {exc}",
                started,
                category=ErrorCategory.SYSTEM,
                row_number=job.resume_from_row + 1,
                resumable=True,
            )

        if outcome == AssemblyOutcome.PAUSED:
            return self._finish(job_id, ImportStatus.PAUSED, started)
        if outcome == AssemblyOutcome.CANCELLED:
            return self._finish(job_id, ImportStatus.CANCELLED, started)
        return self._finish(job_id, ImportStatus.COMPLETED, started, total_records=source.rows_read)

    def _finish(self, job_id: UUID, status: ImportStatus, started: float, **values: Any) -> ImportStatus:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if status.is_terminal:
            values["completed_at"] = datetime.now(timezone.utc)
        with self._session_factory() as session:
            repo = ImportJobRepository(session)
            changed = repo.transition(
                job_id,
                from_statuses=(ImportStatus.PROCESSING,),
                to_status=status,
                control_request=None,
                processing_time_ms=func.coalesce(ImportJob.processing_time_ms, 0) + elapsed_ms,
                **values,
            )
            session.commit()
            job = repo.require(job_id)
        if not changed:
            logger.warning(f"Job {job_id}: expected to be processing when finishing, found {job.status.value}")
            return job.status
        logger.info(
            f"Job {job_id}: {status.value} ({job.successful_records} successful, "
            f"{job.failed_records} failed of {job.processed_records} processed)"
        )
        self._broadcaster.broadcast(job, status.value)
        return job.status

    def _fail(
        self,
        job_id: UUID,
        message: str,
        started: float,
        *,
        category: ErrorCategory | None = None,
        row_number: int = 0,
        resumable: bool = False,
    ) -> ImportStatus:
        try:
            if category is not None:
                with self._session_factory() as session:
                    ImportJobRepository(session).append_errors(
                        job_id, [RowError(row_number=row_number, category=category, message=message)]
                    )
                    session.commit()
            return self._finish(job_id, ImportStatus.FAILED, started, error_message=message, resumable=resumable)
        except Exception:
            logger.exception(f"Job {job_id}: could not record failure; it will be recovered on restart")
            return ImportStatus.FAILED

    def _precount(self, job_id: UUID, source: RecordSource) -> None:
        try:
            total = source.count_rows()
        except FileFormatError as exc:
            # streaming reports the same problem at its row, after the good batches
            logger.warning(f"Job {job_id}: rows not counted, total stays unknown: {exc}")
            return
        with self._session_factory() as session:
            ImportJobRepository(session).set_total(job_id, total)
            session.commit()
        logger.info(f"Job {job_id}: {total} data rows found")

    def recover_interrupted_jobs(self, *, idle_for: timedelta | None = None) -> list[UUID]:
        """Fail jobs a crashed process left processing or queued, keeping them resumable.

        Without ``idle_for`` every such job is taken to be orphaned, which only
        holds when this process is the sole runner. With it, only
        ``processing`` jobs that have not committed a batch for that long are
        recovered; queued jobs may legitimately wait in the broker.
        """
        message = "Processing was interrupted; resume to continue"
        idle_since = datetime.now(timezone.utc) - idle_for if idle_for is not None else None
        recovered: list[ImportJob] = []
        with self._session_factory() as session:
            repo = ImportJobRepository(session)
            if idle_since is None:
                statuses, candidates = INTERRUPTIBLE, repo.find_by_status(INTERRUPTIBLE)
            else:
                statuses = (ImportStatus.PROCESSING,)
                candidates = repo.find_idle(statuses, idle_since)
            for job in candidates:
                if repo.transition(
                    job.id,
                    from_statuses=statuses,
                    to_status=ImportStatus.FAILED,
                    idle_since=idle_since,
                    resumable=True,
                    control_request=None,
                    error_message=message,
                    completed_at=datetime.now(timezone.utc),
                ):
                    repo.append_errors(
                        job.id,
                        [RowError(row_number=job.resume_from_row + 1, category=ErrorCategory.SYSTEM, message=message)],
                    )
                    recovered.append(job)
            session.commit()
            recovered = [repo.require(job.id) for job in recovered]
        for job in recovered:
            logger.warning(f"Import job {job.id} was interrupted and marked failed (resumable)")
            self._broadcaster.broadcast(job, ImportStatus.FAILED.value)
        return [job.id for job in recovered]

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool and release the progress channel."""
        self._executor.shutdown(wait=wait)
        self._channel.close()

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    def _effective_options(self, options: ImportJobOptions | None) -> dict[str, Any]:
        options = options or ImportJobOptions()
        return {
            "batch_size": options.batch_size or self._settings.batch_size,
            "duplicate_check": (
                self._settings.enable_duplicate_check if options.duplicate_check is None else options.duplicate_check
            ),
            "conflict_policy": options.conflict_policy or self._settings.conflict_policy,
            "delimiter": options.delimiter,
            "encoding": options.encoding,
        }

    def _pipeline_options(self, job: ImportJob) -> dict[str, Any]:
        stored = {**self._effective_options(None), **{k: v for k, v in (job.options or {}).items() if v is not None}}
        return {
            "batch_size": stored["batch_size"],
            "duplicate_check": stored["duplicate_check"],
            "conflict_policy": stored["conflict_policy"],
            "max_failed_batches": self._settings.max_failed_batches,
            "object_type": job.object_type,
            "owner_id": job.created_by_id,
        }


def build_job_manager(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    channel: NotificationChannel | None = None,
) -> JobManager:
    """Wire a JobManager from settings: Redis progress channel and execution mode."""

    settings = settings or get_settings()
    if session_factory is None:
        from bulk_ingest.core.db import get_session_factory

        session_factory = get_session_factory()
    if channel is None:
        channel = RedisNotificationChannel.from_url(
            settings.redis_url,
            namespace=settings.progress_namespace,
            ttl_seconds=settings.progress_ttl_seconds,
        )

    dispatcher: Dispatcher | None = None
    if settings.execution_mode == "celery":
        # Lazy import to avoid a circular import with the worker module
        from bulk_ingest.tasks.import_tasks import enqueue_import_job

        dispatcher = enqueue_import_job

    return JobManager(session_factory, settings=settings, channel=channel, dispatcher=dispatcher)
