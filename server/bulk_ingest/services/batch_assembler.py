"""Groups the record stream into batches and drives each through the pipeline.

One batch is fully validated, deduplicated, written and recorded before the
next is pulled from the channel, so batches commit in file order and the
parser can never run further ahead than the channel capacity.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, Iterable, Sequence
from uuid import UUID

from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from bulk_ingest.models.import_job import ControlRequest, ErrorCategory
from bulk_ingest.schemas.import_record import ImportRecord, ObjectRow
from bulk_ingest.services.duplicate_detector import DuplicateDetector
from bulk_ingest.services.exceptions import PersistenceCeilingExceeded, SystemFailure
from bulk_ingest.services.job_store import BatchResult, ImportJobRepository, RowError, RowWarning
from bulk_ingest.services.object_repository import ConflictPolicy, ObjectRepository
from bulk_ingest.services.progress import ProgressBroadcaster
from bulk_ingest.services.record_validator import RecordValidator

logger = logging.getLogger(__name__)

# Errors meaning the store itself is unavailable, as opposed to rejecting data.
STORE_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


class AssemblyOutcome(str, Enum):
    """Why the assembler stopped pulling records."""

    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PipelineOptions:
    """Effective per-job pipeline settings."""

    batch_size: int = 5000
    duplicate_check: bool = True
    conflict_policy: ConflictPolicy = "strict"
    max_failed_batches: int = 10
    object_type: str = "docket"
    owner_id: int | None = None


class BatchAssembler:
    """Owns the counters, duplicate cache and batch loop of one job run."""

    def __init__(
        self,
        job_id: UUID,
        session_factory: sessionmaker[Session],
        *,
        options: PipelineOptions,
        broadcaster: ProgressBroadcaster,
        writer_factory: Callable[[Session], ObjectRepository] = ObjectRepository,
        today: date | None = None,
    ) -> None:
        self.job_id = job_id
        self._session_factory = session_factory
        self._options = options
        self._broadcaster = broadcaster
        self._writer_factory = writer_factory
        self._validator = RecordValidator(object_type=options.object_type, today=today)
        self._detector = DuplicateDetector(check_store=options.duplicate_check)
        self.failed_batches = 0
        self.batches_committed = 0

    def run(self, records: Iterable[ImportRecord]) -> AssemblyOutcome:
        """Consume ``records`` until the stream ends or a pause/cancel is requested.

        A pending request is honoured before each batch is processed, never
        while one is in flight.

        Raises:
            SystemFailure: the store became unreachable; the current batch is
                rolled back and not counted
            PersistenceCeilingExceeded: too many batches failed to persist
        """
        batch: list[ImportRecord] = []
        for record in records:
            batch.append(record)
            if len(batch) >= self._options.batch_size:
                stop = self._pending_stop()
                if stop is not None:
                    return stop
                self.process_batch(batch)
                batch = []

        if batch:
            stop = self._pending_stop()
            if stop is not None:
                return stop
            self.process_batch(batch)
        return AssemblyOutcome.COMPLETED

    def _pending_stop(self) -> AssemblyOutcome | None:
        try:
            with self._session_factory() as session:
                request = ImportJobRepository(session).get_control_request(self.job_id)
        except STORE_UNAVAILABLE_ERRORS as exc:
            msg = f"Store unavailable while checking job controls: {exc}"
            raise SystemFailure(msg) from exc
        if request == ControlRequest.CANCEL:
            return AssemblyOutcome.CANCELLED
        if request == ControlRequest.PAUSE:
            return AssemblyOutcome.PAUSED
        return None

    def process_batch(self, batch: Sequence[ImportRecord]) -> BatchResult:
        """Validate, deduplicate, write and record one batch in a single transaction."""

        started = time.perf_counter()
        result = BatchResult(
            first_row=batch[0].row_number,
            last_row=batch[-1].row_number,
            attempted=len(batch),
        )
        accepted: list[tuple[ImportRecord, ObjectRow]] = []
        session = self._session_factory()
        try:
            try:
                accepted = self._screen(session, batch, result)
                self._write(session, accepted, result)
                ImportJobRepository(session).apply_batch(self.job_id, result)
                session.commit()
            except STORE_UNAVAILABLE_ERRORS:
                raise
            except DBAPIError as exc:
                # the store rejected the data; only this batch is lost
                session.rollback()
                self._record_failed_batch(session, batch, accepted, result, exc)
            job = ImportJobRepository(session).require(self.job_id)
        except STORE_UNAVAILABLE_ERRORS as exc:
            session.rollback()
            logger.error(
                f"Job {self.job_id}: store unavailable while writing rows "
                f"{result.first_row}-{result.last_row}: {exc}"
            )
            msg = f"Store unavailable at row {result.first_row}: {getattr(exc, 'orig', None) or exc}"
            raise SystemFailure(msg, row_number=result.first_row) from exc
        except MemoryError as exc:
            session.rollback()
            msg = f"Out of memory while processing row {result.first_row}"
            raise SystemFailure(msg, row_number=result.first_row) from exc
        finally:
            session.close()

        self.batches_committed += 1
        logger.info(
            f"Job {self.job_id}: batch rows {result.first_row}-{result.last_row} committed "
            f"({result.successful} ok, {result.failed} failed) in {time.perf_counter() - started:.2f}s"
        )
        self._broadcaster.broadcast(job, "progress")

        if self.failed_batches > self._options.max_failed_batches:
            raise PersistenceCeilingExceeded(self.failed_batches, self._options.max_failed_batches)
        return result

    def _screen(
        self, session: Session, batch: Sequence[ImportRecord], result: BatchResult
    ) -> list[tuple[ImportRecord, ObjectRow]]:
        valid: list[tuple[ImportRecord, ObjectRow]] = []
        for record in batch:
            outcome = self._validator.validate(record)
            if not outcome.is_valid:
                first = outcome.errors[0]
                result.errors.append(
                    RowError(
                        row_number=record.row_number,
                        category=ErrorCategory.VALIDATION,
                        message=outcome.summary(),
                        field_name=first.field,
                        field_value=first.value,
                        row_data=record.snapshot(),
                    )
                )
                continue
            for warning in outcome.warnings:
                result.warnings.append(
                    RowWarning(
                        row_number=record.row_number,
                        kind=warning.kind,
                        message=warning.message,
                        field_name=warning.field,
                        field_value=warning.value,
                    )
                )
            valid.append((record, outcome.row))

        self._detector.repository = ObjectRepository(session)
        verdicts = self._detector.check_batch(record.natural_key for record, _ in valid)
        accepted: list[tuple[ImportRecord, ObjectRow]] = []
        for (record, row), duplicate in zip(valid, verdicts):
            if duplicate:
                result.errors.append(self._duplicate_error(record))
            else:
                accepted.append((record, row))
        return accepted

    def _write(self, session: Session, accepted: list[tuple[ImportRecord, ObjectRow]], result: BatchResult) -> None:
        rows = [row for _, row in accepted]
        written = self._writer_factory(session).insert_batch(
            rows,
            job_id=self.job_id,
            created_by_id=self._options.owner_id,
            conflict_policy=self._options.conflict_policy,
        )
        if written.skipped_codes:
            for record, row in accepted:
                if row.object_code in written.skipped_codes:
                    result.errors.append(self._duplicate_error(record))
        result.errors.sort(key=lambda error: error.row_number)
        result.successful = written.inserted
        result.failed = result.attempted - written.inserted

    def _record_failed_batch(
        self,
        session: Session,
        batch: Sequence[ImportRecord],
        accepted: list[tuple[ImportRecord, ObjectRow]],
        result: BatchResult,
        exc: DBAPIError,
    ) -> None:
        self.failed_batches += 1
        logger.warning(
            f"Job {self.job_id}: batch rows {result.first_row}-{result.last_row} failed to persist "
            f"({self.failed_batches}/{self._options.max_failed_batches} failed batches): {exc.orig or exc}"
        )
        reason = (str(exc.orig or exc).splitlines() or [type(exc).__name__])[0]
        accepted_rows = {record.row_number for record, _ in accepted}
        rejected = [error for error in result.errors if error.row_number not in accepted_rows]
        explained = {error.row_number for error in rejected}
        for record in batch:
            if record.row_number in explained:
                continue
            rejected.append(
                RowError(
                    row_number=record.row_number,
                    category=ErrorCategory.PERSISTENCE,
                    message=f"Batch write failed: {reason}",
                    row_data=record.snapshot(),
                )
            )
        rejected.sort(key=lambda error: error.row_number)
        result.errors = rejected
        result.successful = 0
        result.failed = result.attempted
        ImportJobRepository(session).apply_batch(self.job_id, result)
        session.commit()

    @staticmethod
    def _duplicate_error(record: ImportRecord) -> RowError:
        key = record.natural_key
        return RowError(
            row_number=record.row_number,
            category=ErrorCategory.DUPLICATE,
            message=f"Duplicate object: code '{key.code}' or RFID tag '{key.tag}' already exists",
            field_name="object_code",
            field_value=key.code,
            row_data=record.snapshot(),
        )
