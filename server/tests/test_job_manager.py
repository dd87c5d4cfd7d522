"""End-to-end tests for JobManager driving real files through the pipeline."""
from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from bulk_ingest.models.import_job import ErrorCategory, ImportJob, ImportStatus
from bulk_ingest.services.exceptions import InvalidInput, InvalidState, JobNotFound
from bulk_ingest.services.job_manager import JobManager
from bulk_ingest.services.job_store import ImportJobRepository
from bulk_ingest.services.object_repository import ObjectRepository

from conftest import object_row, write_csv

TIMEOUT = 60


def create(manager: JobManager, path, **kwargs):
    return manager.create_job(path.name, str(path), path.stat().st_size, **kwargs)


def start_and_wait(manager: JobManager, job_id) -> ImportStatus:
    manager.start_job(job_id)
    return manager.wait(job_id, timeout=TIMEOUT)


def resume_and_wait(manager: JobManager, job_id) -> ImportStatus:
    manager.resume_job(job_id)
    return manager.wait(job_id, timeout=TIMEOUT)


def object_count(session_factory) -> int:
    with session_factory() as session:
        return ObjectRepository(session).count()


def orphan(session_factory, job_id, *, idle_for: timedelta = timedelta(0), **counters) -> None:
    """Leave a job processing with no runner, last touched ``idle_for`` ago."""
    with session_factory() as session:
        ImportJobRepository(session).transition(
            job_id, from_statuses=list(ImportStatus), to_status=ImportStatus.PROCESSING
        )
        session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(updated_at=datetime.now(timezone.utc) - idle_for, **counters)
        )
        session.commit()


class TestCreateAndQuery:
    def test_create_job_stores_effective_options(self, manager, make_csv, channel) -> None:
        path = make_csv([object_row(1)])

        job = create(manager, path, options={"batch_size": 250})

        assert job.status == ImportStatus.PENDING
        assert job.options["batch_size"] == 250
        assert job.options["duplicate_check"] is True
        assert job.options["conflict_policy"] == "strict"
        assert channel.events(str(job.id)) == ["created"]

    def test_invalid_input(self, manager) -> None:
        with pytest.raises(InvalidInput):
            manager.create_job("  ", "/tmp/objects.csv")
        with pytest.raises(InvalidInput):
            manager.create_job("objects.csv", "/tmp/objects.csv", options={"batch_size": 0})

    def test_unknown_job(self, manager) -> None:
        with pytest.raises(JobNotFound):
            manager.get_job(uuid4())
        with pytest.raises(JobNotFound):
            manager.start_job(uuid4())
        with pytest.raises(JobNotFound):
            manager.list_errors(uuid4())

    def test_invalid_page(self, manager, make_csv) -> None:
        job = create(manager, make_csv([object_row(1)]))

        with pytest.raises(InvalidInput):
            manager.list_errors(job.id, page=0)

    def test_list_jobs(self, manager, make_csv) -> None:
        first = create(manager, make_csv([object_row(1)], name="a.csv"))
        second = create(manager, make_csv([object_row(2)], name="b.csv"))

        assert {job.id for job in manager.list_jobs()} == {first.id, second.id}


class TestProcessing:
    """Complete runs over CSV files."""

    def test_invalid_rows_are_reported_by_row(self, manager, make_csv, channel) -> None:
        rows = [object_row(i) for i in range(1, 11)]
        rows[2]["name"] = ""
        rows[6]["rfid_tag_id"] = ""
        job = create(manager, make_csv(rows))

        assert start_and_wait(manager, job.id) == ImportStatus.COMPLETED

        job = manager.get_job(job.id)
        errors, total = manager.list_errors(job.id)
        assert (job.total_records, job.processed_records) == (10, 10)
        assert (job.successful_records, job.failed_records) == (8, 2)
        assert total == 2
        assert [(e.row_number, e.category) for e in errors] == [
            (3, ErrorCategory.VALIDATION),
            (7, ErrorCategory.VALIDATION),
        ]
        assert errors[0].field_name == "name"
        assert job.started_at is not None
        assert job.completed_at is not None
        assert job.processing_time_ms is not None
        events = channel.events(str(job.id))
        assert events[:3] == ["created", "queued", "processing"]
        assert events[-1] == "completed"

    def test_importing_the_same_file_twice(self, manager, make_csv, session_factory) -> None:
        path = make_csv([object_row(i) for i in range(1, 101)])
        first = create(manager, path)
        assert start_and_wait(manager, first.id) == ImportStatus.COMPLETED

        second = create(manager, path)
        assert start_and_wait(manager, second.id) == ImportStatus.COMPLETED

        second = manager.get_job(second.id)
        errors, total = manager.list_errors(second.id, page_size=1000)
        assert (second.successful_records, second.failed_records) == (0, 100)
        assert total == 100
        assert {e.category for e in errors} == {ErrorCategory.DUPLICATE}
        assert object_count(session_factory) == 100

    def test_warnings_are_recorded(self, manager, make_csv) -> None:
        job = create(manager, make_csv([object_row(1, description="bag"), object_row(2)]))

        start_and_wait(manager, job.id)

        job = manager.get_job(job.id)
        warnings, total = manager.list_warnings(job.id)
        assert job.successful_records == 2
        assert job.warnings_count == 1
        assert total == 1
        assert warnings[0].row_number == 1

    def test_bad_header_fails_without_resume(self, manager, make_csv) -> None:
        path = make_csv([object_row(1)], headers=["object_code", "name"])
        job = create(manager, path)

        assert start_and_wait(manager, job.id) == ImportStatus.FAILED

        job = manager.get_job(job.id)
        errors, _ = manager.list_errors(job.id)
        assert job.resumable is False
        assert "rfid_tag_id" in job.error_message
        assert errors[0].category == ErrorCategory.FILE_FORMAT
        with pytest.raises(InvalidState):
            manager.resume_job(job.id)

    def test_missing_file_fails(self, manager, tmp_path) -> None:
        job = manager.create_job("gone.csv", str(tmp_path / "gone.csv"))

        assert start_and_wait(manager, job.id) == ImportStatus.FAILED
        assert "not found" in manager.get_job(job.id).error_message


class FlakyWriter:
    """Writer factory whose Nth insert raises a connection error."""

    def __init__(self, fail_on: int) -> None:
        self.fail_on = fail_on
        self.calls = 0

    def __call__(self, session):
        flaky = self

        class _Writer(ObjectRepository):
            def insert_batch(self, rows, **kwargs):
                flaky.calls += 1
                if flaky.calls == flaky.fail_on:
                    raise OperationalError("INSERT INTO objects", {}, Exception("connection reset"))
                return super().insert_batch(rows, **kwargs)

        return _Writer(session)


class TestFailureAndResume:
    def test_system_failure_then_resume(self, session_factory, settings, channel, make_csv) -> None:
        manager = JobManager(session_factory, settings=settings, channel=channel, writer_factory=FlakyWriter(3))
        try:
            path = make_csv([object_row(i) for i in range(1, 5001)])
            job = create(manager, path, options={"batch_size": 1000})

            assert start_and_wait(manager, job.id) == ImportStatus.FAILED
            failed = manager.get_job(job.id)
            errors, _ = manager.list_errors(job.id)
            assert failed.resumable is True
            assert (failed.processed_records, failed.successful_records) == (2000, 2000)
            assert failed.resume_from_row == 2000
            assert failed.total_records == 5000
            assert [(e.row_number, e.category) for e in errors] == [(2001, ErrorCategory.SYSTEM)]

            assert resume_and_wait(manager, job.id) == ImportStatus.COMPLETED
            done = manager.get_job(job.id)
            assert (done.processed_records, done.successful_records, done.failed_records) == (5000, 5000, 0)
            assert done.resumable is False
            assert done.error_message is None
            assert object_count(session_factory) == 5000
        finally:
            manager.shutdown()

    def test_pause_and_resume_match_an_uninterrupted_run(self, manager, make_csv, channel, session_factory) -> None:
        rows = [object_row(i) for i in range(1, 51)]
        rows[34]["name"] = ""
        job = create(manager, make_csv(rows))
        topic = str(job.id)

        def pause_after_two_batches(t, payload):
            if t == topic and payload["event"] == "progress" and payload["processed"] == 20:
                manager.pause_job(job.id)

        channel.hooks.append(pause_after_two_batches)
        assert start_and_wait(manager, job.id) == ImportStatus.PAUSED
        channel.hooks.clear()

        paused = manager.get_job(job.id)
        assert paused.processed_records == 20
        assert paused.resume_from_row == 20
        assert paused.control_request is None

        assert resume_and_wait(manager, job.id) == ImportStatus.COMPLETED
        done = manager.get_job(job.id)
        errors, _ = manager.list_errors(job.id)
        assert (done.processed_records, done.successful_records, done.failed_records) == (50, 49, 1)
        assert [e.row_number for e in errors] == [35]
        assert object_count(session_factory) == 49
        assert "paused" in channel.events(topic)

    def test_cancel_while_processing(self, manager, make_csv, channel) -> None:
        job = create(manager, make_csv([object_row(i) for i in range(1, 51)]))
        topic = str(job.id)

        def cancel_after_first_batch(t, payload):
            if t == topic and payload["event"] == "progress" and payload["processed"] == 10:
                manager.cancel_job(job.id)

        channel.hooks.append(cancel_after_first_batch)
        assert start_and_wait(manager, job.id) == ImportStatus.CANCELLED

        job = manager.get_job(job.id)
        assert job.processed_records == 10
        assert job.completed_at is not None
        with pytest.raises(InvalidState):
            manager.resume_job(job.id)

    def test_recover_interrupted_jobs(self, manager, make_csv, session_factory, channel) -> None:
        job = create(manager, make_csv([object_row(i) for i in range(1, 6)]))
        with session_factory() as session:
            ImportJobRepository(session).transition(
                job.id, from_statuses=[ImportStatus.PENDING], to_status=ImportStatus.PROCESSING
            )
            session.commit()

        assert manager.recover_interrupted_jobs() == [job.id]

        recovered = manager.get_job(job.id)
        errors, _ = manager.list_errors(job.id)
        assert recovered.status == ImportStatus.FAILED
        assert recovered.resumable is True
        assert channel.events(str(job.id))[-1] == "failed"
        assert errors[0].category == ErrorCategory.SYSTEM
        assert resume_and_wait(manager, job.id) == ImportStatus.COMPLETED
        assert manager.get_job(job.id).successful_records == 5

    def test_idle_recovery_skips_live_and_queued_jobs(self, manager, make_csv, session_factory, channel) -> None:
        lost = create(manager, make_csv([object_row(1)], name="lost.csv"))
        busy = create(manager, make_csv([object_row(2)], name="busy.csv"))
        waiting = create(manager, make_csv([object_row(3)], name="waiting.csv"))
        orphan(session_factory, lost.id, idle_for=timedelta(hours=1))
        orphan(session_factory, busy.id)
        with session_factory() as session:
            ImportJobRepository(session).transition(
                waiting.id, from_statuses=[ImportStatus.PENDING], to_status=ImportStatus.QUEUED
            )
            session.commit()

        assert manager.recover_interrupted_jobs(idle_for=timedelta(minutes=15)) == [lost.id]

        assert manager.get_job(lost.id).status == ImportStatus.FAILED
        assert manager.get_job(busy.id).status == ImportStatus.PROCESSING
        assert manager.get_job(waiting.id).status == ImportStatus.QUEUED
        assert channel.events(str(lost.id))[-1] == "failed"
        assert resume_and_wait(manager, lost.id) == ImportStatus.COMPLETED

    def test_takeover_continues_after_last_committed_batch(self, manager, make_csv, session_factory) -> None:
        job = create(manager, make_csv([object_row(i) for i in range(1, 26)]))
        orphan(session_factory, job.id, resume_from_row=10, processed_records=10, successful_records=10)

        assert manager.run_job(job.id) == ImportStatus.PROCESSING
        assert manager.run_job(job.id, takeover=True) == ImportStatus.COMPLETED

        job = manager.get_job(job.id)
        assert (job.processed_records, job.successful_records) == (25, 25)
        assert object_count(session_factory) == 15

    def test_takeover_honours_cancel_stored_while_orphaned(self, manager, make_csv, session_factory) -> None:
        job = create(manager, make_csv([object_row(i) for i in range(1, 6)]))
        orphan(session_factory, job.id)

        assert manager.cancel_job(job.id).status == ImportStatus.PROCESSING
        assert manager.run_job(job.id, takeover=True) == ImportStatus.CANCELLED
        assert object_count(session_factory) == 0

    def test_undecodable_row_fails_after_earlier_batches(self, manager, tmp_path, session_factory) -> None:
        path = write_csv(tmp_path / "objects.csv", [object_row(i) for i in range(1, 26)])
        with open(path, "ab") as handle:
            handle.write(b"EVD-BAD,\xff\xfe broken,RFIDBAD\n")
        job = create(manager, path)

        assert start_and_wait(manager, job.id) == ImportStatus.FAILED

        job = manager.get_job(job.id)
        errors, _ = manager.list_errors(job.id)
        assert (job.processed_records, job.successful_records) == (20, 20)
        assert job.resumable is False
        assert [(e.row_number, e.category) for e in errors] == [(26, ErrorCategory.FILE_FORMAT)]
        assert object_count(session_factory) == 20


class TestLifecycleRules:
    """Operations refused in the wrong state."""

    def test_cancel_pending_job(self, manager, make_csv, channel) -> None:
        job = create(manager, make_csv([object_row(1)]))

        cancelled = manager.cancel_job(job.id)

        assert cancelled.status == ImportStatus.CANCELLED
        assert channel.events(str(job.id))[-1] == "cancelled"
        with pytest.raises(InvalidState):
            manager.start_job(job.id)

    def test_pause_requires_active_job(self, manager, make_csv) -> None:
        job = create(manager, make_csv([object_row(1)]))

        with pytest.raises(InvalidState) as exc_info:
            manager.pause_job(job.id)
        assert exc_info.value.status == "pending"

    def test_completed_job_refuses_commands(self, manager, make_csv) -> None:
        job = create(manager, make_csv([object_row(1)]))
        start_and_wait(manager, job.id)

        for command in (manager.start_job, manager.resume_job, manager.pause_job, manager.cancel_job):
            with pytest.raises(InvalidState):
                command(job.id)

    def test_start_twice(self, manager, make_csv) -> None:
        job = create(manager, make_csv([object_row(1)]))
        start_and_wait(manager, job.id)

        with pytest.raises(InvalidState):
            manager.start_job(job.id)


class GatedWriter:
    """Writer factory that holds every insert until released, tracking concurrency."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.entered = threading.Semaphore(0)
        self.lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def __call__(self, session):
        gate = self

        class _Writer(ObjectRepository):
            def insert_batch(self, rows, **kwargs):
                with gate.lock:
                    gate.active += 1
                    gate.peak = max(gate.peak, gate.active)
                gate.entered.release()
                try:
                    gate.release.wait(TIMEOUT)
                    return super().insert_batch(rows, **kwargs)
                finally:
                    with gate.lock:
                        gate.active -= 1

        return _Writer(session)


class TestConcurrency:
    def test_processing_jobs_never_exceed_the_ceiling(self, session_factory, settings, channel, make_csv) -> None:
        gate = GatedWriter()
        manager = JobManager(session_factory, settings=settings, channel=channel, writer_factory=gate)
        try:
            jobs = [
                create(manager, make_csv([object_row(i * 10 + n) for n in range(5)], name=f"{i}.csv"))
                for i in range(3)
            ]
            for job in jobs:
                manager.start_job(job.id)

            assert gate.entered.acquire(timeout=10)
            assert gate.entered.acquire(timeout=10)
            time.sleep(0.2)
            statuses = sorted(manager.get_job(job.id).status.value for job in jobs)
            assert statuses == ["processing", "processing", "queued"]

            gate.release.set()
            for job in jobs:
                assert manager.wait(job.id, timeout=TIMEOUT) == ImportStatus.COMPLETED
            assert gate.peak == settings.max_concurrent_jobs
        finally:
            gate.release.set()
            manager.shutdown()
