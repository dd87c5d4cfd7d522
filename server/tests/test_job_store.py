"""Tests for ImportJobRepository."""
from __future__ import annotations

from uuid import uuid4

import pytest

from bulk_ingest.models.import_job import ControlRequest, ErrorCategory, ImportStatus
from bulk_ingest.schemas.import_job import ImportJobCreate
from bulk_ingest.services.exceptions import JobNotFound
from bulk_ingest.services.job_store import BatchResult, ImportJobRepository, RowError, RowWarning


@pytest.fixture
def repo(db_session) -> ImportJobRepository:
    return ImportJobRepository(db_session)


@pytest.fixture
def job(repo, db_session):
    job = repo.create(
        ImportJobCreate(filename="objects.csv", stored_file_path="/tmp/objects.csv", file_size_bytes=10, owner_id=3),
        options={"batch_size": 100},
    )
    db_session.commit()
    return job


class TestCreate:
    def test_new_job_is_pending_with_zero_counters(self, job) -> None:
        assert job.status == ImportStatus.PENDING
        assert job.processed_records == 0
        assert job.resume_from_row == 0
        assert job.total_records is None
        assert job.options == {"batch_size": 100}
        assert job.created_by_id == 3
        assert job.created_at is not None

    def test_require_unknown_job(self, repo) -> None:
        with pytest.raises(JobNotFound):
            repo.require(uuid4())


class TestTransition:
    """Conditional status updates."""

    def test_transition_from_allowed_status(self, repo, job, db_session) -> None:
        assert repo.transition(job.id, from_statuses=[ImportStatus.PENDING], to_status=ImportStatus.QUEUED)
        db_session.commit()

        assert repo.require(job.id).status == ImportStatus.QUEUED

    def test_transition_from_other_status_is_refused(self, repo, job) -> None:
        assert not repo.transition(job.id, from_statuses=[ImportStatus.PAUSED], to_status=ImportStatus.QUEUED)
        assert repo.require(job.id).status == ImportStatus.PENDING

    def test_mark_started_only_once(self, repo, job, db_session) -> None:
        repo.mark_started(job.id)
        first = repo.require(job.id).started_at
        repo.mark_started(job.id)

        assert first is not None
        assert repo.require(job.id).started_at == first

    def test_control_request_only_for_matching_status(self, repo, job) -> None:
        assert not repo.request_control(job.id, ControlRequest.PAUSE, statuses=[ImportStatus.PROCESSING])
        assert repo.get_control_request(job.id) is None

        repo.transition(job.id, from_statuses=[ImportStatus.PENDING], to_status=ImportStatus.PROCESSING)
        assert repo.request_control(job.id, ControlRequest.PAUSE, statuses=[ImportStatus.PROCESSING])
        assert repo.get_control_request(job.id) == ControlRequest.PAUSE


class TestApplyBatch:
    """Counters, resume offset and the error/warning logs."""

    def test_counters_accumulate(self, repo, job, db_session) -> None:
        repo.apply_batch(
            job.id,
            BatchResult(
                first_row=1,
                last_row=10,
                attempted=10,
                successful=8,
                failed=2,
                errors=[
                    RowError(7, ErrorCategory.DUPLICATE, "Duplicate object"),
                    RowError(3, ErrorCategory.VALIDATION, "name is required", field_name="name"),
                ],
                warnings=[RowWarning(5, "length", "Description is short", field_name="description")],
            ),
        )
        repo.apply_batch(job.id, BatchResult(first_row=11, last_row=15, attempted=5, successful=5))
        db_session.commit()

        stored = repo.require(job.id)
        assert stored.processed_records == 15
        assert stored.successful_records == 13
        assert stored.failed_records == 2
        assert stored.warnings_count == 1
        assert stored.resume_from_row == 15
        assert stored.total_records == 15

    def test_total_is_not_lowered(self, repo, job, db_session) -> None:
        repo.set_total(job.id, 100)
        repo.apply_batch(job.id, BatchResult(first_row=1, last_row=10, attempted=10, successful=10))
        db_session.commit()

        assert repo.require(job.id).total_records == 100

    def test_errors_are_listed_by_row_number(self, repo, job, db_session) -> None:
        repo.append_errors(
            job.id,
            [RowError(row, ErrorCategory.VALIDATION, f"bad row {row}", row_data={"row": row}) for row in (9, 2, 5)]
            + [RowError(4, ErrorCategory.DUPLICATE, "dup")],
        )
        db_session.commit()

        items, total = repo.list_errors(job.id, page=1, page_size=3)
        assert total == 4
        assert [item.row_number for item in items] == [2, 4, 5]
        assert items[0].row_data == {"row": 2}

        items, _ = repo.list_errors(job.id, page=2, page_size=3)
        assert [item.row_number for item in items] == [9]

        items, total = repo.list_errors(job.id, category=ErrorCategory.DUPLICATE)
        assert total == 1
        assert repo.count_errors_by_category(job.id) == {
            ErrorCategory.VALIDATION: 3,
            ErrorCategory.DUPLICATE: 1,
        }

    def test_warnings_are_listed(self, repo, job, db_session) -> None:
        repo.append_warnings(job.id, [RowWarning(3, "business_rule", "old"), RowWarning(1, "length", "short")])
        db_session.commit()

        items, total = repo.list_warnings(job.id)
        assert total == 2
        assert [item.kind for item in items] == ["length", "business_rule"]


class TestQueries:
    def test_find_by_status_and_recent(self, repo, job, db_session) -> None:
        second = repo.create(ImportJobCreate(filename="b.csv", stored_file_path="/tmp/b.csv"))
        repo.transition(second.id, from_statuses=[ImportStatus.PENDING], to_status=ImportStatus.QUEUED)
        db_session.commit()

        assert [j.id for j in repo.find_by_status([ImportStatus.QUEUED])] == [second.id]
        assert {j.id for j in repo.get_recent(limit=10)} == {job.id, second.id}
        assert len(repo.get_recent(limit=1)) == 1
