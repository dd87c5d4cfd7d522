"""Tracked object repository: bulk writes and natural-key lookups."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal, Sequence
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from bulk_ingest.models.tracked_object import TrackedObject
from bulk_ingest.schemas.import_record import NaturalKey, ObjectRow

ConflictPolicy = Literal["strict", "skip"]

# Keeps IN (...) lists well under driver parameter limits.
LOOKUP_CHUNK_SIZE = 500


@dataclass
class WriteResult:
    """Counts for one bulk insert."""

    attempted: int = 0
    inserted: int = 0
    skipped_codes: set[str] = field(default_factory=set)

    @property
    def skipped(self) -> int:
        return self.attempted - self.inserted


class ObjectRepository:
    """Handles database operations for TrackedObject entities."""

    def __init__(self, session: Session) -> None:
        """Initialize repository with a SQLAlchemy session.

        Args:
            session: Active database session for executing queries
        """
        self._session = session

    def insert_batch(
        self,
        rows: Sequence[ObjectRow],
        *,
        job_id: UUID | None = None,
        created_by_id: int | None = None,
        conflict_policy: ConflictPolicy = "strict",
    ) -> WriteResult:
        """Insert a batch of validated rows as one multi-row statement.

        Existing rows are never updated. Under the strict policy any natural-key
        collision raises IntegrityError and nothing from the batch is kept once
        the caller rolls back. Under the skip policy colliding rows are left out
        and reported through ``WriteResult.skipped_codes``.

        The statement runs inside the caller's transaction; committing is the
        caller's decision.

        Args:
            rows: Validated rows to insert
            job_id: Import job the rows came from
            created_by_id: Owner of the import job
            conflict_policy: "strict" (default) or "skip"

        Returns:
            WriteResult with attempted and inserted counts

        Raises:
            IntegrityError: strict policy and a uniqueness constraint fired
            SQLAlchemyError: any other database failure
        """
        if not rows:
            return WriteResult()

        values = [self._to_values(row, job_id, created_by_id) for row in rows]
        table = TrackedObject.__table__

        if conflict_policy == "strict":
            self._session.execute(table.insert(), values)
            return WriteResult(attempted=len(values), inserted=len(values))

        stmt = (
            self._dialect_insert(table)
            .on_conflict_do_nothing()
            .returning(table.c.object_code)
        )
        inserted = set(self._session.execute(stmt, values).scalars().all())
        skipped = {value["object_code"] for value in values} - inserted
        return WriteResult(attempted=len(values), inserted=len(inserted), skipped_codes=skipped)

    def find_existing_keys(self, keys: Iterable[NaturalKey]) -> tuple[set[str], set[str]]:
        """Return the codes and tags from ``keys`` already present in the store."""

        key_list = list(keys)
        codes: set[str] = set()
        tags: set[str] = set()
        for start in range(0, len(key_list), LOOKUP_CHUNK_SIZE):
            chunk = key_list[start : start + LOOKUP_CHUNK_SIZE]
            chunk_codes = {key.code for key in chunk if key.code}
            chunk_tags = {key.tag for key in chunk if key.tag}
            stmt = select(TrackedObject.object_code, TrackedObject.rfid_tag_id).where(
                or_(
                    TrackedObject.object_code.in_(chunk_codes),
                    TrackedObject.rfid_tag_id.in_(chunk_tags),
                )
            )
            for code, tag in self._session.execute(stmt):
                codes.add(code)
                tags.add(tag)
        return codes, tags

    def exists(self, key: NaturalKey) -> bool:
        """Return True when an object already uses the code or the tag."""

        stmt = (
            select(TrackedObject.id)
            .where(or_(TrackedObject.object_code == key.code, TrackedObject.rfid_tag_id == key.tag))
            .limit(1)
        )
        return self._session.execute(stmt).first() is not None

    def get_by_code(self, object_code: str) -> TrackedObject | None:
        return self._session.execute(
            select(TrackedObject).where(TrackedObject.object_code == object_code)
        ).scalar_one_or_none()

    def count(self, *, job_id: UUID | None = None) -> int:
        """Return the number of objects, optionally restricted to one import job."""

        query = self._session.query(TrackedObject)
        if job_id is not None:
            query = query.filter(TrackedObject.import_job_id == job_id)
        return query.count()

    def _dialect_insert(self, table):
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(table)
        if dialect == "sqlite":
            return sqlite.insert(table)
        msg = f"Conflict-skipping inserts are not supported on {dialect}"
        raise NotImplementedError(msg)

    @staticmethod
    def _to_values(row: ObjectRow, job_id: UUID | None, created_by_id: int | None) -> dict:
        return {
            "object_code": row.object_code,
            "rfid_tag_id": row.rfid_tag_id,
            "name": row.name,
            "description": row.description,
            "object_type": row.object_type,
            "category": row.category,
            "priority_level": row.priority_level,
            "status": row.status,
            "location": row.location,
            "assigned_to": row.assigned_to,
            "date_collected": row.date_collected,
            "metadata": row.metadata,
            "import_job_id": job_id,
            "created_by_id": created_by_id,
        }
