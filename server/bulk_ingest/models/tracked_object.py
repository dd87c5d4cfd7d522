"""Tracked object model definition."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import BigInteger, Date, DateTime, Index, Integer, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType


class TrackedObject(Base):
    """Any trackable item (docket, evidence, equipment, file) tagged with RFID."""

    __tablename__ = "objects"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    object_code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    rfid_tag_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    object_type: Mapped[str] = mapped_column(Text, nullable=False, server_default="docket")
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority_level: Mapped[str] = mapped_column(Text, nullable=False, server_default="normal")
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default="active")
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_collected: Mapped[date | None] = mapped_column(Date, nullable=True)
    # "metadata" is reserved on declarative classes.
    attributes: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    import_job_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("idx_objects_type_status", "object_type", "status"),
        Index("idx_objects_import_job", "import_job_id"),
    )
