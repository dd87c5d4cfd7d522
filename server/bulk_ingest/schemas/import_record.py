"""Row-level types flowing through the ingestion pipeline."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from typing import Annotated, Any, Literal, Mapping, NamedTuple

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

REQUIRED_FIELDS = ("object_code", "name", "rfid_tag_id")
OPTIONAL_FIELDS = (
    "description",
    "object_type",
    "category",
    "priority_level",
    "status",
    "location",
    "assigned_to",
    "date_collected",
    "metadata",
)
KNOWN_FIELDS = REQUIRED_FIELDS + OPTIONAL_FIELDS

PRIORITY_LEVELS = ("low", "normal", "high", "critical")
OBJECT_STATUSES = ("active", "inactive", "archived", "lost", "destroyed")
EARLIEST_COLLECTION_DATE = date(1900, 1, 1)
MAX_FUTURE_DAYS = 7


class NaturalKey(NamedTuple):
    """Fields that must be unique across every ingested object."""

    code: str
    tag: str


@dataclass
class ImportRecord:
    """A single parsed row: known fields plus the remaining columns in file order."""

    row_number: int
    object_code: str | None = None
    name: str | None = None
    rfid_tag_id: str | None = None
    description: str | None = None
    object_type: str | None = None
    category: str | None = None
    priority_level: str | None = None
    status: str | None = None
    location: str | None = None
    assigned_to: str | None = None
    date_collected: str | None = None
    metadata: str | None = None
    extras: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, row_number: int, values: Mapping[str, Any]) -> "ImportRecord":
        """Split a field -> value mapping into known fields and extras."""

        known: dict[str, str | None] = {}
        extras: dict[str, str] = {}
        for key, value in values.items():
            if not key:
                continue
            text = None if value is None else str(value)
            if key in KNOWN_FIELDS:
                known[key] = text
            elif text not in (None, ""):
                extras[key] = text
        return cls(row_number=row_number, extras=extras, **known)

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey((self.object_code or "").strip(), (self.rfid_tag_id or "").strip())

    def known_values(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in KNOWN_FIELDS}

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-safe copy used as the row_data of an error."""

        data: dict[str, Any] = {k: v for k, v in self.known_values().items() if v not in (None, "")}
        data.update(self.extras)
        return data


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are not JSON and JSONB refuses them
    raise ValueError(f"{name} is not allowed in metadata")


class ObjectRow(BaseModel):
    """Schema a row must satisfy before it can be persisted as a tracked object."""

    model_config = ConfigDict(str_strip_whitespace=True)

    object_code: Annotated[str, Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")]
    name: Annotated[str, Field(max_length=255)]
    rfid_tag_id: Annotated[str, Field(max_length=50)]
    description: str | None = Field(default=None, max_length=1000)
    object_type: str = Field(default="docket", max_length=50)
    category: str | None = Field(default=None, max_length=100)
    priority_level: Literal["low", "normal", "high", "critical"] = "normal"
    status: Literal["active", "inactive", "archived", "lost", "destroyed"] = "active"
    location: str | None = Field(default=None, max_length=200)
    assigned_to: str | None = Field(default=None, max_length=100)
    date_collected: date | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator(*REQUIRED_FIELDS, mode="before")
    @classmethod
    def ensure_present(cls, value: Any, info: ValidationInfo) -> Any:
        if _is_blank(value):
            raise PydanticCustomError(
                "required",
                "{field} is required and cannot be empty",
                {"field": info.field_name},
            )
        return value

    @field_validator("description", "category", "location", "assigned_to", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        return None if _is_blank(value) else value

    @field_validator("object_type", mode="before")
    @classmethod
    def default_object_type(cls, value: Any, info: ValidationInfo) -> Any:
        if _is_blank(value):
            return (info.context or {}).get("object_type", "docket")
        return value

    @field_validator("priority_level", "status", mode="before")
    @classmethod
    def normalise_choice(cls, value: Any, info: ValidationInfo) -> Any:
        if _is_blank(value):
            return "normal" if info.field_name == "priority_level" else "active"
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("date_collected", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Any:
        if _is_blank(value):
            return None
        if isinstance(value, date):
            return value
        try:
            return date_parser.parse(str(value).strip()).date()
        except (ValueError, OverflowError) as exc:
            raise PydanticCustomError("date", "Invalid date format: {value}", {"value": str(value)}) from exc

    @field_validator("date_collected")
    @classmethod
    def check_date_window(cls, value: date | None, info: ValidationInfo) -> date | None:
        if value is None:
            return value
        today = (info.context or {}).get("today") or date.today()
        if value < EARLIEST_COLLECTION_DATE:
            raise PydanticCustomError("date", "Collection date cannot be before 1900")
        if (value - today).days > MAX_FUTURE_DAYS:
            raise PydanticCustomError(
                "date",
                "Collection date cannot be more than {days} days in the future",
                {"days": MAX_FUTURE_DAYS},
            )
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def parse_metadata(cls, value: Any) -> Any:
        if _is_blank(value):
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value, parse_constant=_reject_constant)
            except ValueError as exc:
                raise PydanticCustomError("structure", "Metadata must be valid JSON") from exc
        if not isinstance(value, dict):
            raise PydanticCustomError("structure", "Metadata must be a JSON object")
        return value
