"""Per-record validation for the ingestion pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pydantic import ValidationError

from bulk_ingest.schemas.import_record import ImportRecord, ObjectRow

SENSITIVE_OBJECT_TYPES = ("weapon", "firearm", "explosive", "drug", "narcotic")
RETENTION_REVIEW_DAYS = 365 * 5
SHORT_DESCRIPTION_LENGTH = 10

# pydantic error type -> error kind reported to users
_ERROR_KINDS = {
    "required": "required",
    "missing": "required",
    "string_type": "required",
    "string_too_short": "length",
    "string_too_long": "length",
    "string_pattern_mismatch": "format",
    "literal_error": "value",
    "date": "date",
    "date_type": "date",
    "structure": "structure",
}


@dataclass(frozen=True)
class FieldIssue:
    """A field-level error or warning found on one row."""

    field: str
    value: str | None
    kind: str
    message: str


@dataclass
class RecordValidation:
    """Result of validating one record."""

    errors: list[FieldIssue] = field(default_factory=list)
    warnings: list[FieldIssue] = field(default_factory=list)
    row: ObjectRow | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        return "; ".join(issue.message for issue in self.errors)


class RecordValidator:
    """Stateless validator; safe to share between threads.

    Checks required fields, enumerated values, string lengths, date
    parseability and plausibility, and the structure of the metadata column.
    Accepted rows may still carry warnings.
    """

    def __init__(self, *, object_type: str = "docket", today: date | None = None) -> None:
        self._object_type = object_type
        self._today = today

    def validate(self, record: ImportRecord) -> RecordValidation:
        context = {"today": self._today or date.today(), "object_type": self._object_type}
        try:
            row = ObjectRow.model_validate(record.known_values(), context=context)
        except ValidationError as exc:
            return RecordValidation(errors=[self._to_issue(error) for error in exc.errors()])

        if record.extras:
            row.metadata = {**row.metadata, **record.extras}
        return RecordValidation(warnings=self._business_warnings(row, context["today"]), row=row)

    @staticmethod
    def _to_issue(error: dict[str, Any]) -> FieldIssue:
        field_name = str(error["loc"][0]) if error.get("loc") else "unknown"
        raw = error.get("input")
        value = None if raw is None or isinstance(raw, dict) else str(raw)
        kind = _ERROR_KINDS.get(error["type"], "value")
        message = error["msg"]
        if error["type"] not in ("required", "date", "structure"):
            message = f"{field_name}: {message}"
        return FieldIssue(field=field_name, value=value, kind=kind, message=message)

    @staticmethod
    def _business_warnings(row: ObjectRow, today: date) -> list[FieldIssue]:
        warnings: list[FieldIssue] = []
        if row.description is not None and len(row.description) < SHORT_DESCRIPTION_LENGTH:
            warnings.append(
                FieldIssue(
                    "description",
                    row.description,
                    "length",
                    "Description is very short, consider adding more detail",
                )
            )
        if row.status == "destroyed" and row.priority_level == "critical":
            warnings.append(
                FieldIssue(
                    "status",
                    row.status,
                    "business_rule",
                    "Critical object marked as destroyed - verify this is correct",
                )
            )
        object_type = row.object_type.lower()
        if row.priority_level == "low" and any(kind in object_type for kind in SENSITIVE_OBJECT_TYPES):
            warnings.append(
                FieldIssue(
                    "priority_level",
                    row.priority_level,
                    "business_rule",
                    "Sensitive object type with low priority - verify classification",
                )
            )
        if row.date_collected is not None and (today - row.date_collected).days > RETENTION_REVIEW_DAYS:
            warnings.append(
                FieldIssue(
                    "date_collected",
                    row.date_collected.isoformat(),
                    "business_rule",
                    "Evidence is over 5 years old - verify retention requirements",
                )
            )
        return warnings
