"""Tests for RecordValidator and the ObjectRow schema."""
from __future__ import annotations

from datetime import date

import pytest

from bulk_ingest.schemas.import_record import ImportRecord
from bulk_ingest.services.record_validator import RecordValidator

TODAY = date(2024, 6, 1)


def make_record(row_number: int = 1, **values: str | None) -> ImportRecord:
    base = {
        "object_code": "EVD-001",
        "name": "Laptop",
        "rfid_tag_id": "RFID000001",
        "description": "Silver laptop with charger",
    }
    base.update(values)
    return ImportRecord.from_mapping(row_number, base)


@pytest.fixture
def validator() -> RecordValidator:
    return RecordValidator(today=TODAY)


class TestRequiredFields:
    """Required field presence."""

    def test_valid_record_passes_with_defaults(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record())

        assert result.is_valid
        assert result.row is not None
        assert result.row.object_type == "docket"
        assert result.row.priority_level == "normal"
        assert result.row.status == "active"
        assert result.row.metadata == {}

    @pytest.mark.parametrize("field", ["object_code", "name", "rfid_tag_id"])
    def test_blank_required_field_is_rejected(self, validator: RecordValidator, field: str) -> None:
        result = validator.validate(make_record(**{field: "   "}))

        assert not result.is_valid
        assert result.errors[0].field == field
        assert result.errors[0].kind == "required"
        assert "is required" in result.errors[0].message

    def test_missing_required_field_is_rejected(self, validator: RecordValidator) -> None:
        record = ImportRecord.from_mapping(4, {"object_code": "EVD-004", "name": "Phone"})

        result = validator.validate(record)

        assert [issue.field for issue in result.errors] == ["rfid_tag_id"]

    def test_summary_joins_every_field_message(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(object_code="", rfid_tag_id=""))

        assert len(result.errors) == 2
        assert result.summary() == "; ".join(issue.message for issue in result.errors)


class TestFieldRules:
    """Format, enumeration, length, date and metadata rules."""

    def test_object_code_pattern(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(object_code="BAD CODE!"))

        assert result.errors[0].field == "object_code"
        assert result.errors[0].kind == "format"

    def test_object_code_too_short(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(object_code="AB"))

        assert result.errors[0].kind == "length"

    def test_name_too_long(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(name="x" * 256))

        assert result.errors[0].field == "name"
        assert result.errors[0].kind == "length"

    def test_priority_and_status_are_case_insensitive(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(priority_level=" HIGH ", status="Archived"))

        assert result.is_valid
        assert result.row.priority_level == "high"
        assert result.row.status == "archived"

    def test_unknown_status_is_rejected(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(status="misplaced"))

        assert result.errors[0].field == "status"
        assert result.errors[0].kind == "value"
        assert result.errors[0].value == "misplaced"

    def test_unparseable_date(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(date_collected="not a date"))

        assert result.errors[0].field == "date_collected"
        assert result.errors[0].kind == "date"
        assert "Invalid date format" in result.errors[0].message

    def test_date_before_1900(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(date_collected="1899-12-31"))

        assert result.errors[0].kind == "date"

    def test_date_too_far_in_future(self, validator: RecordValidator) -> None:
        assert validator.validate(make_record(date_collected="2024-06-08")).is_valid
        result = validator.validate(make_record(date_collected="2024-06-09"))

        assert result.errors[0].kind == "date"

    def test_date_formats_are_parsed(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(date_collected="March 3, 2023"))

        assert result.row.date_collected == date(2023, 3, 3)

    def test_metadata_must_be_json_object(self, validator: RecordValidator) -> None:
        assert validator.validate(make_record(metadata="[1, 2]")).errors[0].kind == "structure"
        assert validator.validate(make_record(metadata="{broken")).errors[0].kind == "structure"

    def test_metadata_rejects_non_finite_numbers(self, validator: RecordValidator) -> None:
        for text in ('{"weight": NaN}', '{"weight": Infinity}'):
            result = validator.validate(make_record(metadata=text))

            assert result.errors[0].field == "metadata"
            assert result.errors[0].kind == "structure"

    def test_extra_columns_merge_into_metadata(self, validator: RecordValidator) -> None:
        record = ImportRecord.from_mapping(
            1,
            {
                "object_code": "EVD-001",
                "name": "Laptop",
                "rfid_tag_id": "RFID000001",
                "metadata": '{"case_number": "C-1", "seal": "A"}',
                "seal": "B",
                "officer_badge": "4411",
            },
        )

        result = validator.validate(record)

        assert result.row.metadata == {"case_number": "C-1", "seal": "B", "officer_badge": "4411"}


class TestWarnings:
    """Business-rule warnings never reject a row."""

    def test_short_description(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(description="bag"))

        assert result.is_valid
        assert [w.field for w in result.warnings] == ["description"]

    def test_destroyed_critical(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(status="destroyed", priority_level="critical"))

        assert any(w.kind == "business_rule" and w.field == "status" for w in result.warnings)

    def test_sensitive_type_with_low_priority(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(object_type="Firearm", priority_level="low"))

        assert any(w.field == "priority_level" for w in result.warnings)

    def test_old_evidence(self, validator: RecordValidator) -> None:
        result = validator.validate(make_record(date_collected="2015-01-01"))

        assert any(w.field == "date_collected" for w in result.warnings)

    def test_clean_record_has_no_warnings(self, validator: RecordValidator) -> None:
        assert validator.validate(make_record()).warnings == []
