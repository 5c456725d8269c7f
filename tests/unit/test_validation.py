"""Tests for the shared validation module."""

from __future__ import annotations

from datetime import date, datetime

import pytest

from trellis.errors import InvalidFieldValueError
from trellis.models import FieldDefinition
from trellis.validation import (
    coerce_field_value,
    normalize_date,
    sanitize_actor,
    validate_priority,
    validate_subject,
)


def _field(field_type: str, *options: str) -> FieldDefinition:
    return FieldDefinition(
        id="f1", type_id="t1", name="thing", label="Thing", field_type=field_type, options=options  # type: ignore[arg-type]
    )


class TestSanitizeActor:
    """sanitize_actor() pure function tests."""

    def test_strips_whitespace(self) -> None:
        assert sanitize_actor("  spaced  ") == ("spaced", None)

    def test_at_max_length(self) -> None:
        assert sanitize_actor("a" * 128) == ("a" * 128, None)

    def test_over_max_length(self) -> None:
        cleaned, err = sanitize_actor("a" * 129)
        assert cleaned == ""
        assert err is not None
        assert "128" in err

    @pytest.mark.parametrize("value", ["", "   "])
    def test_empty(self, value: str) -> None:
        cleaned, err = sanitize_actor(value)
        assert cleaned == ""
        assert err is not None
        assert "empty" in err

    @pytest.mark.parametrize("value", [123, None])
    def test_not_a_string(self, value: object) -> None:
        _, err = sanitize_actor(value)
        assert err is not None
        assert "string" in err

    @pytest.mark.parametrize("value", ["\x00bad", "\nbad", "\u200b", "\u202e", "\ufeff"])
    def test_control_and_format_chars(self, value: str) -> None:
        cleaned, err = sanitize_actor(value)
        assert cleaned == ""
        assert err is not None

    def test_unicode_name_allowed(self) -> None:
        """Non-ASCII normal letters are fine."""
        assert sanitize_actor("café-bot") == ("café-bot", None)


class TestStandardFields:
    def test_subject_trimmed(self) -> None:
        assert validate_subject("  Launch ") == "Launch"

    @pytest.mark.parametrize("value", ["", "   ", None, 7])
    def test_subject_rejected(self, value: object) -> None:
        with pytest.raises(ValueError, match="Subject cannot be empty"):
            validate_subject(value)

    def test_subject_too_long(self) -> None:
        with pytest.raises(ValueError, match="at most 500"):
            validate_subject("x" * 501)

    def test_priority(self) -> None:
        assert validate_priority("critical") == "critical"
        with pytest.raises(ValueError, match="Invalid priority 'urgent'"):
            validate_priority("urgent")


class TestNormalizeDate:
    def test_date_and_datetime(self) -> None:
        assert normalize_date(date(2026, 1, 2)) == "2026-01-02"
        assert normalize_date(datetime(2026, 1, 2, 15, 30)) == "2026-01-02"

    def test_iso_strings(self) -> None:
        assert normalize_date("2026-01-02") == "2026-01-02"
        assert normalize_date("2026-01-02T09:00:00+00:00") == "2026-01-02"

    def test_empty_is_none(self) -> None:
        assert normalize_date("") is None
        assert normalize_date(None) is None

    def test_garbage(self) -> None:
        with pytest.raises(InvalidFieldValueError, match="due_date"):
            normalize_date("next tuesday", "due_date")


class TestCoerceFieldValue:
    def test_text_keeps_strings(self) -> None:
        assert coerce_field_value(_field("text"), "  padded ") == "  padded "
        assert coerce_field_value(_field("text"), 12) == "12"

    def test_text_rejects_structures(self) -> None:
        with pytest.raises(InvalidFieldValueError, match="expects text"):
            coerce_field_value(_field("text"), {"a": 1})

    @pytest.mark.parametrize(("raw", "expected"), [("3", 3), ("2.5", 2.5), (4.0, 4), (7, 7)])
    def test_number(self, raw: object, expected: float) -> None:
        assert coerce_field_value(_field("number"), raw) == expected

    @pytest.mark.parametrize("raw", ["many", True, "nan", "inf", [1]])
    def test_number_rejected(self, raw: object) -> None:
        with pytest.raises(InvalidFieldValueError, match="expects a number"):
            coerce_field_value(_field("number"), raw)

    @pytest.mark.parametrize(("raw", "expected"), [("yes", True), ("OFF", False), (1, True), (False, False)])
    def test_boolean(self, raw: object, expected: bool) -> None:
        assert coerce_field_value(_field("boolean"), raw) is expected

    def test_boolean_rejected(self) -> None:
        with pytest.raises(InvalidFieldValueError, match="expects a boolean"):
            coerce_field_value(_field("boolean"), "maybe")

    def test_enum(self) -> None:
        fd = _field("enum", "low", "high")
        assert coerce_field_value(fd, "low") == "low"
        with pytest.raises(InvalidFieldValueError, match="Valid options: low, high"):
            coerce_field_value(fd, "LOW")

    def test_date(self) -> None:
        assert coerce_field_value(_field("date"), "2026-05-01") == "2026-05-01"

    def test_user(self) -> None:
        assert coerce_field_value(_field("user"), " dana ") == "dana"
        with pytest.raises(InvalidFieldValueError, match="user id"):
            coerce_field_value(_field("user"), "bad\x00id")

    def test_none_and_blank_clear(self) -> None:
        assert coerce_field_value(_field("text"), None) is None
        assert coerce_field_value(_field("number"), "  ") is None
