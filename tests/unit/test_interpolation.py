"""Tests for template rendering and template syntax checks."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

import pytest

from trellis.interpolation import (
    interpolate,
    interpolate_action,
    interpolate_parent,
    render_value,
    validate_action_template,
    validate_template,
)


@pytest.fixture
def parent() -> dict[str, Any]:
    return {
        "id": "acme-1234",
        "subject": "Intake",
        "priority": "high",
        "assigned_to": None,
        "due_date": date(2026, 2, 14),
        "custom": {"patient_name": "Jane Doe", "visits": 3.0, "insured": True},
    }


class TestRender:
    def test_parent_tokens(self, parent: dict[str, Any]) -> None:
        assert interpolate_parent("Record for {parent.custom.patient_name}", parent) == "Record for Jane Doe"
        assert interpolate_parent("{parent.subject} ({parent.priority})", parent) == "Intake (high)"

    def test_value_rendering(self, parent: dict[str, Any]) -> None:
        text = interpolate_parent(
            "{parent.due_date} {parent.custom.visits} {parent.custom.insured}", parent
        )
        assert text == "2026-02-14 3 true"

    def test_missing_and_none_render_empty(self, parent: dict[str, Any]) -> None:
        assert interpolate_parent("[{parent.assigned_to}][{parent.custom.nope}]", parent) == "[][]"

    def test_malformed_braces_left_alone(self, parent: dict[str, Any]) -> None:
        assert interpolate_parent("{} and {parent.subject", parent) == "{} and {parent.subject"

    def test_action_tokens(self) -> None:
        item = {"subject": "Fix", "created_by": "carol", "assigned_to": "erin", "custom": {}}
        now = datetime(2026, 3, 5, 12, 0, tzinfo=UTC)
        text = interpolate_action("{today}: {work_item.subject} from {creator} to {assigned_to}", item, now=now)
        assert text == "2026-03-05: Fix from carol to erin"

    def test_plain_interpolate(self) -> None:
        assert interpolate("{a.b}-{c}", {"a": {"b": 1}, "c": "x"}) == "1-x"

    def test_render_value(self) -> None:
        assert render_value(None) == ""
        assert render_value(2.0) == "2"
        assert render_value(2.5) == "2.5"
        assert render_value(False) == "false"


class TestValidateTemplate:
    @pytest.mark.parametrize(
        "text",
        ["plain", "{parent.subject}", "{parent.custom.anything}", "Hi {parent.id}, due {parent.due_date}"],
    )
    def test_valid_parent_templates(self, text: str) -> None:
        assert validate_template(text) is None

    @pytest.mark.parametrize(
        ("text", "fragment"),
        [
            ("Hi {parent.subject", "unclosed"),
            ("Hi parent.subject}", "unbalanced"),
            ("{{parent.subject}}", "nested"),
            ("{}", "empty token"),
            ("{work_item.subject}", "unknown token root"),
            ("{parent.colour}", "unknown field"),
            ("{parent.custom}", "missing custom field name"),
            ("{parent.custom.a.b}", "malformed"),
            ("{today}", "unknown token"),
            ("{parent.sub ject}", "malformed"),
        ],
    )
    def test_invalid_parent_templates(self, text: str, fragment: str) -> None:
        error = validate_template(text)
        assert error is not None
        assert fragment in error

    def test_action_templates(self) -> None:
        assert validate_action_template("{now} {today} {creator} {assigned_to}") is None
        assert validate_action_template("{work_item.custom.notes}") is None
        error = validate_action_template("{parent.subject}")
        assert error is not None
        assert "parent" in error
