"""Shared validation functions for all entry points.

Pure functions with no FastAPI or Click dependencies.
"""

from __future__ import annotations

import math
import unicodedata
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from trellis.errors import InvalidFieldValueError
from trellis.models import VALID_PRIORITIES

if TYPE_CHECKING:
    from trellis.models import FieldDefinition

_MAX_ACTOR_LENGTH = 128
_MAX_SUBJECT_LENGTH = 500
_BOOL_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_BOOL_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def sanitize_actor(value: Any) -> tuple[str, str | None]:
    """Validate and clean an actor name.

    Returns (cleaned_actor, None) on success or ("", error_message) on failure.
    Strips whitespace, then checks: non-empty, max length, no control/format chars.
    """
    if not isinstance(value, str):
        return ("", "actor must be a string")
    # Reject "\nbad" rather than silently absorbing the newline via strip().
    for ch in value:
        cat = unicodedata.category(ch)
        if cat.startswith("C"):  # Cc (control) and Cf (format)
            return ("", f"actor must not contain control characters (found U+{ord(ch):04X})")
    cleaned = value.strip()
    if not cleaned:
        return ("", "actor must not be empty")
    if len(cleaned) > _MAX_ACTOR_LENGTH:
        return ("", f"actor must be at most {_MAX_ACTOR_LENGTH} characters")
    return (cleaned, None)


def validate_subject(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        msg = "Subject cannot be empty"
        raise ValueError(msg)
    cleaned = value.strip()
    if len(cleaned) > _MAX_SUBJECT_LENGTH:
        msg = f"Subject must be at most {_MAX_SUBJECT_LENGTH} characters"
        raise ValueError(msg)
    return cleaned


def validate_priority(value: Any) -> str:
    if value not in VALID_PRIORITIES:
        msg = f"Invalid priority '{value}'. Valid priorities: critical, high, medium, low"
        raise ValueError(msg)
    return str(value)


def normalize_date(value: Any, name: str = "date") -> str | None:
    """Normalize a date-ish value to ``YYYY-MM-DD``; empty values become None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10]).isoformat()
        except ValueError:
            pass
    msg = f"Invalid {name} '{value}': expected an ISO date (YYYY-MM-DD)"
    raise InvalidFieldValueError(msg)


def _coerce_number(defn: FieldDefinition, value: Any) -> int | float:
    if isinstance(value, bool):
        number: float = math.nan
    elif isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            number = math.nan
    else:
        number = math.nan
    if not math.isfinite(number):
        msg = f"Field '{defn.name}' expects a number, got {value!r}"
        raise InvalidFieldValueError(msg)
    return int(number) if number.is_integer() else number


def _coerce_boolean(defn: FieldDefinition, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _BOOL_TRUE_VALUES:
            return True
        if lowered in _BOOL_FALSE_VALUES:
            return False
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    msg = f"Field '{defn.name}' expects a boolean, got {value!r}"
    raise InvalidFieldValueError(msg)


def coerce_field_value(defn: FieldDefinition, value: Any) -> Any:
    """Validate *value* against a field definition and return its stored form.

    ``None`` (or an empty string for non-text fields) clears the value.
    Raises ``InvalidFieldValueError`` when the value does not fit the type.
    """
    if value is None:
        return None
    ft = defn.field_type
    if ft != "text" and isinstance(value, str) and not value.strip():
        return None
    if ft == "text":
        if isinstance(value, dict | list):
            msg = f"Field '{defn.name}' expects text, got {type(value).__name__}"
            raise InvalidFieldValueError(msg)
        return str(value)
    if ft == "number":
        return _coerce_number(defn, value)
    if ft == "date":
        return normalize_date(value, f"value for field '{defn.name}'")
    if ft == "boolean":
        return _coerce_boolean(defn, value)
    if ft == "enum":
        text = str(value)
        if text not in defn.options:
            msg = f"Invalid value '{text}' for field '{defn.name}'. Valid options: {', '.join(defn.options)}"
            raise InvalidFieldValueError(msg)
        return text
    if ft == "user":
        cleaned, err = sanitize_actor(value)
        if err:
            msg = f"Field '{defn.name}' expects a user id: {err.replace('actor', 'user id')}"
            raise InvalidFieldValueError(msg)
        return cleaned
    msg = f"Field '{defn.name}' has unknown type '{ft}'"
    raise InvalidFieldValueError(msg)
