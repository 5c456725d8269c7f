"""Template interpolation for auto-create and transition action templates.

Two families of tokens are understood:

* parent templates (auto-created children): ``{parent.<field>}`` and
  ``{parent.custom.<name>}``;
* action templates (transition field updates, notification subjects):
  ``{now}``, ``{today}``, ``{creator}``, ``{assigned_to}``,
  ``{work_item.<field>}`` and ``{work_item.custom.<name>}``.

Pure functions. Rendering never raises: a missing field or ``None`` renders
as an empty string and malformed braces are left as literal text. Syntax is
checked separately by ``validate_template`` when configuration is saved.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, date, datetime
from typing import Any

from trellis.models import STANDARD_FIELDS

PARENT_ROOTS: frozenset[str] = frozenset({"parent"})
ACTION_ROOTS: frozenset[str] = frozenset({"work_item"})
ACTION_TOKENS: frozenset[str] = frozenset({"now", "today", "creator", "assigned_to"})

DEFAULT_SUBJECT_TEMPLATE = "Child of {parent.subject}"

_TOKEN_RE = re.compile(r"\{([^{}]*)\}")
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def render_value(value: Any) -> str:
    """Render a snapshot value for substitution into text."""
    if value is None:
        return ""
    if isinstance(value, datetime | date):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _lookup(token: str, context: Mapping[str, Any]) -> Any:
    current: Any = context
    for part in token.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
        if current is None:
            return None
    return current


def interpolate(template: str, context: Mapping[str, Any]) -> str:
    """Replace every ``{dotted.token}`` in *template* from *context*."""

    def _sub(match: re.Match[str]) -> str:
        token = match.group(1).strip()
        if not token:
            return match.group(0)
        return render_value(_lookup(token, context))

    return _TOKEN_RE.sub(_sub, template)


def interpolate_parent(template: str, parent_snapshot: Mapping[str, Any]) -> str:
    return interpolate(template, {"parent": parent_snapshot})


def action_context(item_snapshot: Mapping[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    """Build the token context used by transition action templates."""
    now = now or datetime.now(UTC)
    return {
        "now": now,
        "today": now.date(),
        "creator": item_snapshot.get("created_by"),
        "assigned_to": item_snapshot.get("assigned_to"),
        "work_item": item_snapshot,
    }


def interpolate_action(template: str, item_snapshot: Mapping[str, Any], *, now: datetime | None = None) -> str:
    return interpolate(template, action_context(item_snapshot, now=now))


def _check_token(token: str, allowed_roots: frozenset[str], bare_tokens: frozenset[str]) -> str | None:
    if not token:
        return "empty token {}"
    parts = token.split(".")
    if not all(_NAME_RE.match(p) for p in parts):
        return f"malformed token {{{token}}}"
    if len(parts) == 1:
        if token in bare_tokens:
            return None
        return f"unknown token {{{token}}}"
    root = parts[0]
    if root not in allowed_roots:
        return f"unknown token root '{root}' in {{{token}}}"
    if len(parts) == 2:
        if parts[1] == "custom":
            return f"missing custom field name in {{{token}}}"
        if parts[1] not in STANDARD_FIELDS:
            return f"unknown field '{parts[1]}' in {{{token}}}"
        return None
    if len(parts) == 3 and parts[1] == "custom":
        return None
    return f"malformed token {{{token}}}"


def validate_template(
    text: str,
    allowed_roots: frozenset[str] = PARENT_ROOTS,
    bare_tokens: frozenset[str] = frozenset(),
) -> str | None:
    """Check template syntax. Returns an error message, or None if valid.

    Rejects unbalanced braces, nested braces, and tokens that are not one of
    the recognised shapes for *allowed_roots* / *bare_tokens*.
    """
    depth = 0
    start = 0
    for i, ch in enumerate(text):
        if ch == "{":
            if depth:
                return f"nested '{{' at position {i}"
            depth = 1
            start = i + 1
        elif ch == "}":
            if not depth:
                return f"unbalanced '}}' at position {i}"
            depth = 0
            error = _check_token(text[start:i].strip(), allowed_roots, bare_tokens)
            if error:
                return error
    if depth:
        return f"unclosed '{{' at position {start - 1}"
    return None


def validate_action_template(text: str) -> str | None:
    return validate_template(text, ACTION_ROOTS, ACTION_TOKENS)
