"""Rule evaluation for transition validation and action guards.

Pure functions over an item snapshot (see ``WorkItem.snapshot``). Field
names resolve against the standard attributes first, then against custom
values; ``custom.<name>`` forces a custom lookup.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from trellis.models import VALID_OPERATORS, Rule

if TYPE_CHECKING:
    from trellis.models import StatusDefinition

logger = logging.getLogger(__name__)

_OPERATOR_PHRASES = {
    "equals": "equal",
    "not_equals": "not equal",
    "greater_than": "be greater than",
    "less_than": "be less than",
    "contains": "contain",
}


def lookup_field(name: str, snapshot: Mapping[str, Any]) -> Any:
    custom = snapshot.get("custom") or {}
    if name.startswith("custom."):
        return custom.get(name[len("custom.") :])
    if name != "custom" and name in snapshot:
        return snapshot[name]
    return custom.get(name)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list | tuple | dict | set):
        return not value
    return False


def missing_required_fields(required: Iterable[str], snapshot: Mapping[str, Any]) -> list[str]:
    """Return one ``"<field> is required"`` message per empty required field."""
    return [f"{name} is required" for name in required if is_empty(lookup_field(name, snapshot))]


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value) >= 10:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime | date):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _compare(left: Any, right: str) -> int | None:
    """Three-way compare: numerically, then as ISO dates, then as text."""
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        return (ln > rn) - (ln < rn)
    ld, rd = _as_date(left), _as_date(right)
    if ld is not None and rd is not None:
        return (ld > rd) - (ld < rd)
    if left is None:
        return None
    lt = _as_text(left)
    return (lt > right) - (lt < right)


def evaluate_rule(rule: Rule, snapshot: Mapping[str, Any]) -> bool:
    """Return True when *snapshot* satisfies *rule*."""
    left = lookup_field(rule.field, snapshot)
    op = rule.operator
    if op == "contains":
        if isinstance(left, list | tuple | set):
            return rule.value in {_as_text(v) for v in left}
        return rule.value in _as_text(left)
    if op in ("equals", "not_equals"):
        cmp = _compare(left, rule.value)
        equal = cmp == 0 if cmp is not None else rule.value == ""
        return equal if op == "equals" else not equal
    cmp = _compare(left, rule.value)
    if cmp is None:
        return False
    if op == "greater_than":
        return cmp > 0
    if op == "less_than":
        return cmp < 0
    logger.warning("Unknown rule operator '%s' on field '%s'; treating as failed", op, rule.field)
    return False


def rule_message(rule: Rule) -> str:
    if rule.message:
        return rule.message
    phrase = _OPERATOR_PHRASES.get(rule.operator, rule.operator)
    return f"{rule.field} must {phrase} {rule.value}"


def first_failing_rule(rules: Iterable[Rule], snapshot: Mapping[str, Any]) -> Rule | None:
    for rule in rules:
        if not evaluate_rule(rule, snapshot):
            return rule
    return None


def validate_operator(operator: str) -> None:
    if operator not in VALID_OPERATORS:
        msg = f"Unknown rule operator '{operator}'. Valid operators: {', '.join(sorted(VALID_OPERATORS))}"
        raise ValueError(msg)


# ---------------------------------------------------------------------------
# Action guard conditions
# ---------------------------------------------------------------------------


def evaluate_condition(
    condition: str | None,
    snapshot: Mapping[str, Any],
    target_status: StatusDefinition | None,
) -> bool:
    """Evaluate a transition action guard against the status being entered.

    ``None`` or an empty condition always holds. Unknown conditions are
    logged and evaluate False.
    """
    if not condition:
        return True
    if condition == "status_is_terminal":
        if target_status is None:
            return False
        return target_status.is_final or target_status.category in ("completed", "cancelled")
    kind, sep, arg = condition.partition(":")
    if sep:
        if kind == "status_name_equals":
            return target_status is not None and target_status.name == arg
        if kind == "status_category_equals":
            return target_status is not None and target_status.category == arg
        if kind == "field_is_empty":
            return is_empty(lookup_field(arg, snapshot))
    logger.warning("Unknown action condition '%s'; treating as false", condition)
    return False
