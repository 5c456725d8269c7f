"""Configuration parsing and the immutable configuration snapshot.

``ConfigSnapshot`` is a frozen view of every work item type, relationship
and transition at one ``config_version``. The database layer rebuilds it
whenever the persisted version counter moves; callers hold a snapshot for
the duration of one operation.

The ``parse_*`` helpers turn the JSON shapes accepted by the CLI, the HTTP
API and ``config load`` into model records, validating templates and
operators up front so bad configuration is rejected when it is saved
rather than when it first fires.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from trellis.errors import InvalidTemplateSyntaxError, NotFoundError
from trellis.interpolation import validate_action_template, validate_template
from trellis.models import (
    ActionConfig,
    AssignmentAction,
    AutoCreateConfig,
    FieldUpdateAction,
    NotificationAction,
    Rule,
    StatusDefinition,
    StatusTransition,
    TypeRelationship,
    ValidationConfig,
    WorkItemType,
)
from trellis.rules import validate_operator


@dataclass(frozen=True)
class ConfigSnapshot:
    version: int
    types: Mapping[str, WorkItemType] = field(default_factory=dict)
    relationships: tuple[TypeRelationship, ...] = ()
    transitions: Mapping[tuple[str, str, str], StatusTransition] = field(default_factory=dict)

    def get_type(self, type_id: str) -> WorkItemType:
        wit = self.types.get(type_id)
        if wit is None:
            raise NotFoundError("Work item type", type_id)
        return wit

    def find_type(self, ref: str, organization_id: str | None = None) -> WorkItemType | None:
        """Resolve a type by id, or by name (organization-scoped first, then global)."""
        if ref in self.types:
            return self.types[ref]
        named = [t for t in self.types.values() if t.name == ref]
        for t in named:
            if organization_id is not None and t.organization_id == organization_id:
                return t
        for t in named:
            if t.organization_id is None:
                return t
        return named[0] if named else None

    def get_status(self, type_id: str, status_ref: str) -> StatusDefinition:
        wit = self.get_type(type_id)
        status = wit.status_by_id(status_ref) or wit.status_by_name(status_ref)
        if status is None:
            raise NotFoundError(f"Status for type '{wit.name}'", status_ref)
        return status

    def relationships_for_parent(self, parent_type_id: str) -> list[TypeRelationship]:
        rels = [r for r in self.relationships if r.parent_type_id == parent_type_id]
        return sorted(rels, key=lambda r: (r.display_order, r.relationship_name))

    def relationship_between(self, parent_type_id: str, child_type_id: str) -> TypeRelationship | None:
        for r in self.relationships:
            if r.parent_type_id == parent_type_id and r.child_type_id == child_type_id:
                return r
        return None

    def auto_create_relationships(self, parent_type_id: str) -> list[TypeRelationship]:
        return [r for r in self.relationships_for_parent(parent_type_id) if r.auto_create]

    def get_transition(self, type_id: str, from_status_id: str, to_status_id: str) -> StatusTransition | None:
        return self.transitions.get((type_id, from_status_id, to_status_id))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _str_list(value: Any, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, list | tuple):
        msg = f"{name} must be a list of strings"
        raise ValueError(msg)
    for v in value:
        if not isinstance(v, str) or not v.strip():
            msg = f"{name} entries must be non-empty strings"
            raise ValueError(msg)
    return tuple(value)


def _check_template(template: str, *, action: bool) -> None:
    error = validate_action_template(template) if action else validate_template(template)
    if error:
        raise InvalidTemplateSyntaxError(template, error)


def parse_auto_create_config(data: AutoCreateConfig | Mapping[str, Any] | None) -> AutoCreateConfig | None:
    """Parse and validate an auto-create config. Templates use ``{parent.*}`` tokens."""
    if data is None:
        return None
    if isinstance(data, AutoCreateConfig):
        config = data
    else:
        if not isinstance(data, Mapping):
            msg = "auto_create_config must be an object"
            raise ValueError(msg)
        field_values = data.get("field_values") or {}
        if not isinstance(field_values, Mapping) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in field_values.items()
        ):
            msg = "auto_create_config.field_values must map field names to template strings"
            raise ValueError(msg)
        subject_template = data.get("subject_template")
        if subject_template is not None and not isinstance(subject_template, str):
            msg = "auto_create_config.subject_template must be a string"
            raise ValueError(msg)
        config = AutoCreateConfig(
            subject_template=subject_template or None,
            field_values=dict(field_values),
            inherit_fields=_str_list(data.get("inherit_fields"), "auto_create_config.inherit_fields"),
        )
    if config.subject_template:
        _check_template(config.subject_template, action=False)
    for template in config.field_values.values():
        _check_template(template, action=False)
    return config


def parse_validation_config(data: ValidationConfig | Mapping[str, Any] | None) -> ValidationConfig | None:
    if data is None:
        return None
    if isinstance(data, ValidationConfig):
        for rule in data.custom_rules:
            validate_operator(rule.operator)
        return data
    if not isinstance(data, Mapping):
        msg = "validation_config must be an object"
        raise ValueError(msg)
    rules: list[Rule] = []
    for raw in data.get("custom_rules") or []:
        if not isinstance(raw, Mapping) or not raw.get("field") or "operator" not in raw:
            msg = "custom_rules entries need 'field', 'operator' and 'value'"
            raise ValueError(msg)
        validate_operator(raw["operator"])
        message = raw.get("message")
        rules.append(
            Rule(
                field=str(raw["field"]),
                operator=raw["operator"],
                value="" if raw.get("value") is None else str(raw["value"]),
                message=str(message) if message else None,
            )
        )
    return ValidationConfig(
        required_fields=_str_list(data.get("required_fields"), "validation_config.required_fields"),
        custom_rules=tuple(rules),
    )


def _check_action_config(config: ActionConfig) -> ActionConfig:
    for n in config.notifications:
        if not n.recipients:
            msg = "notification actions need at least one recipient"
            raise ValueError(msg)
        if not n.template:
            msg = "notification actions need a template name"
            raise ValueError(msg)
        if n.subject:
            _check_template(n.subject, action=True)
    for fu in config.field_updates:
        if not fu.field:
            msg = "field_updates entries need a field"
            raise ValueError(msg)
        _check_template(fu.value, action=True)
    for a in config.assignments:
        if not a.user_id:
            msg = "assignments entries need a user_id"
            raise ValueError(msg)
        _check_template(a.user_id, action=True)
    return config


def parse_action_config(data: ActionConfig | Mapping[str, Any] | None) -> ActionConfig | None:
    if data is None:
        return None
    if isinstance(data, ActionConfig):
        return _check_action_config(data)
    if not isinstance(data, Mapping):
        msg = "action_config must be an object"
        raise ValueError(msg)
    notifications = []
    for raw in data.get("notifications") or []:
        if not isinstance(raw, Mapping):
            msg = "notifications entries must be objects"
            raise ValueError(msg)
        kind = raw.get("type", "email")
        if kind != "email":
            msg = f"Unsupported notification type '{kind}'"
            raise ValueError(msg)
        notifications.append(
            NotificationAction(
                recipients=_str_list(raw.get("recipients"), "notification recipients"),
                template=str(raw.get("template") or ""),
                subject=raw.get("subject") or None,
                type=kind,
            )
        )
    field_updates = []
    for raw in data.get("field_updates") or []:
        if not isinstance(raw, Mapping):
            msg = "field_updates entries must be objects"
            raise ValueError(msg)
        field_updates.append(
            FieldUpdateAction(
                field=str(raw.get("field") or ""),
                value="" if raw.get("value") is None else str(raw["value"]),
                condition=raw.get("condition") or None,
            )
        )
    assignments = []
    for raw in data.get("assignments") or []:
        if not isinstance(raw, Mapping):
            msg = "assignments entries must be objects"
            raise ValueError(msg)
        action = raw.get("action", "assign_to")
        if action != "assign_to":
            msg = f"Unsupported assignment action '{action}'"
            raise ValueError(msg)
        assignments.append(
            AssignmentAction(user_id=str(raw.get("user_id") or ""), condition=raw.get("condition") or None)
        )
    return _check_action_config(
        ActionConfig(
            notifications=tuple(notifications),
            field_updates=tuple(field_updates),
            assignments=tuple(assignments),
        )
    )


def check_counts(min_count: int | None, max_count: int | None) -> None:
    for name, value in (("min_count", min_count), ("max_count", max_count)):
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            msg = f"{name} must be a non-negative integer"
            raise ValueError(msg)
    if min_count is not None and max_count is not None and min_count > max_count:
        msg = f"min_count ({min_count}) cannot exceed max_count ({max_count})"
        raise ValueError(msg)
