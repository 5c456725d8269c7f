"""Domain records for the trellis core.

Configuration records (types, fields, statuses, relationships, transitions)
are frozen dataclasses: they are loaded into a ``ConfigSnapshot`` and shared
across calls, so nothing may mutate them after loading. ``WorkItem`` and
``Watcher`` are mutable domain entities rebuilt from rows on every read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

from trellis.types import (
    ActionResultDict,
    FieldValueDict,
    RelationshipDict,
    TransitionDict,
    WatcherDict,
    WorkItemDict,
)

FieldType = Literal["text", "number", "date", "enum", "boolean", "user"]
StatusCategory = Literal["backlog", "in_progress", "completed", "cancelled"]
Priority = Literal["critical", "high", "medium", "low"]
WatchType = Literal["manual", "auto_creator", "auto_assignee", "auto_commenter"]
NotifyCategory = Literal["status_changes", "comments", "assignments", "due_date"]
RuleOperator = Literal["equals", "not_equals", "greater_than", "less_than", "contains"]
ActionKind = Literal["notification", "field_update", "assignment"]

VALID_FIELD_TYPES: frozenset[str] = frozenset({"text", "number", "date", "enum", "boolean", "user"})
VALID_STATUS_CATEGORIES: frozenset[str] = frozenset({"backlog", "in_progress", "completed", "cancelled"})
VALID_PRIORITIES: frozenset[str] = frozenset({"critical", "high", "medium", "low"})
VALID_WATCH_TYPES: frozenset[str] = frozenset({"manual", "auto_creator", "auto_assignee", "auto_commenter"})
VALID_NOTIFY_CATEGORIES: frozenset[str] = frozenset({"status_changes", "comments", "assignments", "due_date"})
VALID_OPERATORS: frozenset[str] = frozenset({"equals", "not_equals", "greater_than", "less_than", "contains"})

# Standard attributes that templates, rules and inherit lists may name.
STANDARD_FIELDS: tuple[str, ...] = (
    "id",
    "subject",
    "description",
    "priority",
    "assigned_to",
    "due_date",
    "created_by",
    "organization_id",
    "status",
    "type",
    "started_at",
    "completed_at",
    "created_at",
    "depth",
)
# Standard attributes an auto-created child may inherit or a field-update action may write.
WRITABLE_STANDARD_FIELDS: frozenset[str] = frozenset(
    {"subject", "description", "priority", "assigned_to", "due_date", "started_at", "completed_at"}
)


# ---------------------------------------------------------------------------
# Type catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldDefinition:
    """A typed custom field declared on a work item type."""

    id: str
    type_id: str
    name: str
    label: str
    field_type: FieldType
    options: tuple[str, ...] = ()
    default: Any = None
    is_required_on_creation: bool = False
    display_order: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type_id": self.type_id,
            "name": self.name,
            "label": self.label,
            "field_type": self.field_type,
            "options": list(self.options),
            "default": self.default,
            "is_required_on_creation": self.is_required_on_creation,
            "display_order": self.display_order,
        }


@dataclass(frozen=True)
class StatusDefinition:
    id: str
    type_id: str
    name: str
    category: StatusCategory
    is_initial: bool = False
    is_final: bool = False
    display_order: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type_id": self.type_id,
            "name": self.name,
            "category": self.category,
            "is_initial": self.is_initial,
            "is_final": self.is_final,
            "display_order": self.display_order,
        }


@dataclass(frozen=True)
class WorkItemType:
    id: str
    name: str
    organization_id: str | None
    description: str = ""
    fields: tuple[FieldDefinition, ...] = ()
    statuses: tuple[StatusDefinition, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "organization_id": self.organization_id,
            "description": self.description,
            "fields": [f.to_dict() for f in self.fields],
            "statuses": [s.to_dict() for s in self.statuses],
        }

    def field_by_name(self, name: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def status_by_id(self, status_id: str) -> StatusDefinition | None:
        for s in self.statuses:
            if s.id == status_id:
                return s
        return None

    def status_by_name(self, name: str) -> StatusDefinition | None:
        for s in self.statuses:
            if s.name == name:
                return s
        return None

    @property
    def initial_status(self) -> StatusDefinition | None:
        for s in self.statuses:
            if s.is_initial:
                return s
        return None


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AutoCreateConfig:
    """How an auto-created child is filled in from its parent."""

    subject_template: str | None = None
    field_values: dict[str, str] = field(default_factory=dict)
    inherit_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_template": self.subject_template,
            "field_values": dict(self.field_values),
            "inherit_fields": list(self.inherit_fields),
        }


@dataclass(frozen=True)
class TypeRelationship:
    id: str
    parent_type_id: str
    child_type_id: str
    relationship_name: str
    is_required: bool = False
    min_count: int | None = None
    max_count: int | None = None
    auto_create: bool = False
    auto_create_config: AutoCreateConfig | None = None
    display_order: int = 0

    def to_dict(self) -> RelationshipDict:
        return {
            "id": self.id,
            "parent_type_id": self.parent_type_id,
            "child_type_id": self.child_type_id,
            "relationship_name": self.relationship_name,
            "is_required": self.is_required,
            "min_count": self.min_count,
            "max_count": self.max_count,
            "auto_create": self.auto_create,
            "auto_create_config": self.auto_create_config.to_dict() if self.auto_create_config else None,
            "display_order": self.display_order,
        }


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rule:
    """An operator predicate checked before a transition is allowed."""

    field: str
    operator: RuleOperator
    value: str
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"field": self.field, "operator": self.operator, "value": self.value}
        if self.message is not None:
            d["message"] = self.message
        return d


@dataclass(frozen=True)
class ValidationConfig:
    required_fields: tuple[str, ...] = ()
    custom_rules: tuple[Rule, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "required_fields": list(self.required_fields),
            "custom_rules": [r.to_dict() for r in self.custom_rules],
        }


@dataclass(frozen=True)
class NotificationAction:
    recipients: tuple[str, ...]
    template: str
    subject: str | None = None
    type: str = "email"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type, "recipients": list(self.recipients), "template": self.template}
        if self.subject is not None:
            d["subject"] = self.subject
        return d


@dataclass(frozen=True)
class FieldUpdateAction:
    field: str
    value: str
    condition: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"field": self.field, "value": self.value}
        if self.condition is not None:
            d["condition"] = self.condition
        return d


@dataclass(frozen=True)
class AssignmentAction:
    user_id: str
    condition: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"action": "assign_to", "user_id": self.user_id}
        if self.condition is not None:
            d["condition"] = self.condition
        return d


@dataclass(frozen=True)
class ActionConfig:
    notifications: tuple[NotificationAction, ...] = ()
    field_updates: tuple[FieldUpdateAction, ...] = ()
    assignments: tuple[AssignmentAction, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "notifications": [n.to_dict() for n in self.notifications],
            "field_updates": [f.to_dict() for f in self.field_updates],
            "assignments": [a.to_dict() for a in self.assignments],
        }


@dataclass(frozen=True)
class StatusTransition:
    id: str
    work_item_type_id: str
    from_status_id: str
    to_status_id: str
    is_allowed: bool = True
    validation_config: ValidationConfig | None = None
    action_config: ActionConfig | None = None

    def to_dict(self) -> TransitionDict:
        return {
            "id": self.id,
            "work_item_type_id": self.work_item_type_id,
            "from_status_id": self.from_status_id,
            "to_status_id": self.to_status_id,
            "is_allowed": self.is_allowed,
            "validation_config": self.validation_config.to_dict() if self.validation_config else None,
            "action_config": self.action_config.to_dict() if self.action_config else None,
        }


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


@dataclass
class FieldValue:
    """A custom value tagged with the field type it was validated against."""

    field_id: str
    name: str
    field_type: FieldType
    value: Any

    @property
    def python_value(self) -> Any:
        if self.field_type == "date" and isinstance(self.value, str) and self.value:
            try:
                return date.fromisoformat(self.value[:10])
            except ValueError:
                return self.value
        return self.value

    def to_dict(self) -> FieldValueDict:
        return {"field_id": self.field_id, "name": self.name, "field_type": self.field_type, "value": self.value}


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


@dataclass
class WorkItem:
    id: str
    type_id: str
    organization_id: str
    status_id: str
    subject: str
    path: list[str] = field(default_factory=list)
    parent_id: str | None = None
    root_id: str = ""
    depth: int = 0
    description: str = ""
    priority: Priority = "medium"
    assigned_to: str | None = None
    due_date: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    created_by: str = ""
    created_at: str = ""
    updated_at: str = ""
    deleted_at: str | None = None
    custom_fields: dict[str, FieldValue] = field(default_factory=dict)

    @property
    def custom_values(self) -> dict[str, Any]:
        """Custom values keyed by field name."""
        return {fv.name: fv.value for fv in self.custom_fields.values()}

    def snapshot(self, *, status_name: str = "", type_name: str = "") -> dict[str, Any]:
        """Field snapshot consumed by the interpolator and rule evaluator.

        Dates are returned as ``date``/``datetime`` objects so they render
        uniformly; custom values live under the ``custom`` key.
        """
        return {
            "id": self.id,
            "subject": self.subject,
            "description": self.description,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "due_date": _parse_date(self.due_date),
            "created_by": self.created_by,
            "organization_id": self.organization_id,
            "status": status_name or self.status_id,
            "type": type_name or self.type_id,
            "started_at": _parse_timestamp(self.started_at),
            "completed_at": _parse_timestamp(self.completed_at),
            "created_at": _parse_timestamp(self.created_at),
            "depth": self.depth,
            "custom": {fv.name: fv.python_value for fv in self.custom_fields.values()},
        }

    def to_dict(self) -> WorkItemDict:
        return {
            "id": self.id,
            "type_id": self.type_id,
            "organization_id": self.organization_id,
            "status_id": self.status_id,
            "subject": self.subject,
            "description": self.description,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "due_date": self.due_date,
            "parent_id": self.parent_id,
            "root_id": self.root_id,
            "depth": self.depth,
            "path": list(self.path),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deleted_at": self.deleted_at,
            "custom_fields": self.custom_values,
        }


@dataclass
class Watcher:
    id: str
    work_item_id: str
    user_id: str
    watch_type: WatchType = "manual"
    notify_status_changes: bool = True
    notify_comments: bool = True
    notify_assignments: bool = True
    notify_due_date: bool = True
    created_at: str = ""

    def wants(self, category: NotifyCategory) -> bool:
        return bool(getattr(self, f"notify_{category}"))

    def to_dict(self) -> WatcherDict:
        return {
            "id": self.id,
            "work_item_id": self.work_item_id,
            "user_id": self.user_id,
            "watch_type": self.watch_type,
            "notify_status_changes": self.notify_status_changes,
            "notify_comments": self.notify_comments,
            "notify_assignments": self.notify_assignments,
            "notify_due_date": self.notify_due_date,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AutoCreateFailure:
    """A relationship whose automatic child could not be created."""

    relationship_id: str
    child_type_id: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"relationship_id": self.relationship_id, "child_type_id": self.child_type_id, "reason": self.reason}


@dataclass
class AutoCreateReport:
    children: list[WorkItem] = field(default_factory=list)
    failures: list[AutoCreateFailure] = field(default_factory=list)


@dataclass
class CreateResult:
    item: WorkItem
    children: list[WorkItem] = field(default_factory=list)
    failures: list[AutoCreateFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item": self.item.to_dict(),
            "children": [c.to_dict() for c in self.children],
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass(frozen=True)
class ActionResult:
    kind: ActionKind
    target: str
    success: bool
    detail: str = ""

    def to_dict(self) -> ActionResultDict:
        return {"kind": self.kind, "target": self.target, "success": self.success, "detail": self.detail}


@dataclass(frozen=True)
class TransitionCheck:
    """Outcome of validating a status change."""

    ok: bool
    errors: tuple[str, ...] = ()
    transition: StatusTransition | None = None
    blocked: bool = False


@dataclass
class StatusUpdateResult:
    item: WorkItem
    actions: list[ActionResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"item": self.item.to_dict(), "actions": [a.to_dict() for a in self.actions]}
