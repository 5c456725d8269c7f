"""Foundational TypedDicts for dataclass to_dict() returns."""

from __future__ import annotations

from typing import Any, NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class ProjectConfig(TypedDict, total=False):
    """Shape of .trellis/config.json."""

    prefix: str
    version: int
    auto_create_timeout: float
    notification_workers: int
    notification_timeout: float


class WorkItemDict(TypedDict):
    id: str
    type_id: str
    organization_id: str
    status_id: str
    subject: str
    description: str
    priority: str
    assigned_to: str | None
    due_date: str | None
    parent_id: str | None
    root_id: str
    depth: int
    path: list[str]
    started_at: str | None
    completed_at: str | None
    created_by: str
    created_at: str
    updated_at: str
    deleted_at: str | None
    custom_fields: dict[str, Any]


class FieldValueDict(TypedDict):
    field_id: str
    name: str
    field_type: str
    value: Any


class RelationshipDict(TypedDict):
    id: str
    parent_type_id: str
    child_type_id: str
    relationship_name: str
    is_required: bool
    min_count: int | None
    max_count: int | None
    auto_create: bool
    auto_create_config: dict[str, Any] | None
    display_order: int


class TransitionDict(TypedDict):
    id: str
    work_item_type_id: str
    from_status_id: str
    to_status_id: str
    is_allowed: bool
    validation_config: dict[str, Any] | None
    action_config: dict[str, Any] | None


class WatcherDict(TypedDict):
    id: str
    work_item_id: str
    user_id: str
    watch_type: str
    notify_status_changes: bool
    notify_comments: bool
    notify_assignments: bool
    notify_due_date: bool
    created_at: str


class ActionResultDict(TypedDict):
    kind: str
    target: str
    success: bool
    detail: str


class EventRecord(TypedDict):
    id: int
    work_item_id: str
    event_type: str
    actor: str
    old_value: str | None
    new_value: str | None
    comment: str
    created_at: ISOTimestamp


class MissingRequirementDict(TypedDict):
    relationship_id: str
    relationship_name: str
    child_type_id: str
    required: int
    actual: int
