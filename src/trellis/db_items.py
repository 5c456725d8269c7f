"""ItemsMixin: the work item service that ties the engines together.

Public operations here are the ones the CLI and HTTP API call: they check
authorization, validate type relationships, delegate structural work to
the hierarchy engine, then run automation (auto-created children,
transition actions) whose failures are reported alongside the primary
result rather than raised.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from trellis.db_base import DBMixinProtocol, _now_iso
from trellis.errors import (
    InvalidChildTypeError,
    NotFoundError,
    TransitionNotAllowedError,
    ValidationFailedError,
)
from trellis.models import CreateResult, FieldValue, StatusUpdateResult, WorkItem
from trellis.validation import normalize_date, sanitize_actor, validate_priority, validate_subject

if TYPE_CHECKING:
    from trellis.models import (
        ActionResult,
        AutoCreateReport,
        FieldDefinition,
        StatusDefinition,
        StatusTransition,
        TransitionCheck,
        TypeRelationship,
        WorkItemType,
    )

logger = logging.getLogger(__name__)

# Keep IN (...) lists well under SQLite's bound-parameter limit.
_BATCH_SIZE = 500


class ItemsMixin(DBMixinProtocol):
    """Work item reads and orchestrated writes for TrellisDB."""

    if TYPE_CHECKING:

        def _insert_work_item(
            self,
            wit: WorkItemType,
            organization_id: str,
            subject: str,
            *,
            parent: WorkItem | None = None,
            description: str = "",
            priority: str = "medium",
            assigned_to: str | None = None,
            due_date: str | None = None,
            custom_fields: Mapping[str, Any] | None = None,
            actor: str = "",
        ) -> str: ...

        def _coerce_custom_values(
            self, wit: WorkItemType, values: Mapping[str, Any], *, apply_defaults: bool = False
        ) -> dict[str, tuple[FieldDefinition, Any]]: ...

        def _write_field_values(self, item_id: str, values: Mapping[str, tuple[FieldDefinition, Any]]) -> None: ...

        def _auto_add_watcher_row(self, item_id: str, user_id: str, watch_type: str) -> bool: ...

        def _move(self, item_id: str, new_parent_id: str | None, *, actor: str, enforce_types: bool) -> WorkItem: ...

        def soft_delete(self, item_id: str, *, actor: str = "") -> WorkItem: ...

        def validate_child_type(self, parent_type_id: str, child_type_id: str) -> tuple[bool, TypeRelationship | None]: ...

        def check_count_constraint(self, parent_id: str, relationship: TypeRelationship) -> None: ...

        def auto_create_children(self, parent: WorkItem, *, actor: str = "") -> AutoCreateReport: ...

        def validate_transition(self, item: WorkItem, from_status_id: str, to_status_id: str) -> TransitionCheck: ...

        def _write_status(
            self, item: WorkItem, from_status: StatusDefinition, to_status: StatusDefinition, *, actor: str
        ) -> None: ...

        def execute_transition(
            self,
            item: WorkItem,
            from_status_id: str,
            to_status_id: str,
            transition: StatusTransition | None,
            *,
            actor: str = "",
        ) -> list[ActionResult]: ...

    # -- Reads ---------------------------------------------------------------

    def _build_work_items(self, rows: list[sqlite3.Row]) -> list[WorkItem]:
        if not rows:
            return []
        values: dict[str, dict[str, FieldValue]] = {}
        ids = [r["id"] for r in rows]
        for start in range(0, len(ids), _BATCH_SIZE):
            chunk = ids[start : start + _BATCH_SIZE]
            placeholders = ",".join("?" * len(chunk))
            for fv in self.conn.execute(
                "SELECT v.work_item_id, v.field_id, v.field_type, v.value, f.field_name "
                "FROM work_item_field_values v JOIN field_definitions f ON f.id = v.field_id "
                f"WHERE v.work_item_id IN ({placeholders}) AND f.deleted_at IS NULL "
                "ORDER BY f.display_order, f.field_name",
                chunk,
            ):
                values.setdefault(fv["work_item_id"], {})[fv["field_id"]] = FieldValue(
                    field_id=fv["field_id"],
                    name=fv["field_name"],
                    field_type=fv["field_type"],
                    value=json.loads(fv["value"]) if fv["value"] is not None else None,
                )
        return [
            WorkItem(
                id=r["id"],
                type_id=r["type_id"],
                organization_id=r["organization_id"],
                status_id=r["status_id"],
                subject=r["subject"],
                path=json.loads(r["path"]),
                parent_id=r["parent_id"],
                root_id=r["root_id"],
                depth=r["depth"],
                description=r["description"] or "",
                priority=r["priority"],
                assigned_to=r["assigned_to"],
                due_date=r["due_date"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                created_by=r["created_by"] or "",
                created_at=r["created_at"],
                updated_at=r["updated_at"],
                deleted_at=r["deleted_at"],
                custom_fields=values.get(r["id"], {}),
            )
            for r in rows
        ]

    def get_work_item(self, item_id: str, *, include_deleted: bool = False) -> WorkItem:
        row = self.conn.execute("SELECT * FROM work_items WHERE id = ?", (item_id,)).fetchone()
        if row is None or (row["deleted_at"] is not None and not include_deleted):
            raise NotFoundError("Work item", item_id)
        return self._build_work_items([row])[0]

    def _get_work_items(self, ids: list[str]) -> list[WorkItem]:
        """Fetch items by id, preserving the order of *ids*."""
        rows: dict[str, sqlite3.Row] = {}
        for start in range(0, len(ids), _BATCH_SIZE):
            chunk = ids[start : start + _BATCH_SIZE]
            placeholders = ",".join("?" * len(chunk))
            for r in self.conn.execute(f"SELECT * FROM work_items WHERE id IN ({placeholders})", chunk):
                rows[r["id"]] = r
        return self._build_work_items([rows[i] for i in ids if i in rows])

    def _query_work_items(self, where: str, params: list[Any], order: str = "created_at, id") -> list[WorkItem]:
        # where/order are literals assembled by callers in this package
        rows = self.conn.execute(f"SELECT * FROM work_items WHERE {where} ORDER BY {order}", params).fetchall()
        return self._build_work_items(rows)

    def list_work_items(
        self,
        *,
        organization_id: str | None = None,
        type_id: str | None = None,
        parent_id: str | None = None,
        status_id: str | None = None,
        assigned_to: str | None = None,
        roots_only: bool = False,
        include_deleted: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WorkItem]:
        conditions: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("organization_id", organization_id),
            ("type_id", type_id),
            ("parent_id", parent_id),
            ("status_id", status_id),
            ("assigned_to", assigned_to),
        ):
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)
        if roots_only:
            conditions.append("parent_id IS NULL")
        if not include_deleted:
            conditions.append("deleted_at IS NULL")
        where = " AND ".join(conditions) or "1 = 1"
        rows = self.conn.execute(
            f"SELECT * FROM work_items WHERE {where} ORDER BY created_at, id LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return self._build_work_items(rows)

    def _snapshot_item(self, item: WorkItem) -> dict[str, Any]:
        wit = self.get_config_snapshot().types.get(item.type_id)
        status_name = ""
        type_name = ""
        if wit is not None:
            type_name = wit.name
            status = wit.status_by_id(item.status_id)
            status_name = status.name if status is not None else ""
        return item.snapshot(status_name=status_name, type_name=type_name)

    # -- Writes (private) ----------------------------------------------------

    def _write_assignee(self, item: WorkItem, assignee: str | None, *, actor: str) -> None:
        """Reassign an item and auto-watch the new assignee. Does not commit."""
        if assignee:
            cleaned, err = sanitize_actor(assignee)
            if err:
                msg = err.replace("actor", "assignee")
                raise ValueError(msg)
            assignee = cleaned
        else:
            assignee = None
        if assignee == item.assigned_to:
            return
        self.conn.execute(
            "UPDATE work_items SET assigned_to = ?, updated_at = ? WHERE id = ?",
            (assignee, _now_iso(), item.id),
        )
        self._record_event(item.id, "assigned", actor=actor, old_value=item.assigned_to, new_value=assignee)
        if assignee:
            self._auto_add_watcher_row(item.id, assignee, "auto_assignee")

    # -- Operations ----------------------------------------------------------

    def create_work_item(
        self,
        type_id: str,
        organization_id: str,
        subject: str,
        *,
        parent_id: str | None = None,
        description: str = "",
        priority: str = "medium",
        assigned_to: str | None = None,
        due_date: str | None = None,
        custom_fields: Mapping[str, Any] | None = None,
        actor: str = "",
    ) -> CreateResult:
        """Create an item, then its automatic children.

        Auto-creation failures do not fail the call; they come back in
        ``CreateResult.failures``.
        """
        self._authorize(actor, "create", f"work_item:{parent_id}" if parent_id else f"organization:{organization_id}")
        started = time.monotonic()
        snapshot = self.get_config_snapshot()
        wit = snapshot.get_type(type_id)
        if self.conn.in_transaction:
            self.conn.commit()
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            parent: WorkItem | None = None
            if parent_id is not None:
                parent = self.get_work_item(parent_id)
                if organization_id and organization_id != parent.organization_id:
                    msg = f"Child items must belong to the parent's organization ({parent.organization_id})"
                    raise ValueError(msg)
                allowed, rel = self.validate_child_type(parent.type_id, wit.id)
                if not allowed or rel is None:
                    raise InvalidChildTypeError(snapshot.get_type(parent.type_id).name, wit.name)
                self.check_count_constraint(parent.id, rel)
            item_id = self._insert_work_item(
                wit,
                parent.organization_id if parent is not None else organization_id,
                subject,
                parent=parent,
                description=description,
                priority=priority,
                assigned_to=assigned_to,
                due_date=due_date,
                custom_fields=custom_fields,
                actor=actor,
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        item = self.get_work_item(item_id)
        report = self.auto_create_children(item, actor=actor)
        logger.info(
            "Created %s '%s' (%s) with %d auto-created child item(s)",
            wit.name,
            item.subject,
            item.id,
            len(report.children),
            extra={"op": "create", "item_id": item.id, "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return CreateResult(item=item, children=report.children, failures=report.failures)

    def move_work_item(self, item_id: str, new_parent_id: str | None, *, actor: str = "") -> WorkItem:
        """Move an item (and its subtree) under a new parent, or to the root with ``None``.

        The item's type must be an allowed child type of the new parent.
        """
        self._authorize(actor, "move", f"work_item:{item_id}")
        return self._move(item_id, new_parent_id, actor=actor, enforce_types=True)

    def update_status(self, item_id: str, to_status: str, *, actor: str = "") -> StatusUpdateResult:
        """Change an item's status by id or name, then run the transition's actions.

        Raises ``TransitionNotAllowedError`` for a blocked pair and
        ``ValidationFailedError`` (with every unmet condition) when the
        transition's validation fails; the status is unchanged in both cases.
        The item is re-read and validated under the write lock, so two
        concurrent changes cannot both validate against the same old status.
        """
        self.get_work_item(item_id)
        self._authorize(actor, "update_status", f"work_item:{item_id}")
        started = time.monotonic()
        snapshot = self.get_config_snapshot()
        if self.conn.in_transaction:
            self.conn.commit()
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            item = self.get_work_item(item_id)
            wit = snapshot.get_type(item.type_id)
            target = snapshot.get_status(item.type_id, to_status)
            current = snapshot.get_status(item.type_id, item.status_id)
            if target.id == current.id:
                self.conn.rollback()
                return StatusUpdateResult(item=item)

            check = self.validate_transition(item, current.id, target.id)
            if not check.ok:
                if check.blocked:
                    raise TransitionNotAllowedError(current.name, target.name, wit.name)
                raise ValidationFailedError(list(check.errors))

            self._write_status(item, current, target, actor=actor)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        actions = self.execute_transition(item, current.id, target.id, check.transition, actor=actor)
        failed = sum(1 for a in actions if not a.success)
        logger.info(
            "Status of %s: %s -> %s (%d action(s), %d failed)",
            item_id,
            current.name,
            target.name,
            len(actions),
            failed,
            extra={"op": "update_status", "item_id": item_id, "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return StatusUpdateResult(item=self.get_work_item(item_id), actions=actions)

    def update_work_item(
        self,
        item_id: str,
        *,
        subject: str | None = None,
        description: str | None = None,
        priority: str | None = None,
        assigned_to: str | None = None,
        due_date: str | None = None,
        custom_fields: Mapping[str, Any] | None = None,
        actor: str = "",
    ) -> WorkItem:
        """Edit standard and custom fields. ``None`` leaves a field unchanged.

        Pass ``assigned_to=""`` or ``due_date=""`` to clear them.
        """
        item = self.get_work_item(item_id)
        self._authorize(actor, "update", f"work_item:{item_id}")
        wit = self.get_config_snapshot().get_type(item.type_id)
        now = _now_iso()
        try:
            if subject is not None:
                cleaned = validate_subject(subject)
                if cleaned != item.subject:
                    self.conn.execute("UPDATE work_items SET subject = ?, updated_at = ? WHERE id = ?", (cleaned, now, item_id))
                    self._record_event(item_id, "subject_changed", actor=actor, old_value=item.subject, new_value=cleaned)
            if description is not None and description != item.description:
                self.conn.execute(
                    "UPDATE work_items SET description = ?, updated_at = ? WHERE id = ?", (description, now, item_id)
                )
                self._record_event(item_id, "description_changed", actor=actor)
            if priority is not None and priority != item.priority:
                validate_priority(priority)
                self.conn.execute("UPDATE work_items SET priority = ?, updated_at = ? WHERE id = ?", (priority, now, item_id))
                self._record_event(item_id, "priority_changed", actor=actor, old_value=item.priority, new_value=priority)
            if due_date is not None:
                due = normalize_date(due_date, "due_date")
                if due != item.due_date:
                    self.conn.execute("UPDATE work_items SET due_date = ?, updated_at = ? WHERE id = ?", (due, now, item_id))
                    self._record_event(item_id, "due_date_changed", actor=actor, old_value=item.due_date, new_value=due)
            if assigned_to is not None:
                self._write_assignee(item, assigned_to, actor=actor)
            if custom_fields:
                coerced = self._coerce_custom_values(wit, custom_fields)
                current = item.custom_fields
                self._write_field_values(item_id, coerced)
                for field_id, (defn, value) in coerced.items():
                    old = current[field_id].value if field_id in current else None
                    if old != value:
                        self._record_event(
                            item_id,
                            "field_changed",
                            actor=actor,
                            old_value=None if old is None else json.dumps(old),
                            new_value=None if value is None else json.dumps(value),
                            comment=defn.name,
                        )
                self.conn.execute("UPDATE work_items SET updated_at = ? WHERE id = ?", (now, item_id))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return self.get_work_item(item_id)

    def delete_work_item(self, item_id: str, *, actor: str = "") -> WorkItem:
        """Soft-delete an item that has no live children."""
        self._authorize(actor, "delete", f"work_item:{item_id}")
        return self.soft_delete(item_id, actor=actor)
