"""HierarchyMixin: materialized-path tree of work items.

Each item stores its full ancestor path (self-inclusive) as a JSON list and
as a delimited ``path_key`` (``/root/.../id/``) so a subtree is one prefix
scan. Invariants kept by every write here: ``depth == len(path) - 1``,
``path[0] == root_id``, ``path[-1] == id`` and ``depth <= MAX_DEPTH``.

Moves rewrite the whole subtree inside a single ``BEGIN IMMEDIATE``
transaction, so concurrent writers serialize on SQLite's write lock and
readers never see a half-rewritten subtree.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from trellis.db_base import MAX_DEPTH, DBMixinProtocol, _now_iso, _path_key
from trellis.errors import (
    CircularMoveError,
    DepthLimitExceededError,
    HasChildrenError,
    InvalidChildTypeError,
    InvalidFieldValueError,
    ValidationFailedError,
)
from trellis.validation import coerce_field_value, normalize_date, validate_priority, validate_subject

if TYPE_CHECKING:
    from trellis.models import FieldDefinition, TypeRelationship, WorkItem, WorkItemType

logger = logging.getLogger(__name__)


class HierarchyMixin(DBMixinProtocol):
    """Tree structure operations for TrellisDB.

    Inherits ``DBMixinProtocol`` for type-safe access to shared attributes.
    Actual implementations provided by ``TrellisDB`` at composition time.
    """

    if TYPE_CHECKING:

        def _get_work_items(self, ids: list[str]) -> list[WorkItem]: ...

        def _query_work_items(self, where: str, params: list[Any], order: str = "created_at, id") -> list[WorkItem]: ...

        def _auto_add_watcher_row(self, item_id: str, user_id: str, watch_type: str) -> bool: ...

        def validate_child_type(self, parent_type_id: str, child_type_id: str) -> tuple[bool, TypeRelationship | None]: ...

        def check_count_constraint(self, parent_id: str, relationship: TypeRelationship) -> None: ...

    # -- Custom values -------------------------------------------------------

    def _coerce_custom_values(
        self,
        wit: WorkItemType,
        values: Mapping[str, Any],
        *,
        apply_defaults: bool = False,
    ) -> dict[str, tuple[FieldDefinition, Any]]:
        """Validate custom values by field name against the type's definitions."""
        coerced: dict[str, tuple[FieldDefinition, Any]] = {}
        for name, raw in values.items():
            defn = wit.field_by_name(name)
            if defn is None:
                msg = f"Unknown field '{name}' for type '{wit.name}'"
                raise InvalidFieldValueError(msg)
            coerced[defn.id] = (defn, coerce_field_value(defn, raw))
        if apply_defaults:
            for defn in wit.fields:
                if defn.id not in coerced and defn.default is not None:
                    coerced[defn.id] = (defn, defn.default)
        return coerced

    def _write_field_values(self, item_id: str, values: Mapping[str, tuple[FieldDefinition, Any]]) -> None:
        now = _now_iso()
        for field_id, (defn, value) in values.items():
            if value is None:
                self.conn.execute(
                    "DELETE FROM work_item_field_values WHERE work_item_id = ? AND field_id = ?",
                    (item_id, field_id),
                )
                continue
            self.conn.execute(
                "INSERT INTO work_item_field_values (work_item_id, field_id, field_type, value, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(work_item_id, field_id) DO UPDATE SET field_type = excluded.field_type, "
                "value = excluded.value, updated_at = excluded.updated_at",
                (item_id, field_id, defn.field_type, json.dumps(value), now),
            )

    # -- Insert --------------------------------------------------------------

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
    ) -> str:
        """Insert one item under *parent* (or as a root). Does not commit."""
        subject = validate_subject(subject)
        priority = validate_priority(priority or "medium")
        if not organization_id:
            msg = "organization_id is required"
            raise ValueError(msg)
        if wit.organization_id is not None and wit.organization_id != organization_id:
            msg = f"Type '{wit.name}' is not available to organization '{organization_id}'"
            raise ValueError(msg)
        initial = wit.initial_status
        if initial is None:
            msg = f"Type '{wit.name}' has no initial status"
            raise ValueError(msg)

        depth = 0
        if parent is not None:
            depth = parent.depth + 1
            if depth > MAX_DEPTH:
                raise DepthLimitExceededError(depth, MAX_DEPTH)

        values = self._coerce_custom_values(wit, custom_fields or {}, apply_defaults=True)
        missing = [
            f"{defn.name} is required"
            for defn in wit.fields
            if defn.is_required_on_creation and (defn.id not in values or values[defn.id][1] is None)
        ]
        if missing:
            raise ValidationFailedError(missing)
        due = normalize_date(due_date, "due_date")
        assignee = (assigned_to or "").strip() or None

        item_id = self._generate_unique_id("work_items")
        path = [*parent.path, item_id] if parent is not None else [item_id]
        root_id = path[0]
        now = _now_iso()
        self.conn.execute(
            "INSERT INTO work_items (id, type_id, organization_id, status_id, parent_id, root_id, depth, path, "
            "path_key, subject, description, priority, assigned_to, due_date, created_by, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                item_id,
                wit.id,
                organization_id,
                initial.id,
                parent.id if parent is not None else None,
                root_id,
                depth,
                json.dumps(path),
                _path_key(path),
                subject,
                description or "",
                priority,
                assignee,
                due,
                actor,
                now,
                now,
            ),
        )
        self._write_field_values(item_id, values)
        self._record_event(item_id, "created", actor=actor, new_value=subject)
        if actor:
            self._auto_add_watcher_row(item_id, actor, "auto_creator")
        if assignee:
            self._auto_add_watcher_row(item_id, assignee, "auto_assignee")
        return item_id

    def create_root(self, type_id: str, organization_id: str, subject: str, *, actor: str = "", **attrs: Any) -> WorkItem:
        """Create a root item. No relationship checks and no auto-creation."""
        wit = self.get_config_snapshot().get_type(type_id)
        try:
            item_id = self._insert_work_item(wit, organization_id, subject, actor=actor, **attrs)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return self.get_work_item(item_id)

    def create_child(self, parent_id: str, type_id: str, subject: str, *, actor: str = "", **attrs: Any) -> WorkItem:
        """Create an item under *parent_id*. No relationship checks and no auto-creation."""
        parent = self.get_work_item(parent_id)
        wit = self.get_config_snapshot().get_type(type_id)
        try:
            item_id = self._insert_work_item(wit, parent.organization_id, subject, parent=parent, actor=actor, **attrs)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return self.get_work_item(item_id)

    # -- Move ----------------------------------------------------------------

    def _move(self, item_id: str, new_parent_id: str | None, *, actor: str, enforce_types: bool) -> WorkItem:
        if self.conn.in_transaction:
            self.conn.commit()
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            item = self.get_work_item(item_id)
            new_parent: WorkItem | None = None
            if new_parent_id is not None:
                if new_parent_id == item.id:
                    raise CircularMoveError(item.id, new_parent_id)
                new_parent = self.get_work_item(new_parent_id)
                if item.id in new_parent.path:
                    raise CircularMoveError(item.id, new_parent_id)
            if new_parent_id == item.parent_id:
                self.conn.rollback()
                return item

            if enforce_types and new_parent is not None:
                allowed, rel = self.validate_child_type(new_parent.type_id, item.type_id)
                if not allowed or rel is None:
                    snapshot = self.get_config_snapshot()
                    raise InvalidChildTypeError(
                        snapshot.get_type(new_parent.type_id).name, snapshot.get_type(item.type_id).name
                    )
                self.check_count_constraint(new_parent.id, rel)

            new_prefix = [*new_parent.path, item.id] if new_parent is not None else [item.id]
            old_key = _path_key(item.path)
            rows = self.conn.execute(
                "SELECT id, path FROM work_items WHERE substr(path_key, 1, ?) = ?",
                (len(old_key), old_key),
            ).fetchall()
            old_paths = {row["id"]: json.loads(row["path"]) for row in rows}
            deepest = max(len(p) for p in old_paths.values()) - 1
            new_deepest = len(new_prefix) - 1 + (deepest - item.depth)
            if new_deepest > MAX_DEPTH:
                raise DepthLimitExceededError(new_deepest, MAX_DEPTH)

            now = _now_iso()
            cut = len(item.path)
            for row_id, old_path in old_paths.items():
                path = new_prefix + old_path[cut:]
                self.conn.execute(
                    "UPDATE work_items SET path = ?, path_key = ?, depth = ?, root_id = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(path), _path_key(path), len(path) - 1, path[0], now, row_id),
                )
            self.conn.execute("UPDATE work_items SET parent_id = ? WHERE id = ?", (new_parent_id, item.id))
            self._record_event(
                item.id, "moved", actor=actor, old_value=item.parent_id or "", new_value=new_parent_id or ""
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        logger.info(
            "Moved %s under %s (%d item(s) re-pathed)",
            item_id,
            new_parent_id or "<root>",
            len(old_paths),
            extra={"op": "move", "item_id": item_id},
        )
        return self.get_work_item(item_id)

    def move(self, item_id: str, new_parent_id: str | None, *, actor: str = "") -> WorkItem:
        """Re-parent an item and its whole subtree. ``None`` makes it a root.

        Moving to the current parent is a no-op. Type relationships are not
        consulted here; ``move_work_item`` adds those checks.
        """
        return self._move(item_id, new_parent_id, actor=actor, enforce_types=False)

    # -- Queries -------------------------------------------------------------

    def get_children(self, item_id: str) -> list[WorkItem]:
        self.get_work_item(item_id)
        return self._query_work_items("parent_id = ? AND deleted_at IS NULL", [item_id])

    def get_ancestors(self, item_id: str) -> list[WorkItem]:
        """Ancestors from the root down to the direct parent."""
        item = self.get_work_item(item_id)
        return self._get_work_items(item.path[:-1])

    def get_descendants(self, item_id: str) -> list[WorkItem]:
        """Every live item below *item_id*, shallowest first."""
        item = self.get_work_item(item_id)
        key = _path_key(item.path)
        return self._query_work_items(
            "substr(path_key, 1, ?) = ? AND id != ? AND deleted_at IS NULL",
            [len(key), key, item.id],
            order="depth, created_at, id",
        )

    # -- Delete --------------------------------------------------------------

    def soft_delete(self, item_id: str, *, actor: str = "") -> WorkItem:
        """Mark an item deleted. Refused while it has live children."""
        item = self.get_work_item(item_id)
        row = self.conn.execute(
            "SELECT COUNT(*) FROM work_items WHERE parent_id = ? AND deleted_at IS NULL", (item_id,)
        ).fetchone()
        if row[0]:
            raise HasChildrenError(item_id, int(row[0]))
        now = _now_iso()
        try:
            self.conn.execute(
                "UPDATE work_items SET deleted_at = ?, updated_at = ? WHERE id = ?", (now, now, item_id)
            )
            self._record_event(item_id, "deleted", actor=actor, old_value=item.subject)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return self.get_work_item(item_id, include_deleted=True)
