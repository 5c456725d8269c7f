"""RelationshipsMixin: which types may nest under which, and automatic children.

Child types are a closed world: a pair with no live relationship row is
not allowed. When an item is created, each of its type's ``auto_create``
relationships produces one child in display order. Every child is its own
unit of work (a SAVEPOINT): a failure rolls back that child only, is
logged and recorded, and the rest carry on. A time budget stops the run
between units; relationships not reached are reported as timed out.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from trellis.catalog import check_counts, parse_auto_create_config
from trellis.db_base import DBMixinProtocol, _now_iso
from trellis.errors import (
    CircularRelationshipError,
    CountConstraintViolationError,
    DuplicateRelationshipError,
    NotFoundError,
)
from trellis.interpolation import DEFAULT_SUBJECT_TEMPLATE, interpolate_parent
from trellis.models import (
    AutoCreateConfig,
    AutoCreateFailure,
    AutoCreateReport,
    TypeRelationship,
    WorkItem,
    WorkItemType,
)
from trellis.types.core import MissingRequirementDict

if TYPE_CHECKING:
    from trellis.catalog import ConfigSnapshot

logger = logging.getLogger(__name__)

# Standard attributes an auto-created child may inherit or have templated.
INHERITABLE_FIELDS: frozenset[str] = frozenset({"description", "priority", "assigned_to", "due_date"})

_UPDATABLE = frozenset(
    {
        "relationship_name",
        "is_required",
        "min_count",
        "max_count",
        "auto_create",
        "auto_create_config",
        "display_order",
    }
)


def _check_auto_create_targets(config: AutoCreateConfig | None, child_type: WorkItemType) -> None:
    if config is None:
        return
    for name in (*config.field_values, *config.inherit_fields):
        if name == "subject" and name in config.field_values:
            continue
        if name in INHERITABLE_FIELDS or child_type.field_by_name(name) is not None:
            continue
        msg = f"Auto-create field '{name}' is neither a standard field nor a field of type '{child_type.name}'"
        raise ValueError(msg)


class RelationshipsMixin(DBMixinProtocol):
    """Type relationships, count constraints and auto-creation for TrellisDB."""

    if TYPE_CHECKING:

        def _rollback_config(self) -> None: ...

        def _bump_config_version(self) -> None: ...

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

    # -- Definition ----------------------------------------------------------

    def _insert_relationship(
        self,
        parent_type_id: str,
        child_type_id: str,
        relationship_name: str | None = None,
        *,
        is_required: bool = False,
        min_count: int | None = None,
        max_count: int | None = None,
        auto_create: bool = False,
        auto_create_config: AutoCreateConfig | Mapping[str, Any] | None = None,
        display_order: int | None = None,
    ) -> str:
        snapshot = self.get_config_snapshot()
        if parent_type_id == child_type_id:
            raise CircularRelationshipError(parent_type_id)
        parent_type = snapshot.get_type(parent_type_id)
        child_type = snapshot.get_type(child_type_id)
        if snapshot.relationship_between(parent_type_id, child_type_id) is not None:
            raise DuplicateRelationshipError(parent_type_id, child_type_id)
        check_counts(min_count, max_count)
        config = parse_auto_create_config(auto_create_config)
        _check_auto_create_targets(config, child_type)
        if display_order is None:
            display_order = len(snapshot.relationships_for_parent(parent_type_id))
        rel_id = self._generate_unique_id("type_relationships", "rel")
        now = _now_iso()
        self.conn.execute(
            "INSERT INTO type_relationships (id, parent_type_id, child_type_id, relationship_name, is_required, "
            "min_count, max_count, auto_create, auto_create_config, display_order, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                rel_id,
                parent_type_id,
                child_type_id,
                relationship_name or child_type.name,
                int(is_required),
                min_count,
                max_count,
                int(auto_create),
                json.dumps(config.to_dict()) if config else None,
                display_order,
                now,
                now,
            ),
        )
        self._bump_config_version()
        logger.info("Defined relationship %s -> %s (%s)", parent_type.name, child_type.name, rel_id)
        return rel_id

    def define_relationship(
        self,
        parent_type_id: str,
        child_type_id: str,
        relationship_name: str | None = None,
        *,
        is_required: bool = False,
        min_count: int | None = None,
        max_count: int | None = None,
        auto_create: bool = False,
        auto_create_config: AutoCreateConfig | Mapping[str, Any] | None = None,
        display_order: int | None = None,
    ) -> TypeRelationship:
        """Declare that *child_type_id* items may be created under *parent_type_id* items.

        Auto-create templates are validated here, not when they first run.
        """
        try:
            rel_id = self._insert_relationship(
                parent_type_id,
                child_type_id,
                relationship_name,
                is_required=is_required,
                min_count=min_count,
                max_count=max_count,
                auto_create=auto_create,
                auto_create_config=auto_create_config,
                display_order=display_order,
            )
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise
        return self.get_relationship(rel_id)

    def get_relationship(self, relationship_id: str) -> TypeRelationship:
        for rel in self.get_config_snapshot().relationships:
            if rel.id == relationship_id:
                return rel
        raise NotFoundError("Relationship", relationship_id)

    def list_relationships(self, parent_type_id: str | None = None) -> list[TypeRelationship]:
        snapshot = self.get_config_snapshot()
        if parent_type_id is not None:
            snapshot.get_type(parent_type_id)
            return snapshot.relationships_for_parent(parent_type_id)
        return list(snapshot.relationships)

    def update_relationship(self, relationship_id: str, **changes: Any) -> TypeRelationship:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            msg = f"Cannot update relationship attribute(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        current = self.get_relationship(relationship_id)
        child_type = self.get_config_snapshot().get_type(current.child_type_id)
        min_count = changes.get("min_count", current.min_count)
        max_count = changes.get("max_count", current.max_count)
        check_counts(min_count, max_count)
        config = (
            parse_auto_create_config(changes["auto_create_config"])
            if "auto_create_config" in changes
            else current.auto_create_config
        )
        _check_auto_create_targets(config, child_type)
        try:
            self.conn.execute(
                "UPDATE type_relationships SET relationship_name = ?, is_required = ?, min_count = ?, max_count = ?, "
                "auto_create = ?, auto_create_config = ?, display_order = ?, updated_at = ? WHERE id = ?",
                (
                    changes.get("relationship_name") or current.relationship_name,
                    int(changes.get("is_required", current.is_required)),
                    min_count,
                    max_count,
                    int(changes.get("auto_create", current.auto_create)),
                    json.dumps(config.to_dict()) if config else None,
                    changes.get("display_order", current.display_order),
                    _now_iso(),
                    relationship_id,
                ),
            )
            self._bump_config_version()
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise
        return self.get_relationship(relationship_id)

    def delete_relationship(self, relationship_id: str) -> None:
        """Soft-delete a relationship. Existing children stay where they are."""
        self.get_relationship(relationship_id)
        now = _now_iso()
        try:
            self.conn.execute(
                "UPDATE type_relationships SET deleted_at = ?, updated_at = ? WHERE id = ?",
                (now, now, relationship_id),
            )
            self._bump_config_version()
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise

    # -- Validation ----------------------------------------------------------

    def validate_child_type(self, parent_type_id: str, child_type_id: str) -> tuple[bool, TypeRelationship | None]:
        """Return (allowed, relationship). Undeclared pairs are not allowed."""
        rel = self.get_config_snapshot().relationship_between(parent_type_id, child_type_id)
        return rel is not None, rel

    def _count_live_children(self, parent_id: str, child_type_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM work_items WHERE parent_id = ? AND type_id = ? AND deleted_at IS NULL",
            (parent_id, child_type_id),
        ).fetchone()
        return int(row[0])

    def check_count_constraint(self, parent_id: str, relationship: TypeRelationship) -> None:
        """Raise if one more child of the relationship's type would exceed max_count."""
        if relationship.max_count is None:
            return
        current = self._count_live_children(parent_id, relationship.child_type_id)
        if current >= relationship.max_count:
            child_type = self.get_config_snapshot().get_type(relationship.child_type_id)
            raise CountConstraintViolationError(child_type.name, relationship.max_count)

    def missing_required_children(self, item_id: str) -> list[MissingRequirementDict]:
        """Relationships whose ``is_required`` / ``min_count`` the item does not yet meet.

        Informational only; nothing blocks on it.
        """
        item = self.get_work_item(item_id)
        missing: list[MissingRequirementDict] = []
        for rel in self.get_config_snapshot().relationships_for_parent(item.type_id):
            required = max(rel.min_count or 0, 1 if rel.is_required else 0)
            if not required:
                continue
            actual = self._count_live_children(item.id, rel.child_type_id)
            if actual < required:
                missing.append(
                    {
                        "relationship_id": rel.id,
                        "relationship_name": rel.relationship_name,
                        "child_type_id": rel.child_type_id,
                        "required": required,
                        "actual": actual,
                    }
                )
        return missing

    # -- Auto-creation -------------------------------------------------------

    def _build_auto_child(
        self,
        parent: WorkItem,
        parent_snapshot: Mapping[str, Any],
        relationship: TypeRelationship,
        snapshot: ConfigSnapshot,
        actor: str,
    ) -> str:
        config = relationship.auto_create_config or AutoCreateConfig()
        child_type = snapshot.get_type(relationship.child_type_id)
        subject = interpolate_parent(config.subject_template or DEFAULT_SUBJECT_TEMPLATE, parent_snapshot)
        standard: dict[str, Any] = {}
        custom: dict[str, Any] = {}
        parent_custom = parent.custom_values
        for name in config.inherit_fields:
            if name in INHERITABLE_FIELDS:
                standard[name] = getattr(parent, name)
            elif parent_custom.get(name) is not None:
                custom[name] = parent_custom[name]
        for name, template in config.field_values.items():
            value = interpolate_parent(template, parent_snapshot)
            if name == "subject":
                subject = value
            elif name in INHERITABLE_FIELDS:
                standard[name] = value or None
            else:
                custom[name] = value
        if standard.get("description") is None:
            standard.pop("description", None)
        if not standard.get("priority"):
            standard.pop("priority", None)
        self.check_count_constraint(parent.id, relationship)
        child_id = self._insert_work_item(
            child_type,
            parent.organization_id,
            subject,
            parent=parent,
            custom_fields=custom,
            actor=actor,
            **standard,
        )
        self._record_event(parent.id, "child_auto_created", actor=actor, new_value=child_id, comment=relationship.relationship_name)
        return child_id

    def auto_create_children(self, parent: WorkItem, *, actor: str = "") -> AutoCreateReport:
        """Create one child per ``auto_create`` relationship of the parent's type.

        Children created before a failure or timeout stay committed.
        """
        snapshot = self.get_config_snapshot()
        relationships = snapshot.auto_create_relationships(parent.type_id)
        report = AutoCreateReport()
        if not relationships:
            return report
        if self.conn.in_transaction:
            self.conn.commit()

        parent_snapshot = self._snapshot_item(parent)
        started = time.monotonic()
        deadline = started + self.auto_create_timeout
        for index, rel in enumerate(relationships):
            if time.monotonic() >= deadline:
                for skipped in relationships[index:]:
                    self._record_auto_create_failure(parent, skipped, "timed out", actor)
                    report.failures.append(AutoCreateFailure(skipped.id, skipped.child_type_id, "timed out"))
                self.conn.commit()
                logger.warning(
                    "Auto-create for %s timed out after %.1fs; %d relationship(s) skipped",
                    parent.id,
                    self.auto_create_timeout,
                    len(relationships) - index,
                    extra={"op": "auto_create", "item_id": parent.id, "error": "timed out"},
                )
                break

            self.conn.execute("SAVEPOINT auto_create")
            try:
                child_id = self._build_auto_child(parent, parent_snapshot, rel, snapshot, actor)
                self.conn.execute("RELEASE SAVEPOINT auto_create")
            except Exception as exc:
                self.conn.execute("ROLLBACK TO SAVEPOINT auto_create")
                self.conn.execute("RELEASE SAVEPOINT auto_create")
                logger.warning(
                    "Auto-create of '%s' under %s failed: %s",
                    rel.relationship_name,
                    parent.id,
                    exc,
                    extra={"op": "auto_create", "item_id": parent.id, "error": str(exc)},
                )
                self._record_auto_create_failure(parent, rel, str(exc), actor)
                report.failures.append(AutoCreateFailure(rel.id, rel.child_type_id, str(exc)))
                self.conn.commit()
                continue
            self.conn.commit()
            report.children.append(self.get_work_item(child_id))

        logger.info(
            "Auto-created %d child item(s) under %s (%d failure(s))",
            len(report.children),
            parent.id,
            len(report.failures),
            extra={
                "op": "auto_create",
                "item_id": parent.id,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        return report

    def _record_auto_create_failure(self, parent: WorkItem, rel: TypeRelationship, reason: str, actor: str) -> None:
        self._record_event(
            parent.id,
            "auto_create_failed",
            actor=actor,
            new_value=rel.child_type_id,
            comment=f"{rel.relationship_name}: {reason}",
        )
