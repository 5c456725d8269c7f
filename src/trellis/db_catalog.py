"""CatalogMixin: work item types, field definitions, statuses, and the config snapshot.

Types are the unit of configuration: each owns ordered custom field
definitions and ordered statuses. Relationships and transitions refer to
them by id. Every configuration write bumps a persisted ``config_version``
counter; ``get_config_snapshot()`` rebuilds its cached ``ConfigSnapshot``
only when that counter has moved, so a second connection picks up changes
on its next access.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from trellis.catalog import ConfigSnapshot
from trellis.db_base import DBMixinProtocol, _now_iso
from trellis.errors import NotFoundError
from trellis.models import (
    STANDARD_FIELDS,
    VALID_FIELD_TYPES,
    VALID_STATUS_CATEGORIES,
    ActionConfig,
    AssignmentAction,
    AutoCreateConfig,
    FieldDefinition,
    FieldUpdateAction,
    NotificationAction,
    Rule,
    StatusDefinition,
    StatusTransition,
    TypeRelationship,
    ValidationConfig,
    WorkItemType,
)
from trellis.validation import coerce_field_value

if TYPE_CHECKING:
    from trellis.models import FieldType, StatusCategory

logger = logging.getLogger(__name__)

_CONFIG_VERSION_KEY = "config_version"
_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Row converters
# ---------------------------------------------------------------------------


def _loads(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring corrupt JSON column value: %r", raw[:80])
        return None


def _row_to_field(row: sqlite3.Row) -> FieldDefinition:
    return FieldDefinition(
        id=row["id"],
        type_id=row["type_id"],
        name=row["field_name"],
        label=row["field_label"],
        field_type=row["field_type"],
        options=tuple(_loads(row["field_options"]) or ()),
        default=_loads(row["default_value"]),
        is_required_on_creation=bool(row["is_required_on_creation"]),
        display_order=row["display_order"],
    )


def _row_to_status(row: sqlite3.Row) -> StatusDefinition:
    return StatusDefinition(
        id=row["id"],
        type_id=row["type_id"],
        name=row["name"],
        category=row["status_category"],
        is_initial=bool(row["is_initial"]),
        is_final=bool(row["is_final"]),
        display_order=row["display_order"],
    )


def _auto_create_from_json(data: Any) -> AutoCreateConfig | None:
    if not isinstance(data, dict):
        return None
    return AutoCreateConfig(
        subject_template=data.get("subject_template") or None,
        field_values=dict(data.get("field_values") or {}),
        inherit_fields=tuple(data.get("inherit_fields") or ()),
    )


def _row_to_relationship(row: sqlite3.Row) -> TypeRelationship:
    return TypeRelationship(
        id=row["id"],
        parent_type_id=row["parent_type_id"],
        child_type_id=row["child_type_id"],
        relationship_name=row["relationship_name"],
        is_required=bool(row["is_required"]),
        min_count=row["min_count"],
        max_count=row["max_count"],
        auto_create=bool(row["auto_create"]),
        auto_create_config=_auto_create_from_json(_loads(row["auto_create_config"])),
        display_order=row["display_order"],
    )


def _validation_from_json(data: Any) -> ValidationConfig | None:
    if not isinstance(data, dict):
        return None
    return ValidationConfig(
        required_fields=tuple(data.get("required_fields") or ()),
        custom_rules=tuple(
            Rule(field=r["field"], operator=r["operator"], value=r.get("value", ""), message=r.get("message"))
            for r in data.get("custom_rules") or ()
        ),
    )


def _actions_from_json(data: Any) -> ActionConfig | None:
    if not isinstance(data, dict):
        return None
    return ActionConfig(
        notifications=tuple(
            NotificationAction(
                recipients=tuple(n.get("recipients") or ()),
                template=n.get("template", ""),
                subject=n.get("subject"),
                type=n.get("type", "email"),
            )
            for n in data.get("notifications") or ()
        ),
        field_updates=tuple(
            FieldUpdateAction(field=f["field"], value=f.get("value", ""), condition=f.get("condition"))
            for f in data.get("field_updates") or ()
        ),
        assignments=tuple(
            AssignmentAction(user_id=a["user_id"], condition=a.get("condition")) for a in data.get("assignments") or ()
        ),
    )


def _row_to_transition(row: sqlite3.Row) -> StatusTransition:
    return StatusTransition(
        id=row["id"],
        work_item_type_id=row["work_item_type_id"],
        from_status_id=row["from_status_id"],
        to_status_id=row["to_status_id"],
        is_allowed=bool(row["is_allowed"]),
        validation_config=_validation_from_json(_loads(row["validation_config"])),
        action_config=_actions_from_json(_loads(row["action_config"])),
    )


class CatalogMixin(DBMixinProtocol):
    """Type catalog and configuration snapshot for TrellisDB.

    Inherits ``DBMixinProtocol`` for type-safe access to shared attributes.
    Actual implementations provided by ``TrellisDB`` at composition time.
    """

    _snapshot: ConfigSnapshot | None

    # -- Snapshot ------------------------------------------------------------

    def _config_version(self) -> int:
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (_CONFIG_VERSION_KEY,)).fetchone()
        return int(row["value"]) if row else 0

    def _bump_config_version(self) -> None:
        self.conn.execute(
            "INSERT INTO meta (key, value) VALUES (?, '1') "
            "ON CONFLICT(key) DO UPDATE SET value = CAST(value AS INTEGER) + 1",
            (_CONFIG_VERSION_KEY,),
        )

    def _rollback_config(self) -> None:
        """Roll back a configuration write and drop a snapshot that may have seen it."""
        self.conn.rollback()
        self._snapshot = None

    def get_config_snapshot(self) -> ConfigSnapshot:
        """Return the cached snapshot, reloading it if configuration changed."""
        version = self._config_version()
        if self._snapshot is not None and self._snapshot.version == version:
            return self._snapshot
        self._snapshot = self._load_snapshot(version)
        logger.debug("Loaded configuration snapshot v%d (%d types)", version, len(self._snapshot.types))
        return self._snapshot

    def _load_snapshot(self, version: int) -> ConfigSnapshot:
        fields: dict[str, list[FieldDefinition]] = {}
        for row in self.conn.execute(
            "SELECT * FROM field_definitions WHERE deleted_at IS NULL ORDER BY display_order, field_name"
        ):
            fields.setdefault(row["type_id"], []).append(_row_to_field(row))
        statuses: dict[str, list[StatusDefinition]] = {}
        for row in self.conn.execute("SELECT * FROM status_definitions ORDER BY display_order, name"):
            statuses.setdefault(row["type_id"], []).append(_row_to_status(row))
        types = {
            row["id"]: WorkItemType(
                id=row["id"],
                name=row["name"],
                organization_id=row["organization_id"],
                description=row["description"] or "",
                fields=tuple(fields.get(row["id"], ())),
                statuses=tuple(statuses.get(row["id"], ())),
            )
            for row in self.conn.execute("SELECT * FROM work_item_types WHERE deleted_at IS NULL ORDER BY name")
        }
        relationships = tuple(
            _row_to_relationship(row)
            for row in self.conn.execute(
                "SELECT * FROM type_relationships WHERE deleted_at IS NULL ORDER BY display_order, relationship_name"
            )
        )
        transitions = {
            (t.work_item_type_id, t.from_status_id, t.to_status_id): t
            for t in (_row_to_transition(row) for row in self.conn.execute("SELECT * FROM status_transitions"))
        }
        return ConfigSnapshot(version=version, types=types, relationships=relationships, transitions=transitions)

    # -- Types ---------------------------------------------------------------

    def get_type(self, type_ref: str, *, organization_id: str | None = None) -> WorkItemType:
        """Look up a type by id or name."""
        wit = self.get_config_snapshot().find_type(type_ref, organization_id)
        if wit is None:
            raise NotFoundError("Work item type", type_ref)
        return wit

    def list_types(self, *, organization_id: str | None = None) -> list[WorkItemType]:
        """Types visible to *organization_id*: its own plus global ones."""
        types = self.get_config_snapshot().types.values()
        if organization_id is None:
            return list(types)
        return [t for t in types if t.organization_id in (None, organization_id)]

    def _type_item_count(self, type_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM work_items WHERE type_id = ? AND deleted_at IS NULL", (type_id,)
        ).fetchone()
        return int(row[0])

    def _reject_if_type_in_use(self, type_id: str, action: str) -> None:
        count = self._type_item_count(type_id)
        if count:
            msg = f"Cannot {action}: type {type_id} is used by {count} work item(s)"
            raise ValueError(msg)

    def _insert_type(self, name: str, organization_id: str | None, description: str) -> str:
        name = (name or "").strip()
        if not name:
            msg = "Type name cannot be empty"
            raise ValueError(msg)
        dup = self.conn.execute(
            "SELECT 1 FROM work_item_types WHERE name = ? AND organization_id IS ? AND deleted_at IS NULL",
            (name, organization_id),
        ).fetchone()
        if dup:
            msg = f"Work item type '{name}' already exists"
            raise ValueError(msg)
        type_id = self._generate_unique_id("work_item_types", "type")
        now = _now_iso()
        self.conn.execute(
            "INSERT INTO work_item_types (id, name, organization_id, description, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (type_id, name, organization_id, description, now, now),
        )
        self._bump_config_version()
        return type_id

    def create_type(self, name: str, *, organization_id: str | None = None, description: str = "") -> WorkItemType:
        try:
            type_id = self._insert_type(name, organization_id, description)
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise
        logger.info("Created work item type %s (%s)", name, type_id)
        return self.get_config_snapshot().get_type(type_id)

    def delete_type(self, type_id: str) -> None:
        """Soft-delete a type. Rejected while live items use it."""
        self.get_config_snapshot().get_type(type_id)
        try:
            self._reject_if_type_in_use(type_id, "delete type")
            now = _now_iso()
            self.conn.execute(
                "UPDATE work_item_types SET deleted_at = ?, updated_at = ? WHERE id = ?", (now, now, type_id)
            )
            self.conn.execute(
                "UPDATE type_relationships SET deleted_at = ?, updated_at = ? "
                "WHERE (parent_type_id = ? OR child_type_id = ?) AND deleted_at IS NULL",
                (now, now, type_id, type_id),
            )
            self._bump_config_version()
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise

    # -- Fields --------------------------------------------------------------

    def _insert_field(
        self,
        type_id: str,
        name: str,
        field_type: str,
        *,
        label: str | None = None,
        options: list[str] | None = None,
        default: Any = None,
        required_on_creation: bool = False,
        display_order: int | None = None,
    ) -> str:
        wit = self.get_config_snapshot().get_type(type_id)
        name = (name or "").strip()
        if not _FIELD_NAME_RE.match(name):
            msg = f"Invalid field name '{name}': use letters, digits and underscores"
            raise ValueError(msg)
        if name in STANDARD_FIELDS or name == "custom":
            msg = f"Field name '{name}' clashes with a standard work item attribute"
            raise ValueError(msg)
        if field_type not in VALID_FIELD_TYPES:
            msg = f"Invalid field type '{field_type}'. Valid types: {', '.join(sorted(VALID_FIELD_TYPES))}"
            raise ValueError(msg)
        opts = [str(o) for o in options or []]
        if field_type == "enum" and not opts:
            msg = f"Enum field '{name}' needs at least one option"
            raise ValueError(msg)
        if wit.field_by_name(name) is not None:
            msg = f"Field '{name}' already exists on type '{wit.name}'"
            raise ValueError(msg)
        field_id = self._generate_unique_id("field_definitions", "fld")
        candidate = FieldDefinition(
            id=field_id, type_id=type_id, name=name, label=label or name, field_type=field_type, options=tuple(opts)
        )
        stored_default = coerce_field_value(candidate, default)
        if display_order is None:
            display_order = len(wit.fields)
        self.conn.execute(
            "INSERT INTO field_definitions (id, type_id, field_name, field_label, field_type, field_options, "
            "default_value, is_required_on_creation, display_order, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                field_id,
                type_id,
                name,
                label or name.replace("_", " ").capitalize(),
                field_type,
                json.dumps(opts),
                json.dumps(stored_default) if stored_default is not None else None,
                int(required_on_creation),
                display_order,
                _now_iso(),
            ),
        )
        self._bump_config_version()
        return field_id

    def add_field(
        self,
        type_id: str,
        name: str,
        field_type: FieldType,
        *,
        label: str | None = None,
        options: list[str] | None = None,
        default: Any = None,
        required_on_creation: bool = False,
        display_order: int | None = None,
    ) -> FieldDefinition:
        """Add a custom field. Allowed even when items of the type exist."""
        try:
            field_id = self._insert_field(
                type_id,
                name,
                field_type,
                label=label,
                options=options,
                default=default,
                required_on_creation=required_on_creation,
                display_order=display_order,
            )
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise
        wit = self.get_config_snapshot().get_type(type_id)
        return next(f for f in wit.fields if f.id == field_id)

    def remove_field(self, type_id: str, name: str) -> None:
        wit = self.get_config_snapshot().get_type(type_id)
        defn = wit.field_by_name(name)
        if defn is None:
            raise NotFoundError(f"Field on type '{wit.name}'", name)
        try:
            self._reject_if_type_in_use(type_id, "remove field")
            self.conn.execute("UPDATE field_definitions SET deleted_at = ? WHERE id = ?", (_now_iso(), defn.id))
            self._bump_config_version()
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise

    # -- Statuses ------------------------------------------------------------

    def _insert_status(
        self,
        type_id: str,
        name: str,
        category: str,
        *,
        is_initial: bool = False,
        is_final: bool = False,
        display_order: int | None = None,
    ) -> str:
        wit = self.get_config_snapshot().get_type(type_id)
        name = (name or "").strip()
        if not name:
            msg = "Status name cannot be empty"
            raise ValueError(msg)
        if category not in VALID_STATUS_CATEGORIES:
            msg = f"Invalid status category '{category}'. Valid categories: backlog, in_progress, completed, cancelled"
            raise ValueError(msg)
        if wit.status_by_name(name) is not None:
            msg = f"Status '{name}' already exists on type '{wit.name}'"
            raise ValueError(msg)
        if is_initial and wit.initial_status is not None:
            msg = f"Type '{wit.name}' already has an initial status ('{wit.initial_status.name}')"
            raise ValueError(msg)
        self._reject_if_type_in_use(type_id, "add status")
        status_id = self._generate_unique_id("status_definitions", "st")
        if display_order is None:
            display_order = len(wit.statuses)
        self.conn.execute(
            "INSERT INTO status_definitions (id, type_id, name, status_category, is_initial, is_final, "
            "display_order, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (status_id, type_id, name, category, int(is_initial), int(is_final), display_order, _now_iso()),
        )
        self._bump_config_version()
        return status_id

    def add_status(
        self,
        type_id: str,
        name: str,
        category: StatusCategory,
        *,
        is_initial: bool = False,
        is_final: bool = False,
        display_order: int | None = None,
    ) -> StatusDefinition:
        """Add a status. Rejected once items of the type exist."""
        try:
            status_id = self._insert_status(
                type_id, name, category, is_initial=is_initial, is_final=is_final, display_order=display_order
            )
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise
        return self.get_config_snapshot().get_status(type_id, status_id)

    # -- Bulk load -----------------------------------------------------------

    def load_configuration(self, doc: Mapping[str, Any]) -> dict[str, int]:
        """Load types, relationships and transitions from one document, atomically.

        Relationships and transitions refer to types and statuses by name.
        Returns counts of what was created.
        """
        if not isinstance(doc, Mapping):
            msg = "Configuration document must be a JSON object"
            raise ValueError(msg)
        counts = {"types": 0, "fields": 0, "statuses": 0, "relationships": 0, "transitions": 0}
        try:
            type_ids: dict[str, str] = {}
            for entry in doc.get("types") or []:
                type_id = self._insert_type(entry["name"], entry.get("organization_id"), entry.get("description", ""))
                type_ids[entry["name"]] = type_id
                counts["types"] += 1
                for f in entry.get("fields") or []:
                    self._insert_field(
                        type_id,
                        f["name"],
                        f.get("type", "text"),
                        label=f.get("label"),
                        options=f.get("options"),
                        default=f.get("default"),
                        required_on_creation=bool(f.get("required_on_creation", False)),
                        display_order=f.get("display_order"),
                    )
                    counts["fields"] += 1
                for s in entry.get("statuses") or []:
                    self._insert_status(
                        type_id,
                        s["name"],
                        s.get("category", "backlog"),
                        is_initial=bool(s.get("is_initial", False)),
                        is_final=bool(s.get("is_final", False)),
                        display_order=s.get("display_order"),
                    )
                    counts["statuses"] += 1

            def _type_id(ref: str) -> str:
                return type_ids.get(ref) or self.get_type(ref).id

            for r in doc.get("relationships") or []:
                self._insert_relationship(
                    _type_id(r["parent"]),
                    _type_id(r["child"]),
                    r.get("name"),
                    is_required=bool(r.get("is_required", False)),
                    min_count=r.get("min_count"),
                    max_count=r.get("max_count"),
                    auto_create=bool(r.get("auto_create", False)),
                    auto_create_config=r.get("auto_create_config"),
                    display_order=r.get("display_order"),
                )
                counts["relationships"] += 1
            for t in doc.get("transitions") or []:
                type_id = _type_id(t["type"])
                snapshot = self.get_config_snapshot()
                self._insert_transition(
                    type_id,
                    snapshot.get_status(type_id, t["from"]).id,
                    snapshot.get_status(type_id, t["to"]).id,
                    is_allowed=bool(t.get("is_allowed", True)),
                    validation_config=t.get("validation_config"),
                    action_config=t.get("action_config"),
                )
                counts["transitions"] += 1
            self.conn.commit()
        except KeyError as e:
            self._rollback_config()
            if isinstance(e, NotFoundError):
                raise
            msg = f"Configuration entry is missing required key {e}"
            raise ValueError(msg) from e
        except Exception:
            self._rollback_config()
            raise
        logger.info("Loaded configuration: %s", counts)
        return counts

    if TYPE_CHECKING:

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
        ) -> str: ...

        def _insert_transition(
            self,
            type_id: str,
            from_status_id: str,
            to_status_id: str,
            *,
            is_allowed: bool = True,
            validation_config: ValidationConfig | Mapping[str, Any] | None = None,
            action_config: ActionConfig | Mapping[str, Any] | None = None,
        ) -> str: ...
