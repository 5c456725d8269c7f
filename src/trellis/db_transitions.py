"""TransitionsMixin: status transition rules and their side effects.

Status changes are two-phase. ``validate_transition`` decides whether a
change may happen: no configured row means it is allowed, ``is_allowed``
false blocks it, and otherwise every missing required field plus the first
failing custom rule is reported. ``execute_transition`` then applies the
configured actions (field updates, the first matching assignment, and
notifications). Action failures are logged, written to the event log and
returned as failed ``ActionResult`` records; they never undo the status
change.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from trellis.actions import (
    NotificationDispatcher,
    NotificationJob,
    build_notification_context,
    plan_field_updates,
    resolve_recipients,
    select_assignment,
)
from trellis.catalog import parse_action_config, parse_validation_config
from trellis.db_base import DBMixinProtocol, _now_iso
from trellis.errors import DuplicateTransitionError, NotFoundError, StatusConflictError
from trellis.interpolation import action_context
from trellis.models import (
    WRITABLE_STANDARD_FIELDS,
    ActionConfig,
    ActionResult,
    StatusDefinition,
    StatusTransition,
    TransitionCheck,
    ValidationConfig,
    WorkItem,
    WorkItemType,
)
from trellis.rules import first_failing_rule, missing_required_fields, rule_message
from trellis.validation import normalize_date, validate_priority, validate_subject

if TYPE_CHECKING:
    from trellis.models import FieldDefinition, NotifyCategory, Watcher

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _check_action_targets(config: ActionConfig | None, wit: WorkItemType) -> None:
    if config is None:
        return
    for update in config.field_updates:
        if update.field in WRITABLE_STANDARD_FIELDS or wit.field_by_name(update.field) is not None:
            continue
        msg = f"Field update target '{update.field}' is not a writable field of type '{wit.name}'"
        raise ValueError(msg)


class TransitionsMixin(DBMixinProtocol):
    """Transition definitions, validation and execution for TrellisDB."""

    _dispatcher: NotificationDispatcher

    if TYPE_CHECKING:

        def _rollback_config(self) -> None: ...

        def _bump_config_version(self) -> None: ...

        def _coerce_custom_values(
            self, wit: WorkItemType, values: Mapping[str, Any], *, apply_defaults: bool = False
        ) -> dict[str, tuple[FieldDefinition, Any]]: ...

        def _write_field_values(self, item_id: str, values: Mapping[str, tuple[FieldDefinition, Any]]) -> None: ...

        def _write_assignee(self, item: WorkItem, assignee: str | None, *, actor: str) -> None: ...

        def list_for_notification(self, item_id: str, category: NotifyCategory) -> list[Watcher]: ...

    # -- Definition ----------------------------------------------------------

    def _type_status(self, wit: WorkItemType, status_id: str) -> StatusDefinition:
        status = wit.status_by_id(status_id)
        if status is None:
            raise NotFoundError(f"Status for type '{wit.name}'", status_id)
        return status

    def _insert_transition(
        self,
        type_id: str,
        from_status_id: str,
        to_status_id: str,
        *,
        is_allowed: bool = True,
        validation_config: ValidationConfig | Mapping[str, Any] | None = None,
        action_config: ActionConfig | Mapping[str, Any] | None = None,
    ) -> str:
        snapshot = self.get_config_snapshot()
        wit = snapshot.get_type(type_id)
        self._type_status(wit, from_status_id)
        self._type_status(wit, to_status_id)
        if from_status_id == to_status_id:
            msg = "A transition needs two different statuses"
            raise ValueError(msg)
        if snapshot.get_transition(type_id, from_status_id, to_status_id) is not None:
            raise DuplicateTransitionError(type_id, from_status_id, to_status_id)
        validation = parse_validation_config(validation_config)
        actions = parse_action_config(action_config)
        _check_action_targets(actions, wit)
        transition_id = self._generate_unique_id("status_transitions", "tr")
        now = _now_iso()
        self.conn.execute(
            "INSERT INTO status_transitions (id, work_item_type_id, from_status_id, to_status_id, is_allowed, "
            "validation_config, action_config, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                transition_id,
                type_id,
                from_status_id,
                to_status_id,
                int(is_allowed),
                json.dumps(validation.to_dict()) if validation else None,
                json.dumps(actions.to_dict()) if actions else None,
                now,
                now,
            ),
        )
        self._bump_config_version()
        return transition_id

    def define_transition(
        self,
        type_id: str,
        from_status_id: str,
        to_status_id: str,
        *,
        is_allowed: bool = True,
        validation_config: ValidationConfig | Mapping[str, Any] | None = None,
        action_config: ActionConfig | Mapping[str, Any] | None = None,
    ) -> StatusTransition:
        """Configure the move from one status to another for a type.

        Templates, operators and field-update targets are validated here.
        """
        try:
            self._insert_transition(
                type_id,
                from_status_id,
                to_status_id,
                is_allowed=is_allowed,
                validation_config=validation_config,
                action_config=action_config,
            )
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise
        transition = self.get_transition(type_id, from_status_id, to_status_id)
        assert transition is not None
        return transition

    def get_transition(self, type_id: str, from_status_id: str, to_status_id: str) -> StatusTransition | None:
        return self.get_config_snapshot().get_transition(type_id, from_status_id, to_status_id)

    def get_transition_by_id(self, transition_id: str) -> StatusTransition:
        for t in self.get_config_snapshot().transitions.values():
            if t.id == transition_id:
                return t
        raise NotFoundError("Transition", transition_id)

    def list_transitions(self, type_id: str | None = None) -> list[StatusTransition]:
        snapshot = self.get_config_snapshot()
        transitions = list(snapshot.transitions.values())
        if type_id is not None:
            snapshot.get_type(type_id)
            transitions = [t for t in transitions if t.work_item_type_id == type_id]
        return sorted(transitions, key=lambda t: (t.work_item_type_id, t.from_status_id, t.to_status_id))

    def update_transition(
        self,
        transition_id: str,
        *,
        is_allowed: bool | None = None,
        validation_config: Any = _UNSET,
        action_config: Any = _UNSET,
    ) -> StatusTransition:
        current = self.get_transition_by_id(transition_id)
        wit = self.get_config_snapshot().get_type(current.work_item_type_id)
        validation = (
            current.validation_config if validation_config is _UNSET else parse_validation_config(validation_config)
        )
        actions = current.action_config if action_config is _UNSET else parse_action_config(action_config)
        _check_action_targets(actions, wit)
        try:
            self.conn.execute(
                "UPDATE status_transitions SET is_allowed = ?, validation_config = ?, action_config = ?, "
                "updated_at = ? WHERE id = ?",
                (
                    int(current.is_allowed if is_allowed is None else is_allowed),
                    json.dumps(validation.to_dict()) if validation else None,
                    json.dumps(actions.to_dict()) if actions else None,
                    _now_iso(),
                    transition_id,
                ),
            )
            self._bump_config_version()
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise
        return self.get_transition_by_id(transition_id)

    def delete_transition(self, transition_id: str) -> None:
        """Remove a transition row; the status pair becomes permissive again."""
        self.get_transition_by_id(transition_id)
        try:
            self.conn.execute("DELETE FROM status_transitions WHERE id = ?", (transition_id,))
            self._bump_config_version()
            self.conn.commit()
        except Exception:
            self._rollback_config()
            raise

    # -- Validation ----------------------------------------------------------

    def validate_transition(self, item: WorkItem, from_status_id: str, to_status_id: str) -> TransitionCheck:
        """Check a status change without applying it."""
        transition = self.get_config_snapshot().get_transition(item.type_id, from_status_id, to_status_id)
        if transition is None:
            return TransitionCheck(ok=True)
        if not transition.is_allowed:
            return TransitionCheck(
                ok=False, errors=("Transition is not allowed",), transition=transition, blocked=True
            )
        config = transition.validation_config
        if config is None:
            return TransitionCheck(ok=True, transition=transition)
        snapshot = self._snapshot_item(item)
        errors = missing_required_fields(config.required_fields, snapshot)
        failing = first_failing_rule(config.custom_rules, snapshot)
        if failing is not None:
            errors.append(rule_message(failing))
        return TransitionCheck(ok=not errors, errors=tuple(errors), transition=transition)

    # -- Execution -----------------------------------------------------------

    def _write_status(
        self,
        item: WorkItem,
        from_status: StatusDefinition,
        to_status: StatusDefinition,
        *,
        actor: str,
    ) -> None:
        """Set the status and keep started_at/completed_at in step. Does not commit."""
        now = _now_iso()
        started_at = item.started_at
        if started_at is None and not to_status.is_initial and not to_status.is_final:
            started_at = now
        completed_at = item.completed_at
        if to_status.is_final:
            completed_at = now
        elif from_status.is_final:
            completed_at = None
        cursor = self.conn.execute(
            "UPDATE work_items SET status_id = ?, started_at = ?, completed_at = ?, updated_at = ? "
            "WHERE id = ? AND status_id = ?",
            (to_status.id, started_at, completed_at, now, item.id, from_status.id),
        )
        if cursor.rowcount == 0:
            raise StatusConflictError(item.id, from_status.name)
        self._record_event(item.id, "status_changed", actor=actor, old_value=from_status.name, new_value=to_status.name)

    def _apply_field_update(self, item: WorkItem, wit: WorkItemType, field: str, value: str, *, actor: str) -> ActionResult:
        try:
            if field == "assigned_to":
                self._write_assignee(item, value.strip() or None, actor=actor)
            elif field in WRITABLE_STANDARD_FIELDS:
                stored: str | None
                if field == "subject":
                    stored = validate_subject(value)
                elif field == "priority":
                    stored = validate_priority(value)
                elif field == "due_date":
                    stored = normalize_date(value, "due_date")
                elif field == "description":
                    stored = value
                else:
                    stored = value or None
                # field is one of WRITABLE_STANDARD_FIELDS, never user input
                self.conn.execute(
                    f"UPDATE work_items SET {field} = ?, updated_at = ? WHERE id = ?",
                    (stored, _now_iso(), item.id),
                )
            else:
                self._write_field_values(item.id, self._coerce_custom_values(wit, {field: value}))
        except ValueError as exc:
            logger.warning(
                "Field update of '%s' on %s failed: %s",
                field,
                item.id,
                exc,
                extra={"op": "field_update", "item_id": item.id, "error": str(exc)},
            )
            self._record_event(item.id, "action_failed", actor=actor, new_value=field, comment=str(exc))
            return ActionResult(kind="field_update", target=field, success=False, detail=str(exc))
        self._record_event(item.id, "field_updated", actor=actor, new_value=value, comment=field)
        return ActionResult(kind="field_update", target=field, success=True, detail=value)

    def _apply_assignment(self, item_id: str, user_id: str, *, actor: str) -> ActionResult:
        try:
            self._write_assignee(self.get_work_item(item_id), user_id, actor=actor)
        except ValueError as exc:
            logger.warning(
                "Assignment of %s to %r failed: %s",
                item_id,
                user_id,
                exc,
                extra={"op": "assignment", "item_id": item_id, "error": str(exc)},
            )
            self._record_event(item_id, "action_failed", actor=actor, new_value="assigned_to", comment=str(exc))
            return ActionResult(kind="assignment", target=user_id, success=False, detail=str(exc))
        return ActionResult(kind="assignment", target=user_id, success=True)

    def execute_transition(
        self,
        item: WorkItem,
        from_status_id: str,
        to_status_id: str,
        transition: StatusTransition | None,
        *,
        actor: str = "",
    ) -> list[ActionResult]:
        """Run the transition's configured actions against *item*.

        Field updates and the assignment are committed together. A write that
        fails validation becomes a failed ``ActionResult`` plus an
        ``action_failed`` event; notifications are sent afterwards and
        reported the same way.
        """
        config = transition.action_config if transition is not None else None
        if config is None:
            return []
        wit = self.get_config_snapshot().get_type(item.type_id)
        target = self._type_status(wit, to_status_id)
        item = self.get_work_item(item.id)
        context = action_context(self._snapshot_item(item))

        results: list[ActionResult] = []
        try:
            for update, value in plan_field_updates(config, context, target):
                results.append(self._apply_field_update(item, wit, update.field, value, actor=actor))
            chosen = select_assignment(config, context, target)
            if chosen is not None:
                _, user_id = chosen
                results.append(self._apply_assignment(item.id, user_id, actor=actor))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        if config.notifications:
            results.extend(self._send_transition_notifications(item.id, config, from_status_id, to_status_id, wit, actor))
        return results

    def _send_transition_notifications(
        self,
        item_id: str,
        config: ActionConfig,
        from_status_id: str,
        to_status_id: str,
        wit: WorkItemType,
        actor: str,
    ) -> list[ActionResult]:
        item = self.get_work_item(item_id)
        snapshot = self._snapshot_item(item)
        context = action_context(snapshot)
        watchers = [w.user_id for w in self.list_for_notification(item.id, "status_changes")]
        transition_info = {
            "from_status": self._type_status(wit, from_status_id).name,
            "to_status": self._type_status(wit, to_status_id).name,
            "actor": actor,
        }
        jobs = []
        for notification in config.notifications:
            recipients = resolve_recipients(
                notification, assigned_to=item.assigned_to, creator=item.created_by, watchers=watchers
            )
            jobs.append(
                NotificationJob(
                    template_name=notification.template,
                    recipients=recipients,
                    context=build_notification_context(
                        notification,
                        context,
                        recipients,
                        self.user_directory,
                        transition=transition_info,
                        work_item=item.to_dict(),
                    ),
                )
            )
        results = self._dispatcher.dispatch(jobs, item_id=item.id)
        failed = [r for r in results if not r.success]
        if failed:
            try:
                for r in failed:
                    self._record_event(item.id, "notification_failed", actor=actor, new_value=r.target, comment=r.detail)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        return results
