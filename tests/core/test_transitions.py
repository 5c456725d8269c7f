"""Tests for status transitions: validation, timestamps, actions and notifications."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from tests._db_factory import Workflow, make_db, seed_workflow
from trellis.actions import NotificationDispatcher, NotificationJob
from trellis.core import TrellisDB
from trellis.errors import (
    DuplicateTransitionError,
    InvalidTemplateSyntaxError,
    NotFoundError,
    NotificationDeliveryError,
    StatusConflictError,
    TransitionNotAllowedError,
    ValidationFailedError,
)
from trellis.models import WorkItem
from trellis.notifications import LoggingNotificationSink


class ExplodingSink:
    def send(self, recipients: list[str], template_name: str, context: dict[str, Any]) -> None:
        msg = "smtp down"
        raise RuntimeError(msg)


def _task(db: TrellisDB, wf: Workflow, **attrs: Any) -> WorkItem:
    return db.create_work_item(wf.types["Task"], "acme", "Fix login", actor="carol", **attrs).item


def _define(db: TrellisDB, wf: Workflow, src: str, dst: str, **kwargs: Any) -> None:
    db.define_transition(wf.types["Task"], wf.status("Task", src), wf.status("Task", dst), **kwargs)


class TestDefineTransition:
    def test_duplicate_rejected(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(db, wf, "Open", "Closed")
        with pytest.raises(DuplicateTransitionError):
            _define(db, wf, "Open", "Closed", is_allowed=False)

    def test_same_status_rejected(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        with pytest.raises(ValueError, match="two different statuses"):
            _define(db, wf, "Open", "Open")

    def test_foreign_status_rejected(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        with pytest.raises(NotFoundError):
            db.define_transition(wf.types["Task"], wf.status("Task", "Open"), wf.status("Project", "Done"))

    def test_bad_operator_rejected(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        with pytest.raises(ValueError, match="Unknown rule operator"):
            _define(
                db,
                wf,
                "Open",
                "Closed",
                validation_config={"custom_rules": [{"field": "estimate", "operator": "between", "value": "1"}]},
            )

    def test_bad_action_template_rejected(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        with pytest.raises(InvalidTemplateSyntaxError):
            _define(
                db,
                wf,
                "Open",
                "Closed",
                action_config={"field_updates": [{"field": "resolution_notes", "value": "{parent.subject}"}]},
            )

    def test_unknown_field_update_target_rejected(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        with pytest.raises(ValueError, match="not a writable field"):
            _define(db, wf, "Open", "Closed", action_config={"field_updates": [{"field": "mood", "value": "x"}]})

    def test_update_and_delete(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(db, wf, "Open", "Closed", is_allowed=False)
        t = db.get_transition(wf.types["Task"], wf.status("Task", "Open"), wf.status("Task", "Closed"))
        assert t is not None
        updated = db.update_transition(t.id, is_allowed=True)
        assert updated.is_allowed is True
        db.delete_transition(t.id)
        assert db.list_transitions(wf.types["Task"]) == []


class TestValidation:
    def test_unconfigured_transition_is_allowed(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        result = db.update_status(task.id, "Closed")
        assert result.item.status_id == wf.status("Task", "Closed")
        assert result.actions == []

    def test_required_field_missing(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(db, wf, "Open", "Closed", validation_config={"required_fields": ["resolution_notes"]})
        task = _task(db, wf)

        with pytest.raises(ValidationFailedError) as exc_info:
            db.update_status(task.id, "Closed")

        assert exc_info.value.errors == ["resolution_notes is required"]
        assert db.get_work_item(task.id).status_id == wf.status("Task", "Open")

    def test_required_field_present(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(db, wf, "Open", "Closed", validation_config={"required_fields": ["resolution_notes"]})
        task = _task(db, wf, custom_fields={"resolution_notes": "Patched"})
        db.update_status(task.id, "Closed")
        assert db.get_work_item(task.id).status_id == wf.status("Task", "Closed")

    def test_all_errors_reported_together(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(
            db,
            wf,
            "Open",
            "In Progress",
            validation_config={
                "required_fields": ["assigned_to", "severity"],
                "custom_rules": [
                    {"field": "estimate", "operator": "greater_than", "value": "0"},
                    {"field": "priority", "operator": "equals", "value": "high", "message": "only high priority"},
                ],
            },
        )
        task = _task(db, wf)
        with pytest.raises(ValidationFailedError) as exc_info:
            db.update_status(task.id, "In Progress")
        # Every missing field, plus only the first failing rule.
        assert exc_info.value.errors == [
            "assigned_to is required",
            "severity is required",
            "estimate must be greater than 0",
        ]

    def test_rule_passes(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(
            db,
            wf,
            "Open",
            "In Progress",
            validation_config={"custom_rules": [{"field": "estimate", "operator": "greater_than", "value": "2"}]},
        )
        task = _task(db, wf, custom_fields={"estimate": "5"})
        db.update_status(task.id, "In Progress")

    def test_blocked_transition(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(db, wf, "Open", "Cancelled", is_allowed=False)
        task = _task(db, wf)
        with pytest.raises(TransitionNotAllowedError):
            db.update_status(task.id, "Cancelled")
        assert db.get_work_item(task.id).status_id == wf.status("Task", "Open")

    def test_same_status_is_noop(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        result = db.update_status(task.id, "Open")
        assert result.item.status_id == task.status_id
        assert db.get_item_events(task.id, event_type="status_changed") == []

    def test_unknown_status(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        with pytest.raises(NotFoundError):
            db.update_status(task.id, "Done")  # a Project status, not a Task one

    def test_status_by_id(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        result = db.update_status(task.id, wf.status("Task", "In Progress"))
        assert result.item.status_id == wf.status("Task", "In Progress")

    def test_stale_status_write_conflicts(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        stale = db.get_work_item(task.id)
        db.update_status(task.id, "In Progress", actor="dave")

        snapshot = db.get_config_snapshot()
        open_status = snapshot.get_status(wf.types["Task"], "Open")
        closed = snapshot.get_status(wf.types["Task"], "Closed")
        with pytest.raises(StatusConflictError, match="no longer in status 'Open'"):
            db._write_status(stale, open_status, closed, actor="erin")
        db.conn.rollback()

        assert db.get_work_item(task.id).status_id == wf.status("Task", "In Progress")
        assert len(db.get_item_events(task.id, event_type="status_changed")) == 1

    def test_update_status_releases_write_lock(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        db.update_status(task.id, "Open")
        assert not db.conn.in_transaction
        with pytest.raises(NotFoundError):
            db.update_status(task.id, "Done")
        assert not db.conn.in_transaction
        db.update_status(task.id, "Closed")
        assert not db.conn.in_transaction


class TestTimestamps:
    def test_started_and_completed(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        assert task.started_at is None
        assert task.completed_at is None

        started = db.update_status(task.id, "In Progress").item
        assert started.started_at is not None
        assert started.completed_at is None

        closed = db.update_status(task.id, "Closed").item
        assert closed.completed_at is not None
        assert closed.started_at == started.started_at

    def test_leaving_final_clears_completed(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        db.update_status(task.id, "Closed")
        reopened = db.update_status(task.id, "Open").item
        assert reopened.completed_at is None

    def test_status_event_uses_names(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        task = _task(db, wf)
        db.update_status(task.id, "In Progress", actor="dave")
        ev = db.get_item_events(task.id, event_type="status_changed")[0]
        assert (ev["old_value"], ev["new_value"], ev["actor"]) == ("Open", "In Progress", "dave")


class TestActions:
    def test_field_update_with_tokens(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(
            db,
            wf,
            "Open",
            "Closed",
            action_config={
                "field_updates": [
                    {
                        "field": "resolution_notes",
                        "value": "Closed {today} for {creator}",
                        "condition": "field_is_empty:resolution_notes",
                    },
                    {"field": "priority", "value": "low", "condition": "status_is_terminal"},
                    {"field": "description", "value": "never", "condition": "status_name_equals:Open"},
                ]
            },
        )
        task = _task(db, wf)
        result = db.update_status(task.id, "Closed")

        today = datetime.now(UTC).strftime("%Y-%m-%d")
        assert [(a.kind, a.target, a.success) for a in result.actions] == [
            ("field_update", "resolution_notes", True),
            ("field_update", "priority", True),
        ]
        item = db.get_work_item(task.id)
        assert item.custom_values["resolution_notes"] == f"Closed {today} for carol"
        assert item.priority == "low"
        assert item.description == ""

    def test_first_matching_assignment_wins(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(
            db,
            wf,
            "Open",
            "In Progress",
            action_config={
                "assignments": [
                    {"user_id": "nobody", "condition": "status_category_equals:completed"},
                    {"user_id": "{creator}"},
                    {"user_id": "zed"},
                ]
            },
        )
        task = _task(db, wf)
        result = db.update_status(task.id, "In Progress")
        assert [(a.kind, a.target) for a in result.actions] == [("assignment", "carol")]
        item = db.get_work_item(task.id)
        assert item.assigned_to == "carol"
        assert db.get_item_events(task.id, event_type="assigned")[0]["new_value"] == "carol"

    def test_failed_field_update_keeps_status(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(
            db,
            wf,
            "Open",
            "Closed",
            action_config={
                "field_updates": [
                    {"field": "estimate", "value": "{work_item.subject}"},
                    {"field": "resolution_notes", "value": "done"},
                ]
            },
        )
        task = _task(db, wf)
        result = db.update_status(task.id, "Closed")

        assert [(a.target, a.success) for a in result.actions] == [("estimate", False), ("resolution_notes", True)]
        item = db.get_work_item(task.id)
        assert item.status_id == wf.status("Task", "Closed")
        assert item.custom_values == {"resolution_notes": "done"}
        assert len(db.get_item_events(task.id, event_type="action_failed")) == 1

    def test_failed_assignment_keeps_status(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(db, wf, "Open", "In Progress", action_config={"assignments": [{"user_id": "{work_item.subject}"}]})
        task = _task(db, wf, assigned_to="erin")
        db.update_work_item(task.id, subject="x" * 200)

        result = db.update_status(task.id, "In Progress")

        (action,) = result.actions
        assert (action.kind, action.success) == ("assignment", False)
        assert "at most 128 characters" in action.detail
        item = db.get_work_item(task.id)
        assert item.status_id == wf.status("Task", "In Progress")
        assert item.assigned_to == "erin"
        (failed,) = db.get_item_events(task.id, event_type="action_failed")
        assert failed["new_value"] == "assigned_to"

    def test_failed_assignment_keeps_field_updates(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(
            db,
            wf,
            "Open",
            "Closed",
            action_config={
                "field_updates": [{"field": "description", "value": "closed on {today}"}],
                "assignments": [{"user_id": "{work_item.custom.resolution_notes}"}],
            },
        )
        task = _task(db, wf, custom_fields={"resolution_notes": "n" * 200})

        result = db.update_status(task.id, "Closed")

        today = datetime.now(UTC).strftime("%Y-%m-%d")
        assert [(a.kind, a.success) for a in result.actions] == [("field_update", True), ("assignment", False)]
        item = db.get_work_item(task.id)
        assert item.status_id == wf.status("Task", "Closed")
        assert item.description == f"closed on {today}"
        assert item.assigned_to is None
        assert len(db.get_item_events(task.id, event_type="action_failed")) == 1
        assert db.get_item_events(task.id, event_type="assigned") == []

    def test_unknown_condition_is_false(self, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        db, wf = workflow_db
        _define(
            db,
            wf,
            "Open",
            "Closed",
            action_config={"field_updates": [{"field": "priority", "value": "low", "condition": "phase_of_moon"}]},
        )
        task = _task(db, wf)
        result = db.update_status(task.id, "Closed")
        assert result.actions == []
        assert db.get_work_item(task.id).priority == "medium"


class TestNotifications:
    _CONFIG: dict[str, Any] = {
        "notifications": [
            {
                "type": "email",
                "recipients": ["assigned_to", "watchers", "ops-lead"],
                "template": "task_closed",
                "subject": "{work_item.subject} is done",
            }
        ]
    }

    def test_notification_sent(self, workflow_db: tuple[TrellisDB, Workflow], sink: LoggingNotificationSink) -> None:
        db, wf = workflow_db
        _define(db, wf, "Open", "Closed", action_config=self._CONFIG)
        task = _task(db, wf, assigned_to="erin")
        db.add_watcher(task.id, "frank")

        result = db.update_status(task.id, "Closed", actor="carol")

        assert [(a.kind, a.success) for a in result.actions] == [("notification", True)]
        assert len(sink.sent) == 1
        recipients, template, context = sink.sent[0]
        assert template == "task_closed"
        # assignee first, then watchers (creator, assignee, frank) de-duplicated, then the literal id
        assert recipients == ["erin", "carol", "frank", "ops-lead"]
        assert context["subject"] == "Fix login is done"
        assert context["transition"] == {"from_status": "Open", "to_status": "Closed", "actor": "carol"}
        assert context["work_item"]["id"] == task.id

    def test_muted_watcher_skipped(self, workflow_db: tuple[TrellisDB, Workflow], sink: LoggingNotificationSink) -> None:
        db, wf = workflow_db
        _define(db, wf, "Open", "Closed", action_config=self._CONFIG)
        task = _task(db, wf)
        db.update_watcher_preferences(task.id, "carol", status_changes=False)
        db.update_status(task.id, "Closed")
        recipients, _, _ = sink.sent[0]
        assert recipients == ["ops-lead"]

    def test_failing_sink_does_not_undo_status(self, tmp_path: Path) -> None:
        d = make_db(tmp_path, notification_sink=ExplodingSink())
        try:
            wf = seed_workflow(d)
            _define(d, wf, "Open", "Closed", action_config=self._CONFIG)
            task = _task(d, wf)

            result = d.update_status(task.id, "Closed")

            assert len(result.actions) == 1
            assert result.actions[0].success is False
            assert result.actions[0].detail == "smtp down"
            assert d.get_work_item(task.id).status_id == wf.status("Task", "Closed")
            failed = d.get_item_events(task.id, event_type="notification_failed")
            assert failed[0]["comment"] == "smtp down"
        finally:
            d.close()


class RefusingSink:
    def send(self, recipients: list[str], template_name: str, context: dict[str, Any]) -> None:
        raise NotificationDeliveryError(template_name, "mailbox full")


class TestNotificationDispatcher:
    def test_sink_error_wrapped(self) -> None:
        dispatcher = NotificationDispatcher(ExplodingSink(), workers=1)
        try:
            future = dispatcher._get_executor().submit(dispatcher._deliver, NotificationJob("task_closed", ["erin"]))
            exc = future.exception(timeout=5)
        finally:
            dispatcher.shutdown()
        assert isinstance(exc, NotificationDeliveryError)
        assert exc.template_name == "task_closed"
        assert str(exc) == "smtp down"
        assert isinstance(exc.__cause__, RuntimeError)

    def test_delivery_error_reported(self) -> None:
        dispatcher = NotificationDispatcher(RefusingSink(), workers=1)
        try:
            results = dispatcher.dispatch(
                [NotificationJob("task_closed", ["erin", "frank"]), NotificationJob("digest", [])], item_id="acme-1"
            )
        finally:
            dispatcher.shutdown()
        assert [(r.target, r.success, r.detail) for r in results] == [
            ("digest", True, "skipped: no recipients"),
            ("erin,frank", False, "mailbox full"),
        ]
