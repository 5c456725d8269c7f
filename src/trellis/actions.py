"""Transition side effects: planning field updates, assignments and notifications.

Planning functions are pure and run against an item snapshot. Database
writes stay in ``TransitionsMixin``; this module only decides *what* to
write. Notification delivery runs on a bounded thread pool so one slow sink
call does not hold up the others, and every failure is turned into a failed
``ActionResult`` instead of an exception.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from trellis.errors import NotificationDeliveryError
from trellis.interpolation import interpolate, render_value
from trellis.models import ActionResult
from trellis.rules import evaluate_condition

if TYPE_CHECKING:
    from trellis.models import (
        ActionConfig,
        AssignmentAction,
        FieldUpdateAction,
        NotificationAction,
        StatusDefinition,
    )
    from trellis.notifications import NotificationSink, UserDirectory

logger = logging.getLogger(__name__)

RECIPIENT_ASSIGNEE = "assigned_to"
RECIPIENT_CREATOR = "creator"
RECIPIENT_WATCHERS = "watchers"


@dataclass
class NotificationJob:
    """One resolved notification, ready to hand to the sink."""

    template_name: str
    recipients: list[str]
    context: dict[str, Any] = field(default_factory=dict)


def plan_field_updates(
    config: ActionConfig,
    context: Mapping[str, Any],
    target_status: StatusDefinition | None,
) -> list[tuple[FieldUpdateAction, str]]:
    """Return (action, interpolated value) for every update whose guard holds."""
    snapshot = context.get("work_item") or {}
    planned = []
    for update in config.field_updates:
        if evaluate_condition(update.condition, snapshot, target_status):
            planned.append((update, interpolate(update.value, context)))
    return planned


def select_assignment(
    config: ActionConfig,
    context: Mapping[str, Any],
    target_status: StatusDefinition | None,
) -> tuple[AssignmentAction, str] | None:
    """Only the first assignment whose guard holds applies."""
    snapshot = context.get("work_item") or {}
    for assignment in config.assignments:
        if evaluate_condition(assignment.condition, snapshot, target_status):
            user = interpolate(assignment.user_id, context).strip()
            if user:
                return assignment, user
    return None


def resolve_recipients(
    notification: NotificationAction,
    *,
    assigned_to: str | None,
    creator: str | None,
    watchers: Iterable[str],
) -> list[str]:
    """Expand recipient keywords into user ids, de-duplicated in order."""
    resolved: list[str] = []
    for recipient in notification.recipients:
        if recipient == RECIPIENT_ASSIGNEE:
            candidates: Iterable[str | None] = [assigned_to]
        elif recipient == RECIPIENT_CREATOR:
            candidates = [creator]
        elif recipient == RECIPIENT_WATCHERS:
            candidates = watchers
        else:
            candidates = [recipient]
        for user in candidates:
            if user and user not in resolved:
                resolved.append(user)
    return resolved


def build_notification_context(
    notification: NotificationAction,
    context: Mapping[str, Any],
    recipients: list[str],
    directory: UserDirectory,
    *,
    transition: Mapping[str, str],
    work_item: Mapping[str, Any],
) -> dict[str, Any]:
    users = []
    for user_id in recipients:
        info = directory.resolve(user_id)
        if info is not None:
            users.append(info.to_dict())
    subject = interpolate(notification.subject, context) if notification.subject else ""
    return {
        "subject": subject,
        "work_item": dict(work_item),
        "transition": dict(transition),
        "recipients": users,
        "sent_at": render_value(context.get("now")),
    }


class NotificationDispatcher:
    """Fire-and-forget delivery of notification jobs through a bounded pool."""

    def __init__(self, sink: NotificationSink, *, workers: int = 4, timeout: float = 10.0) -> None:
        self.sink = sink
        self.workers = max(1, int(workers))
        self.timeout = timeout
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="trellis-notify")
            return self._executor

    def _deliver(self, job: NotificationJob) -> None:
        try:
            self.sink.send(list(job.recipients), job.template_name, job.context)
        except NotificationDeliveryError:
            raise
        except Exception as exc:
            raise NotificationDeliveryError(job.template_name, str(exc) or type(exc).__name__) from exc

    def dispatch(self, jobs: list[NotificationJob], *, item_id: str = "") -> list[ActionResult]:
        """Send every job and report one ``ActionResult`` per job."""
        results: list[ActionResult] = []
        pending: list[tuple[NotificationJob, Future[None]]] = []
        for job in jobs:
            if not job.recipients:
                results.append(
                    ActionResult(kind="notification", target=job.template_name, success=True, detail="skipped: no recipients")
                )
                continue
            pending.append((job, self._get_executor().submit(self._deliver, job)))
        if not pending:
            return results

        start = time.monotonic()
        wait([f for _, f in pending], timeout=self.timeout)
        elapsed_ms = round((time.monotonic() - start) * 1000, 1)
        for job, future in pending:
            target = ",".join(job.recipients)
            if not future.done():
                future.cancel()
                logger.error(
                    "Notification '%s' for %s to %s timed out after %ss",
                    job.template_name,
                    item_id,
                    target,
                    self.timeout,
                    extra={"op": "notify", "item_id": item_id, "duration_ms": elapsed_ms, "error": "timed out"},
                )
                results.append(ActionResult(kind="notification", target=target, success=False, detail="timed out"))
                continue
            exc = future.exception()
            if exc is None:
                results.append(ActionResult(kind="notification", target=target, success=True, detail=job.template_name))
                continue
            if not isinstance(exc, NotificationDeliveryError):
                raise exc
            logger.error(
                "Notification '%s' for %s to %s failed: %s",
                exc.template_name,
                item_id,
                target,
                exc,
                extra={"op": "notify", "item_id": item_id, "error": f"{exc.code}: {exc}"},
            )
            results.append(ActionResult(kind="notification", target=target, success=False, detail=str(exc)))
        return results

    def shutdown(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None