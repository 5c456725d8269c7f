"""Collaborator interfaces the core calls out to, with in-process defaults.

The core never talks to an email gateway, a user store or a permission
system directly. ``TrellisDB`` accepts implementations of the protocols
below; the defaults allow every action, resolve users from a static map,
and log notifications instead of delivering them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserInfo:
    user_id: str
    display_name: str = ""
    email: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"user_id": self.user_id, "display_name": self.display_name or self.user_id, "email": self.email}


@runtime_checkable
class NotificationSink(Protocol):
    def send(self, recipients: list[str], template_name: str, context: dict[str, Any]) -> None:
        """Deliver one notification. Raise (ideally ``NotificationDeliveryError``) to signal failure."""
        ...


@runtime_checkable
class UserDirectory(Protocol):
    def resolve(self, user_id: str) -> UserInfo | None: ...


@runtime_checkable
class Authorizer(Protocol):
    def can_act_on(self, user: str, action: str, scope: str) -> bool: ...


class AllowAllAuthorizer:
    def can_act_on(self, user: str, action: str, scope: str) -> bool:
        return True


class StaticUserDirectory:
    """Resolve users from a fixed mapping; unknown ids resolve to a bare record."""

    def __init__(self, users: dict[str, UserInfo] | None = None) -> None:
        self._users = dict(users or {})

    def resolve(self, user_id: str) -> UserInfo | None:
        if not user_id:
            return None
        return self._users.get(user_id) or UserInfo(user_id=user_id)


class LoggingNotificationSink:
    """Log each notification and keep it in ``sent`` for inspection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[tuple[list[str], str, dict[str, Any]]] = []

    def send(self, recipients: list[str], template_name: str, context: dict[str, Any]) -> None:
        with self._lock:
            self.sent.append((list(recipients), template_name, context))
        logger.info(
            "Notification '%s' to %s: %s",
            template_name,
            ", ".join(recipients),
            context.get("subject", ""),
        )
