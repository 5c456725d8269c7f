"""Shared utilities, types, and Protocol for DB mixins."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from trellis.catalog import ConfigSnapshot
    from trellis.models import WorkItem
    from trellis.notifications import Authorizer, NotificationSink, UserDirectory

# Deepest level a work item may sit at (roots are depth 0).
MAX_DEPTH = 10


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _path_key(path: list[str]) -> str:
    """Delimited form of a path used for prefix scans: ``/a/b/c/``."""
    return "/" + "/".join(path) + "/"


class DBMixinProtocol(Protocol):
    """Shared attributes and methods that DB mixins access via self.

    Mixins inherit this Protocol so mypy can type-check self.conn,
    self.get_work_item(), etc. without ``type: ignore`` on every call.
    Actual implementations are provided by TrellisDB at composition time.
    """

    db_path: Path
    prefix: str
    _conn: sqlite3.Connection | None
    auto_create_timeout: float
    authorizer: Authorizer
    notification_sink: NotificationSink
    user_directory: UserDirectory

    @property
    def conn(self) -> sqlite3.Connection: ...

    def get_work_item(self, item_id: str, *, include_deleted: bool = False) -> WorkItem: ...

    def get_config_snapshot(self) -> ConfigSnapshot: ...

    def _generate_unique_id(self, table: str, infix: str = "") -> str: ...

    def _authorize(self, actor: str, action: str, scope: str) -> None: ...

    def _record_event(
        self,
        work_item_id: str,
        event_type: str,
        *,
        actor: str = "",
        old_value: str | None = None,
        new_value: str | None = None,
        comment: str = "",
    ) -> None: ...

    def _build_work_items(self, rows: list[sqlite3.Row]) -> list[WorkItem]: ...

    def _snapshot_item(self, item: WorkItem) -> dict[str, Any]: ...
