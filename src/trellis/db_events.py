"""EventsMixin: the audit trail for work items.

Every mutation and every automation outcome (auto-created children,
auto-create failures, applied actions) is written here inside the same
transaction as the change it describes. All methods access ``self.conn``
via Python's MRO when composed into ``TrellisDB``.
"""

from __future__ import annotations

from typing import cast

from trellis.db_base import DBMixinProtocol, _now_iso
from trellis.types.core import EventRecord


class EventsMixin(DBMixinProtocol):
    """Event recording and queries.

    Inherits ``DBMixinProtocol`` for type-safe access to shared attributes
    (``self.conn``, ``self.get_work_item()``, etc.). Actual implementations
    provided by ``TrellisDB`` at composition time via MRO.
    """

    # -- Events (private) ----------------------------------------------------

    def _record_event(
        self,
        work_item_id: str,
        event_type: str,
        *,
        actor: str = "",
        old_value: str | None = None,
        new_value: str | None = None,
        comment: str = "",
    ) -> None:
        self.conn.execute(
            "INSERT INTO events (work_item_id, event_type, actor, old_value, new_value, comment, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (work_item_id, event_type, actor, old_value, new_value, comment, _now_iso()),
        )

    # -- Queries -------------------------------------------------------------

    def get_item_events(
        self,
        work_item_id: str,
        *,
        limit: int = 50,
        event_type: str | None = None,
    ) -> list[EventRecord]:
        """Get events for a specific work item, newest first."""
        self.get_work_item(work_item_id, include_deleted=True)  # raises NotFoundError
        sql = "SELECT * FROM events WHERE work_item_id = ?"
        params: list[object] = [work_item_id]
        if event_type is not None:
            sql += " AND event_type = ?"
            params.append(event_type)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return cast(list[EventRecord], [dict(r) for r in rows])
