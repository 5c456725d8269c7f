"""WatchersMixin: who follows a work item and what they want to hear about."""

from __future__ import annotations

import sqlite3

from trellis.db_base import DBMixinProtocol, _now_iso
from trellis.errors import NotFoundError
from trellis.models import VALID_NOTIFY_CATEGORIES, VALID_WATCH_TYPES, NotifyCategory, Watcher, WorkItem
from trellis.validation import sanitize_actor

_PREFERENCE_COLUMNS = {
    "status_changes": "notify_status_changes",
    "comments": "notify_comments",
    "assignments": "notify_assignments",
    "due_date": "notify_due_date",
}


def _row_to_watcher(row: sqlite3.Row) -> Watcher:
    return Watcher(
        id=row["id"],
        work_item_id=row["work_item_id"],
        user_id=row["user_id"],
        watch_type=row["watch_type"],
        notify_status_changes=bool(row["notify_status_changes"]),
        notify_comments=bool(row["notify_comments"]),
        notify_assignments=bool(row["notify_assignments"]),
        notify_due_date=bool(row["notify_due_date"]),
        created_at=row["created_at"],
    )


def _clean_user(user_id: str) -> str:
    cleaned, err = sanitize_actor(user_id)
    if err:
        msg = err.replace("actor", "user id")
        raise ValueError(msg)
    return cleaned


class WatchersMixin(DBMixinProtocol):
    """Watcher registry for TrellisDB.

    Automatic watches (creator, assignee) are insert-or-ignore: they never
    duplicate a row and never downgrade a manual watch.
    """

    def _get_watcher(self, item_id: str, user_id: str) -> Watcher | None:
        row = self.conn.execute(
            "SELECT * FROM watchers WHERE work_item_id = ? AND user_id = ?", (item_id, user_id)
        ).fetchone()
        return _row_to_watcher(row) if row else None

    def _auto_add_watcher_row(self, item_id: str, user_id: str, watch_type: str) -> bool:
        """Insert an automatic watch if none exists. Does not commit."""
        cur = self.conn.execute(
            "INSERT OR IGNORE INTO watchers (id, work_item_id, user_id, watch_type, created_at) VALUES (?, ?, ?, ?, ?)",
            (self._generate_unique_id("watchers", "w"), item_id, user_id, watch_type, _now_iso()),
        )
        return cur.rowcount > 0

    def auto_add_watcher(self, item_id: str, user_id: str, watch_type: str = "auto_assignee") -> bool:
        """Add an automatic watch. Returns True if a new row was created."""
        if watch_type not in VALID_WATCH_TYPES or watch_type == "manual":
            msg = f"Invalid automatic watch type '{watch_type}'"
            raise ValueError(msg)
        self.get_work_item(item_id)
        user_id = _clean_user(user_id)
        try:
            added = self._auto_add_watcher_row(item_id, user_id, watch_type)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return added

    def add_watcher(self, item_id: str, user_id: str, *, actor: str = "", **preferences: bool) -> Watcher:
        """Watch an item manually. An existing automatic watch is upgraded to manual."""
        self.get_work_item(item_id)
        user_id = _clean_user(user_id)
        try:
            existing = self._get_watcher(item_id, user_id)
            if existing is None:
                self.conn.execute(
                    "INSERT INTO watchers (id, work_item_id, user_id, watch_type, created_at) VALUES (?, ?, ?, 'manual', ?)",
                    (self._generate_unique_id("watchers", "w"), item_id, user_id, _now_iso()),
                )
            elif existing.watch_type != "manual":
                self.conn.execute(
                    "UPDATE watchers SET watch_type = 'manual' WHERE id = ?",
                    (existing.id,),
                )
            self._apply_preferences(item_id, user_id, preferences)
            self._record_event(item_id, "watcher_added", actor=actor, new_value=user_id)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        watcher = self._get_watcher(item_id, user_id)
        assert watcher is not None
        return watcher

    def remove_watcher(self, item_id: str, user_id: str, *, actor: str = "") -> bool:
        self.get_work_item(item_id, include_deleted=True)
        try:
            cur = self.conn.execute("DELETE FROM watchers WHERE work_item_id = ? AND user_id = ?", (item_id, user_id))
            if cur.rowcount:
                self._record_event(item_id, "watcher_removed", actor=actor, old_value=user_id)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return cur.rowcount > 0

    def _apply_preferences(self, item_id: str, user_id: str, preferences: dict[str, bool]) -> None:
        for category, value in preferences.items():
            column = _PREFERENCE_COLUMNS.get(category.removeprefix("notify_"))
            if column is None:
                msg = f"Unknown notification category '{category}'. Valid: {', '.join(sorted(VALID_NOTIFY_CATEGORIES))}"
                raise ValueError(msg)
            # column comes from the fixed _PREFERENCE_COLUMNS map, never user input
            self.conn.execute(
                f"UPDATE watchers SET {column} = ? WHERE work_item_id = ? AND user_id = ?",
                (int(bool(value)), item_id, user_id),
            )

    def update_watcher_preferences(self, item_id: str, user_id: str, **preferences: bool) -> Watcher:
        """Toggle notification categories, e.g. ``comments=False``."""
        if self._get_watcher(item_id, user_id) is None:
            raise NotFoundError(f"Watcher on {item_id}", user_id)
        try:
            self._apply_preferences(item_id, user_id, preferences)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        watcher = self._get_watcher(item_id, user_id)
        assert watcher is not None
        return watcher

    def list_watchers(self, item_id: str) -> list[Watcher]:
        self.get_work_item(item_id, include_deleted=True)
        rows = self.conn.execute(
            "SELECT * FROM watchers WHERE work_item_id = ? ORDER BY created_at, user_id", (item_id,)
        ).fetchall()
        return [_row_to_watcher(r) for r in rows]

    def list_for_notification(self, item_id: str, category: NotifyCategory) -> list[Watcher]:
        """Watchers of *item_id* who opted in to *category*."""
        column = _PREFERENCE_COLUMNS.get(category)
        if column is None:
            msg = f"Unknown notification category '{category}'. Valid: {', '.join(sorted(VALID_NOTIFY_CATEGORIES))}"
            raise ValueError(msg)
        rows = self.conn.execute(
            f"SELECT * FROM watchers WHERE work_item_id = ? AND {column} = 1 ORDER BY created_at, user_id",
            (item_id,),
        ).fetchall()
        return [_row_to_watcher(r) for r in rows]

    def list_watched_items(self, user_id: str, *, limit: int = 100, offset: int = 0) -> list[WorkItem]:
        """Live items *user_id* watches, oldest watch first."""
        user_id = _clean_user(user_id)
        rows = self.conn.execute(
            "SELECT wi.* FROM watchers w JOIN work_items wi ON wi.id = w.work_item_id "
            "WHERE w.user_id = ? AND wi.deleted_at IS NULL "
            "ORDER BY w.created_at, wi.id LIMIT ? OFFSET ?",
            (user_id, limit, offset),
        ).fetchall()
        return self._build_work_items(rows)
