"""Core database facade for trellis.

Single source of truth for all SQLite operations. Both the CLI and the HTTP
API import from this module. No daemon and no sync: direct SQLite with
WAL mode.

Convention-based discovery: each project has a `.trellis/` directory
containing `trellis.db` (SQLite) and `config.json` (ID prefix, automation
limits).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any

from trellis.actions import NotificationDispatcher
from trellis.catalog import ConfigSnapshot
from trellis.db_catalog import CatalogMixin
from trellis.db_events import EventsMixin
from trellis.db_hierarchy import HierarchyMixin
from trellis.db_items import ItemsMixin
from trellis.db_relationships import RelationshipsMixin
from trellis.db_schema import CURRENT_SCHEMA_VERSION, SCHEMA_SQL
from trellis.db_transitions import TransitionsMixin
from trellis.db_watchers import WatchersMixin
from trellis.errors import PermissionDeniedError
from trellis.notifications import (
    AllowAllAuthorizer,
    Authorizer,
    LoggingNotificationSink,
    NotificationSink,
    StaticUserDirectory,
    UserDirectory,
)
from trellis.types.core import ProjectConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

TRELLIS_DIR_NAME = ".trellis"
DB_FILENAME = "trellis.db"
CONFIG_FILENAME = "config.json"

DEFAULT_AUTO_CREATE_TIMEOUT = 30.0
DEFAULT_NOTIFICATION_WORKERS = 4
DEFAULT_NOTIFICATION_TIMEOUT = 10.0


def find_trellis_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .trellis/ directory.

    Returns the .trellis/ directory path (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / TRELLIS_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {TRELLIS_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def read_config(trellis_dir: Path) -> ProjectConfig:
    """Read .trellis/config.json. Returns defaults if missing or corrupt."""
    defaults = ProjectConfig(
        prefix="trellis",
        version=1,
        auto_create_timeout=DEFAULT_AUTO_CREATE_TIMEOUT,
        notification_workers=DEFAULT_NOTIFICATION_WORKERS,
        notification_timeout=DEFAULT_NOTIFICATION_TIMEOUT,
    )
    config_path = trellis_dir / CONFIG_FILENAME
    if not config_path.exists():
        return defaults
    try:
        loaded = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return defaults
    if not isinstance(loaded, dict):
        logger.warning("Ignoring %s: expected a JSON object", config_path)
        return defaults
    result: ProjectConfig = {**defaults, **loaded}  # type: ignore[typeddict-item]
    return result


def write_config(trellis_dir: Path, config: dict[str, Any] | ProjectConfig) -> None:
    """Write .trellis/config.json."""
    config_path = trellis_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(config, indent=2) + "\n")


# ---------------------------------------------------------------------------
# TrellisDB
# ---------------------------------------------------------------------------


class TrellisDB(
    ItemsMixin,
    HierarchyMixin,
    RelationshipsMixin,
    TransitionsMixin,
    WatchersMixin,
    CatalogMixin,
    EventsMixin,
):
    """Direct SQLite operations. No daemon, no sync. Importable by CLI and API."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        prefix: str = "trellis",
        auto_create_timeout: float = DEFAULT_AUTO_CREATE_TIMEOUT,
        notification_workers: int = DEFAULT_NOTIFICATION_WORKERS,
        notification_timeout: float = DEFAULT_NOTIFICATION_TIMEOUT,
        authorizer: Authorizer | None = None,
        notification_sink: NotificationSink | None = None,
        user_directory: UserDirectory | None = None,
        check_same_thread: bool = True,
    ) -> None:
        self.db_path = Path(db_path)
        self.prefix = prefix
        self.auto_create_timeout = float(auto_create_timeout)
        self.authorizer = authorizer or AllowAllAuthorizer()
        self.notification_sink = notification_sink or LoggingNotificationSink()
        self.user_directory = user_directory or StaticUserDirectory()
        self._dispatcher = NotificationDispatcher(
            self.notification_sink, workers=notification_workers, timeout=notification_timeout
        )
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread
        self._snapshot: ConfigSnapshot | None = None

    @classmethod
    def from_trellis_dir(cls, trellis_dir: Path, **kwargs: Any) -> TrellisDB:
        config = read_config(trellis_dir)
        return cls(
            trellis_dir / DB_FILENAME,
            prefix=config.get("prefix", "trellis"),
            auto_create_timeout=config.get("auto_create_timeout", DEFAULT_AUTO_CREATE_TIMEOUT),
            notification_workers=config.get("notification_workers", DEFAULT_NOTIFICATION_WORKERS),
            notification_timeout=config.get("notification_timeout", DEFAULT_NOTIFICATION_TIMEOUT),
            **kwargs,
        )

    def __enter__(self) -> TrellisDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> None:
        """Create tables on a fresh database and stamp the schema version."""
        version = self.get_schema_version()
        if version > CURRENT_SCHEMA_VERSION:
            msg = f"Database schema v{version} is newer than this trellis (v{CURRENT_SCHEMA_VERSION}); upgrade trellis"
            raise RuntimeError(msg)
        if version == 0:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
        self.conn.commit()

    def get_schema_version(self) -> int:
        """Schema version recorded in ``PRAGMA user_version``."""
        (version,) = self.conn.execute("PRAGMA user_version").fetchone()
        return int(version)

    def close_connection(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def close(self) -> None:
        self.close_connection()
        self._dispatcher.shutdown()

    def _generate_unique_id(self, table: str, infix: str = "") -> str:
        """Return ``<prefix>[-<infix>]-<hex10>`` not yet present in *table*.

        *table* is a literal at every call site.
        """
        stem = "-".join(part for part in (self.prefix, infix) if part)
        exists_sql = f"SELECT 1 FROM {table} WHERE id = ?"
        for _attempt in range(10):
            candidate = f"{stem}-{uuid.uuid4().hex[:10]}"
            if self.conn.execute(exists_sql, (candidate,)).fetchone() is None:
                return candidate
        # Ten collisions in a row: fall back to a longer suffix.
        return f"{stem}-{uuid.uuid4().hex[:16]}"

    def _authorize(self, actor: str, action: str, scope: str) -> None:
        if not self.authorizer.can_act_on(actor, action, scope):
            logger.warning("Permission denied: %s may not %s on %s", actor or "<anonymous>", action, scope)
            raise PermissionDeniedError(actor, action, scope)
