"""Structured JSON logging for trellis.

One JSON object per line in ``.trellis/trellis.log``, rotated at 5MB with
three backups. Engine code passes ``op``, ``item_id``, ``duration_ms`` and
``error`` through ``extra=``; they are emitted as top-level keys and any
other extra attribute is left out.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOGGER_NAME = "trellis"
LOG_FILENAME = "trellis.log"
ROTATE_BYTES = 5 * 1024 * 1024
ROTATE_BACKUPS = 3
STRUCTURED_KEYS = ("op", "item_id", "duration_ms", "error")

_lock = threading.Lock()


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=UTC)
        entry: dict[str, Any] = {
            "ts": stamp.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in STRUCTURED_KEYS if hasattr(record, key)})
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def _file_handlers(logger: logging.Logger) -> list[RotatingFileHandler]:
    return [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]


def setup_logging(trellis_dir: Path, level: int = logging.INFO) -> logging.Logger:
    """Attach the JSON file handler for *trellis_dir* to the ``trellis`` logger.

    Safe to call repeatedly and from several threads. The same directory
    keeps its handler; a new directory replaces the old one.
    """
    logger = logging.getLogger(LOGGER_NAME)
    log_path = Path(trellis_dir).absolute() / LOG_FILENAME

    with _lock:
        existing = _file_handlers(logger)
        if any(h.baseFilename == str(log_path) for h in existing):
            return logger
        for stale in existing:
            logger.removeHandler(stale)
            stale.close()

        handler = RotatingFileHandler(log_path, maxBytes=ROTATE_BYTES, backupCount=ROTATE_BACKUPS, encoding="utf-8")
        handler.setFormatter(JsonLineFormatter())
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger
