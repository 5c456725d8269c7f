"""Tests for structured logging."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Generator
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import pytest

from tests._db_factory import Workflow
from trellis.core import TrellisDB
from trellis.logging import setup_logging


@pytest.fixture(autouse=True)
def _reset_trellis_logger() -> Generator[None, None, None]:
    yield
    logger = logging.getLogger("trellis")
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()


def _records(log_dir: Path) -> list[dict[str, Any]]:
    for handler in logging.getLogger("trellis").handlers:
        handler.flush()
    return [json.loads(line) for line in (log_dir / "trellis.log").read_text().splitlines() if line]


class TestSetupLogging:
    def test_creates_log_file(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("test_message", extra={"op": "create", "item_id": "x-1"})
        (record,) = _records(tmp_path)
        assert record["msg"] == "test_message"
        assert record["level"] == "INFO"
        assert record["logger"] == "trellis"
        assert record["op"] == "create"
        assert record["item_id"] == "x-1"

    def test_duration_and_error_keys(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.warning("slow", extra={"duration_ms": 42.5, "error": "timed out"})
        record = _records(tmp_path)[-1]
        assert record["duration_ms"] == 42.5
        assert record["error"] == "timed out"

    def test_unknown_extras_not_emitted(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("plain", extra={"tool": "ignored"})
        assert "tool" not in _records(tmp_path)[-1]

    def test_exception_recorded(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        try:
            msg = "boom"
            raise RuntimeError(msg)
        except RuntimeError:
            logger.exception("failed")
        assert _records(tmp_path)[-1]["exception"] == "boom"

    def test_child_loggers_propagate(self, tmp_path: Path) -> None:
        setup_logging(tmp_path)
        logging.getLogger("trellis.db_items").info("from engine")
        assert _records(tmp_path)[-1]["logger"] == "trellis.db_items"

    def test_idempotent_setup(self, tmp_path: Path) -> None:
        logger1 = setup_logging(tmp_path)
        logger2 = setup_logging(tmp_path)
        assert logger1 is logger2
        assert len(logger1.handlers) == 1

    def test_new_directory_replaces_handler(self, tmp_path: Path) -> None:
        first = tmp_path / "a"
        second = tmp_path / "b"
        first.mkdir()
        second.mkdir()
        setup_logging(first)
        logger = setup_logging(second)
        handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(handlers) == 1
        assert handlers[0].baseFilename == str((second / "trellis.log").absolute())

    def test_no_duplicate_handlers_under_concurrency(self, tmp_path: Path) -> None:
        results: list[logging.Logger] = []
        barrier = threading.Barrier(4)

        def call_setup() -> None:
            barrier.wait()
            results.append(setup_logging(tmp_path))

        threads = [threading.Thread(target=call_setup) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 4
        assert all(r is results[0] for r in results)
        assert len(logging.getLogger("trellis").handlers) == 1


class TestEngineLogging:
    def test_create_and_status_change_logged(self, tmp_path: Path, workflow_db: tuple[TrellisDB, Workflow]) -> None:
        log_dir = tmp_path / "logs"
        log_dir.mkdir()
        setup_logging(log_dir)
        db, wf = workflow_db
        item = db.create_work_item(wf.types["Task"], "acme", "Fix").item
        db.update_status(item.id, "Closed")

        by_op = {r.get("op"): r for r in _records(log_dir)}
        assert by_op["create"]["item_id"] == item.id
        assert "duration_ms" in by_op["create"]
        assert by_op["update_status"]["msg"].endswith("(0 action(s), 0 failed)")
