"""Shared pytest fixtures for trellis tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from tests._db_factory import Workflow, make_db, seed_workflow
from trellis.core import DB_FILENAME, TRELLIS_DIR_NAME, TrellisDB, write_config
from trellis.notifications import LoggingNotificationSink


@pytest.fixture
def db(tmp_path: Path) -> Generator[TrellisDB, None, None]:
    """Fresh TrellisDB for each test."""
    d = make_db(tmp_path)
    yield d
    d.close()


@pytest.fixture
def sink() -> LoggingNotificationSink:
    return LoggingNotificationSink()


@pytest.fixture
def workflow_db(tmp_path: Path, sink: LoggingNotificationSink) -> Generator[tuple[TrellisDB, Workflow], None, None]:
    """TrellisDB seeded with the Project > Task > Subtask workflow.

    Notifications go to the ``sink`` fixture so tests can inspect them.
    """
    d = make_db(tmp_path, notification_sink=sink)
    wf = seed_workflow(d)
    yield d, wf
    d.close()


@pytest.fixture
def trellis_project(tmp_path: Path) -> Path:
    """A tmp directory set up as a trellis project (.trellis/ with config + db).

    Returns the project root (parent of .trellis/).
    """
    trellis_dir = tmp_path / TRELLIS_DIR_NAME
    trellis_dir.mkdir()
    write_config(trellis_dir, {"prefix": "proj", "version": 1})
    d = TrellisDB(trellis_dir / DB_FILENAME, prefix="proj")
    d.initialize()
    d.close()
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
