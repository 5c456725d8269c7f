"""Fixtures for CLI interface tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from tests._db_factory import WORKFLOW_CONFIG
from trellis.cli import cli


@pytest.fixture
def cli_in_project(tmp_path: Path, cli_runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> tuple[CliRunner, Path]:
    """Initialize a trellis project in tmp_path and return (runner, project_root)."""
    monkeypatch.chdir(tmp_path)
    result = cli_runner.invoke(cli, ["init", "--prefix", "test"])
    assert result.exit_code == 0, result.output
    return cli_runner, tmp_path


@pytest.fixture
def cli_with_workflow(cli_in_project: tuple[CliRunner, Path]) -> tuple[CliRunner, Path]:
    """A CLI project with the Project > Task > Subtask workflow loaded."""
    runner, root = cli_in_project
    config_path = root / "workflow.json"
    config_path.write_text(json.dumps(WORKFLOW_CONFIG))
    result = runner.invoke(cli, ["config", "load", str(config_path)])
    assert result.exit_code == 0, result.output
    return runner, root


def _extract_id(create_output: str) -> str:
    """Extract the item ID from 'Created test-abc123: Subject' output."""
    return create_output.split(":")[0].replace("Created ", "").strip()
