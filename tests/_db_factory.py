"""Shared TrellisDB factory and workflow seed for test fixtures.

Importable by any conftest.py or test file in the test suite.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from trellis.core import DB_FILENAME, TRELLIS_DIR_NAME, TrellisDB, write_config


def make_db(
    tmp_path: Path,
    *,
    prefix: str = "test",
    project: bool = False,
    check_same_thread: bool = True,
    **kwargs: Any,
) -> TrellisDB:
    """Factory for TrellisDB instances in tests.

    With *project*, a .trellis/ directory with config.json is created to
    match how the CLI and API discover a database.
    """
    if project:
        trellis_dir = tmp_path / TRELLIS_DIR_NAME
        trellis_dir.mkdir(exist_ok=True)
        write_config(trellis_dir, {"prefix": prefix, "version": 1})
        d = TrellisDB(trellis_dir / DB_FILENAME, prefix=prefix, check_same_thread=check_same_thread, **kwargs)
    else:
        d = TrellisDB(tmp_path / "trellis.db", prefix=prefix, check_same_thread=check_same_thread, **kwargs)
    d.initialize()
    return d


@dataclass
class Workflow:
    """IDs of the seeded types and statuses, keyed by name."""

    types: dict[str, str] = field(default_factory=dict)
    statuses: dict[str, dict[str, str]] = field(default_factory=dict)
    relationships: dict[str, str] = field(default_factory=dict)

    def status(self, type_name: str, status_name: str) -> str:
        return self.statuses[type_name][status_name]


WORKFLOW_CONFIG: dict[str, Any] = {
    "types": [
        {
            "name": "Project",
            "fields": [
                {"name": "client", "type": "text"},
                {"name": "budget", "type": "number"},
            ],
            "statuses": [
                {"name": "Open", "category": "backlog", "is_initial": True},
                {"name": "Active", "category": "in_progress"},
                {"name": "Done", "category": "completed", "is_final": True},
            ],
        },
        {
            "name": "Task",
            "fields": [
                {"name": "resolution_notes", "type": "text"},
                {"name": "severity", "type": "enum", "options": ["low", "high"]},
                {"name": "estimate", "type": "number"},
            ],
            "statuses": [
                {"name": "Open", "category": "backlog", "is_initial": True},
                {"name": "In Progress", "category": "in_progress"},
                {"name": "Closed", "category": "completed", "is_final": True},
                {"name": "Cancelled", "category": "cancelled", "is_final": True},
            ],
        },
        {
            "name": "Subtask",
            "statuses": [
                {"name": "Open", "category": "backlog", "is_initial": True},
                {"name": "Done", "category": "completed", "is_final": True},
            ],
        },
    ],
    "relationships": [
        {"parent": "Project", "child": "Task", "max_count": 3},
        {"parent": "Task", "child": "Subtask"},
    ],
}


def seed_workflow(db: TrellisDB) -> Workflow:
    """Load the Project > Task > Subtask configuration into *db*."""
    db.load_configuration(WORKFLOW_CONFIG)
    wf = Workflow()
    for wit in db.list_types():
        wf.types[wit.name] = wit.id
        wf.statuses[wit.name] = {s.name: s.id for s in wit.statuses}
    snapshot = db.get_config_snapshot()
    for rel in snapshot.relationships:
        parent = snapshot.get_type(rel.parent_type_id).name
        child = snapshot.get_type(rel.child_type_id).name
        wf.relationships[f"{parent}>{child}"] = rel.id
    return wf
