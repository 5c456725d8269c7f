# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from core.py, db_base.py, or any mixin, to keep imports acyclic.
"""Typed return-value contracts for trellis core and API layers."""

from __future__ import annotations

from trellis.types.core import (
    ActionResultDict,
    EventRecord,
    FieldValueDict,
    ISOTimestamp,
    MissingRequirementDict,
    ProjectConfig,
    RelationshipDict,
    TransitionDict,
    WatcherDict,
    WorkItemDict,
)

__all__ = [
    "ActionResultDict",
    "EventRecord",
    "FieldValueDict",
    "ISOTimestamp",
    "MissingRequirementDict",
    "ProjectConfig",
    "RelationshipDict",
    "TransitionDict",
    "WatcherDict",
    "WorkItemDict",
]
