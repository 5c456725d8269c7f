"""Trellis: hierarchical work items with typed relationships and status workflows."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("trellis")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from trellis.core import TrellisDB
from trellis.models import WorkItem

__all__ = ["TrellisDB", "WorkItem", "__version__"]
