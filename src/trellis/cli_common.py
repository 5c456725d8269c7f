"""Shared CLI helpers.

Provides ``get_db()`` and the error/JSON output helpers so that both the main
``cli.py`` and the ``cli_commands/*.py`` modules can use them without
circular imports.
"""

from __future__ import annotations

import json as json_mod
import sys
from typing import TYPE_CHECKING, Any, NoReturn

import click

from trellis.core import TRELLIS_DIR_NAME, TrellisDB, find_trellis_root
from trellis.errors import TrellisError, ValidationFailedError
from trellis.logging import setup_logging

if TYPE_CHECKING:
    from trellis.models import WorkItem


def get_db() -> TrellisDB:
    """Discover .trellis/ and return an initialized TrellisDB."""
    try:
        trellis_dir = find_trellis_root()
    except FileNotFoundError:
        click.echo(f"No {TRELLIS_DIR_NAME}/ found. Run 'trellis init' first.", err=True)
        sys.exit(1)
    setup_logging(trellis_dir)
    db = TrellisDB.from_trellis_dir(trellis_dir)
    db.initialize()
    return db


def fail(message: str, *, as_json: bool = False, **extra: Any) -> NoReturn:
    """Report an error the way every command does and exit 1."""
    if as_json:
        click.echo(json_mod.dumps({"error": message, **extra}))
    else:
        click.echo(f"Error: {message}", err=True)
        for detail in extra.get("errors", []):
            click.echo(f"  - {detail}", err=True)
    sys.exit(1)


def fail_with(exc: Exception, *, as_json: bool = False) -> NoReturn:
    """Report an engine exception, keeping its code and any itemized errors."""
    extra: dict[str, Any] = {}
    if isinstance(exc, TrellisError):
        extra["code"] = exc.code
    if isinstance(exc, ValidationFailedError):
        extra["errors"] = exc.errors
        fail("validation failed", as_json=as_json, **extra)
    fail(str(exc), as_json=as_json, **extra)


def echo_json(data: Any) -> None:
    click.echo(json_mod.dumps(data, indent=2, default=str))


def parse_pairs(pairs: tuple[str, ...], *, as_json: bool = False) -> dict[str, str]:
    """Parse repeated ``key=value`` options into a dict."""
    result: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            fail(f"Invalid field format: {pair} (expected key=value)", as_json=as_json)
        k, v = pair.split("=", 1)
        result[k.strip()] = v
    return result


def load_json_option(raw: str | None, name: str, *, as_json: bool = False) -> Any:
    if raw is None:
        return None
    try:
        return json_mod.loads(raw)
    except json_mod.JSONDecodeError as e:
        fail(f"--{name} is not valid JSON: {e}", as_json=as_json)


def describe_item(db: TrellisDB, item: WorkItem) -> str:
    """One-line summary: id, type, subject and status."""
    snapshot = db.get_config_snapshot()
    wit = snapshot.types.get(item.type_id)
    status = wit.status_by_id(item.status_id) if wit else None
    type_name = wit.name if wit else item.type_id
    status_name = status.name if status else item.status_id
    return f"{item.id}  [{type_name}] {item.subject} ({status_name})"
