"""CLI for the trellis work item engine.

Convention-based: discovers .trellis/ by walking up from cwd.

Usage:
    trellis init --prefix=ops                          # Initialize .trellis/ in cwd
    trellis type create Project                        # Define a work item type
    trellis type add-status Project Open --category=backlog --initial
    trellis relationship define Project Task --max=5   # Allow Task under Project
    trellis transition define Task Open Done --require=resolution_notes
    trellis config load workflow.json                  # Bulk-load types/relationships/transitions
    trellis create "Q3 launch" --type=Project          # Create a work item
    trellis children <id>                              # Direct children
    trellis move <id> --parent=<id>                    # Re-parent a subtree
    trellis status <id> Done                           # Change status (validated, actions run)
    trellis watch <id> alice                           # Follow an item
    trellis serve --port=8400                          # Start the HTTP API
"""

from __future__ import annotations

from pathlib import Path

import click

from trellis import __version__
from trellis.cli_commands import items as items_commands
from trellis.cli_commands import server as server_commands
from trellis.cli_commands import watchers as watchers_commands
from trellis.cli_commands import workflow as workflow_commands
from trellis.core import (
    DB_FILENAME,
    DEFAULT_AUTO_CREATE_TIMEOUT,
    DEFAULT_NOTIFICATION_TIMEOUT,
    DEFAULT_NOTIFICATION_WORKERS,
    TRELLIS_DIR_NAME,
    TrellisDB,
    write_config,
)
from trellis.validation import sanitize_actor


@click.group()
@click.version_option(version=__version__, prog_name="trellis")
@click.option("--actor", default="cli", help="Actor identity for audit trail and authorization (default: cli)")
@click.pass_context
def cli(ctx: click.Context, actor: str) -> None:
    """Trellis: hierarchical work items with typed workflows."""
    cleaned, err = sanitize_actor(actor)
    if err:
        raise click.BadParameter(err, param_hint="--actor")
    ctx.ensure_object(dict)
    ctx.obj["actor"] = cleaned


@cli.command()
@click.option("--prefix", default=None, help="ID prefix for records (default: directory name)")
def init(prefix: str | None) -> None:
    """Initialize .trellis/ in the current directory."""
    cwd = Path.cwd()
    trellis_dir = cwd / TRELLIS_DIR_NAME

    if trellis_dir.exists():
        click.echo(f"{TRELLIS_DIR_NAME}/ already exists in {cwd}")
        with TrellisDB.from_trellis_dir(trellis_dir) as db:
            db.initialize()
        return

    prefix = prefix or cwd.name
    trellis_dir.mkdir()
    write_config(
        trellis_dir,
        {
            "prefix": prefix,
            "version": 1,
            "auto_create_timeout": DEFAULT_AUTO_CREATE_TIMEOUT,
            "notification_workers": DEFAULT_NOTIFICATION_WORKERS,
            "notification_timeout": DEFAULT_NOTIFICATION_TIMEOUT,
        },
    )
    with TrellisDB(trellis_dir / DB_FILENAME, prefix=prefix) as db:
        db.initialize()

    click.echo(f"Initialized {TRELLIS_DIR_NAME}/ in {cwd}")
    click.echo(f"  Prefix: {prefix}")
    click.echo(f"  Database: {trellis_dir / DB_FILENAME}")
    click.echo("\nNext: trellis type create <Name>")


workflow_commands.register(cli)
items_commands.register(cli)
watchers_commands.register(cli)
server_commands.register(cli)


if __name__ == "__main__":
    cli()
