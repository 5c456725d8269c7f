"""CLI command for running the HTTP API."""

from __future__ import annotations

import click

from trellis.api import DEFAULT_PORT


@click.command()
@click.option("--port", default=DEFAULT_PORT, type=int, help=f"Port to listen on (default {DEFAULT_PORT})")
@click.option("--host", default="127.0.0.1", help="Interface to bind (default 127.0.0.1)")
def serve(port: int, host: str) -> None:
    """Serve the work item API for the current project."""
    from trellis.api import main as api_main

    click.echo(f"Serving trellis API on http://{host}:{port}")
    api_main(port=port, host=host)


def register(cli: click.Group) -> None:
    """Register server commands with the CLI group."""
    cli.add_command(serve)
