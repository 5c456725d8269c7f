"""CLI commands for watchers: watch, unwatch, watchers, watching."""

from __future__ import annotations

import click

from trellis.cli_common import describe_item, echo_json, fail, fail_with, get_db
from trellis.errors import TrellisError
from trellis.models import VALID_NOTIFY_CATEGORIES


@click.command()
@click.argument("item_id")
@click.argument("user_id")
@click.option(
    "--mute",
    multiple=True,
    type=click.Choice(sorted(VALID_NOTIFY_CATEGORIES)),
    help="Notification category to turn off (repeatable)",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def watch(ctx: click.Context, item_id: str, user_id: str, mute: tuple[str, ...], as_json: bool) -> None:
    """Make USER_ID watch a work item."""
    with get_db() as db:
        try:
            watcher = db.add_watcher(item_id, user_id, actor=ctx.obj["actor"], **{m: False for m in mute})
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(watcher.to_dict())
        else:
            click.echo(f"{watcher.user_id} is watching {item_id}")


@click.command()
@click.argument("item_id")
@click.argument("user_id")
@click.pass_context
def unwatch(ctx: click.Context, item_id: str, user_id: str) -> None:
    """Stop USER_ID watching a work item."""
    with get_db() as db:
        try:
            removed = db.remove_watcher(item_id, user_id, actor=ctx.obj["actor"])
        except (TrellisError, ValueError) as e:
            fail_with(e)
        if not removed:
            fail(f"{user_id} is not watching {item_id}")
        click.echo(f"{user_id} stopped watching {item_id}")


@click.command()
@click.argument("item_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def watchers(item_id: str, as_json: bool) -> None:
    """List the watchers of a work item."""
    with get_db() as db:
        try:
            rows = db.list_watchers(item_id)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json([w.to_dict() for w in rows])
            return
        for w in rows:
            muted = [c for c in sorted(VALID_NOTIFY_CATEGORIES) if not w.wants(c)]  # type: ignore[arg-type]
            suffix = f" (muted: {', '.join(muted)})" if muted else ""
            click.echo(f"  {w.user_id:<20} {w.watch_type}{suffix}")


@click.command()
@click.argument("user_id")
@click.option("--limit", default=100, type=int, help="Max results (default 100)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def watching(user_id: str, limit: int, as_json: bool) -> None:
    """List the live work items USER_ID watches."""
    with get_db() as db:
        try:
            items = db.list_watched_items(user_id, limit=limit)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json([i.to_dict() for i in items])
            return
        for item in items:
            click.echo(describe_item(db, item))
        click.echo(f"\n{len(items)} item(s)")


def register(cli: click.Group) -> None:
    """Register watcher commands with the CLI group."""
    cli.add_command(watch)
    cli.add_command(unwatch)
    cli.add_command(watchers)
    cli.add_command(watching)
