"""CLI commands for work items: create, show, list, hierarchy, move, status, update, delete, events."""

from __future__ import annotations

import click

from trellis.cli_common import describe_item, echo_json, fail, fail_with, get_db, parse_pairs
from trellis.errors import TrellisError
from trellis.models import VALID_PRIORITIES

DEFAULT_ORGANIZATION = "default"


@click.command()
@click.argument("subject")
@click.option("--type", "type_ref", required=True, help="Work item type (name or id)")
@click.option("--org", "organization_id", default=None, help="Organization (default: parent's, or 'default')")
@click.option("--parent", default=None, help="Parent work item ID")
@click.option("--description", "-d", default="", help="Description")
@click.option("--priority", "-p", default="medium", type=click.Choice(sorted(VALID_PRIORITIES)))
@click.option("--assignee", default=None, help="Assignee user id")
@click.option("--due", "due_date", default=None, help="Due date (YYYY-MM-DD)")
@click.option("--field", "-f", multiple=True, help="Custom field as key=value (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def create(
    ctx: click.Context,
    subject: str,
    type_ref: str,
    organization_id: str | None,
    parent: str | None,
    description: str,
    priority: str,
    assignee: str | None,
    due_date: str | None,
    field: tuple[str, ...],
    as_json: bool,
) -> None:
    """Create a work item. Configured children are created with it."""
    fields = parse_pairs(field, as_json=as_json)
    if organization_id is None:
        organization_id = "" if parent else DEFAULT_ORGANIZATION

    with get_db() as db:
        try:
            result = db.create_work_item(
                db.get_type(type_ref).id,
                organization_id,
                subject,
                parent_id=parent,
                description=description,
                priority=priority,
                assigned_to=assignee,
                due_date=due_date,
                custom_fields=fields or None,
                actor=ctx.obj["actor"],
            )
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(result.to_dict())
            return
        click.echo(f"Created {result.item.id}: {result.item.subject}")
        for child in result.children:
            click.echo(f"  auto-created {child.id}: {child.subject}")
        for failure in result.failures:
            click.echo(f"  auto-create failed ({failure.relationship_id}): {failure.reason}", err=True)


@click.command()
@click.argument("item_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(item_id: str, as_json: bool) -> None:
    """Show work item details."""
    with get_db() as db:
        try:
            item = db.get_work_item(item_id)
        except KeyError:
            fail(f"Not found: {item_id}", as_json=as_json)
        missing = db.missing_required_children(item_id)

        if as_json:
            data = item.to_dict()
            data["missing_children"] = missing  # type: ignore[typeddict-unknown-key]
            echo_json(data)
            return

        snapshot = db.get_config_snapshot()
        wit = snapshot.get_type(item.type_id)
        status = snapshot.get_status(item.type_id, item.status_id)
        click.echo(f"ID:       {item.id}")
        click.echo(f"Subject:  {item.subject}")
        click.echo(f"Type:     {wit.name}")
        click.echo(f"Status:   {status.name} ({status.category})")
        click.echo(f"Priority: {item.priority}")
        click.echo(f"Org:      {item.organization_id}")
        if item.parent_id:
            click.echo(f"Parent:   {item.parent_id}")
        click.echo(f"Depth:    {item.depth}")
        if item.assigned_to:
            click.echo(f"Assignee: {item.assigned_to}")
        if item.due_date:
            click.echo(f"Due:      {item.due_date}")
        click.echo(f"Created:  {item.created_at} by {item.created_by}")
        if item.started_at:
            click.echo(f"Started:  {item.started_at}")
        if item.completed_at:
            click.echo(f"Done:     {item.completed_at}")
        if item.custom_fields:
            click.echo("Fields:")
            for name, value in item.custom_values.items():
                click.echo(f"  {name}: {value}")
        for m in missing:
            click.echo(f"Missing:  {m['relationship_name']} needs {m['required']}, has {m['actual']}")
        if item.description:
            click.echo(f"\n{item.description}")


@click.command("list")
@click.option("--org", "organization_id", default=None, help="Filter by organization")
@click.option("--type", "type_ref", default=None, help="Filter by type (name or id)")
@click.option("--status", "status_ref", default=None, help="Filter by status (needs --type when given by name)")
@click.option("--assignee", default=None, help="Filter by assignee")
@click.option("--roots", "roots_only", is_flag=True, help="Only top-level items")
@click.option("--limit", default=100, type=int, help="Max results (default 100)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_items(
    organization_id: str | None,
    type_ref: str | None,
    status_ref: str | None,
    assignee: str | None,
    roots_only: bool,
    limit: int,
    as_json: bool,
) -> None:
    """List work items with optional filters."""
    with get_db() as db:
        try:
            type_id = db.get_type(type_ref).id if type_ref else None
            status_id = status_ref
            if status_ref and type_id:
                status_id = db.get_config_snapshot().get_status(type_id, status_ref).id
            items = db.list_work_items(
                organization_id=organization_id,
                type_id=type_id,
                status_id=status_id,
                assigned_to=assignee,
                roots_only=roots_only,
                limit=limit,
            )
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json([i.to_dict() for i in items])
            return
        for item in items:
            click.echo(describe_item(db, item))
        click.echo(f"\n{len(items)} item(s)")


@click.command()
@click.argument("item_id")
@click.option("--all", "descendants", is_flag=True, help="Whole subtree instead of direct children")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def children(item_id: str, descendants: bool, as_json: bool) -> None:
    """List the children of a work item."""
    with get_db() as db:
        try:
            items = db.get_descendants(item_id) if descendants else db.get_children(item_id)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json([i.to_dict() for i in items])
            return
        for item in items:
            indent = "  " * (item.depth - 1) if descendants else ""
            click.echo(f"{indent}{describe_item(db, item)}")


@click.command()
@click.argument("item_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def ancestors(item_id: str, as_json: bool) -> None:
    """Show the chain from the root down to a work item's parent."""
    with get_db() as db:
        try:
            items = db.get_ancestors(item_id)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json([i.to_dict() for i in items])
            return
        for item in items:
            click.echo(f"{'  ' * item.depth}{describe_item(db, item)}")


@click.command()
@click.argument("item_id")
@click.option("--parent", "new_parent", default=None, help="New parent work item ID")
@click.option("--root", "to_root", is_flag=True, help="Make the item a root")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def move(ctx: click.Context, item_id: str, new_parent: str | None, to_root: bool, as_json: bool) -> None:
    """Move a work item and its subtree under a new parent."""
    if bool(new_parent) == to_root:
        fail("Give exactly one of --parent or --root", as_json=as_json)
    with get_db() as db:
        try:
            item = db.move_work_item(item_id, None if to_root else new_parent, actor=ctx.obj["actor"])
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(item.to_dict())
        elif item.parent_id:
            click.echo(f"Moved {item.id} under {item.parent_id} (depth {item.depth})")
        else:
            click.echo(f"Moved {item.id} to the root")


@click.command()
@click.argument("item_id")
@click.argument("to_status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, item_id: str, to_status: str, as_json: bool) -> None:
    """Change a work item's status (by name or id)."""
    with get_db() as db:
        try:
            before = db.get_work_item(item_id)
            result = db.update_status(item_id, to_status, actor=ctx.obj["actor"])
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(result.to_dict())
            return
        snapshot = db.get_config_snapshot()
        old = snapshot.get_status(before.type_id, before.status_id).name
        new = snapshot.get_status(result.item.type_id, result.item.status_id).name
        if old == new:
            click.echo(f"{item_id} is already {new}")
            return
        click.echo(f"{item_id}: {old} -> {new}")
        for action in result.actions:
            mark = "ok" if action.success else "FAILED"
            detail = f" ({action.detail})" if action.detail else ""
            click.echo(f"  {action.kind} {action.target}: {mark}{detail}")


@click.command()
@click.argument("item_id")
@click.option("--subject", default=None, help="New subject")
@click.option("--description", "-d", default=None, help="New description")
@click.option("--priority", "-p", default=None, type=click.Choice(sorted(VALID_PRIORITIES)))
@click.option("--assignee", default=None, help="New assignee ('' to clear)")
@click.option("--due", "due_date", default=None, help="New due date ('' to clear)")
@click.option("--field", "-f", multiple=True, help="Custom field as key=value (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def update(
    ctx: click.Context,
    item_id: str,
    subject: str | None,
    description: str | None,
    priority: str | None,
    assignee: str | None,
    due_date: str | None,
    field: tuple[str, ...],
    as_json: bool,
) -> None:
    """Update a work item's fields. Use 'trellis status' to change status."""
    fields = parse_pairs(field, as_json=as_json)
    with get_db() as db:
        try:
            item = db.update_work_item(
                item_id,
                subject=subject,
                description=description,
                priority=priority,
                assigned_to=assignee,
                due_date=due_date,
                custom_fields=fields or None,
                actor=ctx.obj["actor"],
            )
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(item.to_dict())
        else:
            click.echo(f"Updated {item.id}: {item.subject}")


@click.command()
@click.argument("item_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def delete(ctx: click.Context, item_id: str, as_json: bool) -> None:
    """Soft-delete a work item that has no live children."""
    with get_db() as db:
        try:
            item = db.delete_work_item(item_id, actor=ctx.obj["actor"])
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(item.to_dict())
        else:
            click.echo(f"Deleted {item.id}")


@click.command()
@click.argument("item_id")
@click.option("--limit", default=50, type=int, help="Max events (default 50)")
@click.option("--type", "event_type", default=None, help="Only this event type")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def events(item_id: str, limit: int, event_type: str | None, as_json: bool) -> None:
    """Show the audit trail of a work item, newest first."""
    with get_db() as db:
        try:
            db.get_work_item(item_id, include_deleted=True)
        except KeyError:
            fail(f"Not found: {item_id}", as_json=as_json)
        records = db.get_item_events(item_id, limit=limit, event_type=event_type)
        if as_json:
            echo_json(records)
            return
        for ev in records:
            change = ""
            if ev["old_value"] or ev["new_value"]:
                change = f" {ev['old_value'] or ''} -> {ev['new_value'] or ''}"
            click.echo(f"  {ev['created_at']}  {ev['event_type']:<20} {ev['actor']}{change}")


def register(cli: click.Group) -> None:
    """Register work item commands with the CLI group."""
    cli.add_command(create)
    cli.add_command(show)
    cli.add_command(list_items, "list")
    cli.add_command(children)
    cli.add_command(ancestors)
    cli.add_command(move)
    cli.add_command(status)
    cli.add_command(update)
    cli.add_command(delete)
    cli.add_command(events)
