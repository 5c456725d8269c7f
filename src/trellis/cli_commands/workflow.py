"""CLI commands for configuration: types, fields, statuses, relationships, transitions, bulk load."""

from __future__ import annotations

import json as json_mod
from pathlib import Path
from typing import Any

import click

from trellis.cli_common import echo_json, fail, fail_with, get_db, load_json_option, parse_pairs
from trellis.errors import TrellisError
from trellis.models import VALID_FIELD_TYPES, VALID_STATUS_CATEGORIES

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@click.group("type")
def type_group() -> None:
    """Define work item types, their fields and statuses."""


@type_group.command("create")
@click.argument("name")
@click.option("--org", "organization_id", default=None, help="Organization scope (default: global)")
@click.option("--description", "-d", default="", help="Description")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def type_create(name: str, organization_id: str | None, description: str, as_json: bool) -> None:
    """Create a work item type."""
    with get_db() as db:
        try:
            wit = db.create_type(name, organization_id=organization_id, description=description)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(wit.to_dict())
        else:
            click.echo(f"Created type {wit.id}: {wit.name}")


@type_group.command("list")
@click.option("--org", "organization_id", default=None, help="Only types visible to this organization")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def type_list(organization_id: str | None, as_json: bool) -> None:
    """List work item types."""
    with get_db() as db:
        types = sorted(db.list_types(organization_id=organization_id), key=lambda t: t.name)
        if as_json:
            echo_json([t.to_dict() for t in types])
            return
        if not types:
            click.echo("No types defined.")
            return
        for t in types:
            scope = t.organization_id or "global"
            click.echo(f"  {t.id}  {t.name:<20} [{scope}] {len(t.fields)} field(s), {len(t.statuses)} status(es)")


@type_group.command("show")
@click.argument("type_ref")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def type_show(type_ref: str, as_json: bool) -> None:
    """Show a type's fields, statuses and allowed children."""
    with get_db() as db:
        try:
            wit = db.get_type(type_ref)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        rels = db.list_relationships(wit.id)
        if as_json:
            data: dict[str, Any] = wit.to_dict()
            data["relationships"] = [r.to_dict() for r in rels]
            echo_json(data)
            return

        snapshot = db.get_config_snapshot()
        click.echo(f"{wit.name} ({wit.id})")
        if wit.description:
            click.echo(f"  {wit.description}")
        click.echo("\n  Statuses:")
        for s in wit.statuses:
            flags = [flag for flag, on in (("initial", s.is_initial), ("final", s.is_final)) if on]
            suffix = f" ({', '.join(flags)})" if flags else ""
            click.echo(f"    {s.name:<20} {s.category}{suffix}")
        if wit.fields:
            click.echo("\n  Fields:")
            for f in wit.fields:
                req = " (required)" if f.is_required_on_creation else ""
                opts = f" [{', '.join(f.options)}]" if f.options else ""
                click.echo(f"    {f.name}: {f.field_type}{opts}{req}")
        if rels:
            click.echo("\n  Children:")
            for r in rels:
                child = snapshot.types.get(r.child_type_id)
                bounds = f"{r.min_count if r.min_count is not None else 0}..{r.max_count if r.max_count is not None else '*'}"
                auto = " auto-create" if r.auto_create else ""
                click.echo(f"    {r.relationship_name:<20} {child.name if child else r.child_type_id} {bounds}{auto}")


@type_group.command("delete")
@click.argument("type_ref")
def type_delete(type_ref: str) -> None:
    """Delete a type that no live item uses."""
    with get_db() as db:
        try:
            wit = db.get_type(type_ref)
            db.delete_type(wit.id)
        except (TrellisError, ValueError) as e:
            fail_with(e)
        click.echo(f"Deleted type {wit.name}")


@type_group.command("add-field")
@click.argument("type_ref")
@click.argument("name")
@click.option(
    "--type",
    "field_type",
    default="text",
    type=click.Choice(sorted(VALID_FIELD_TYPES)),
    help="Field type",
)
@click.option("--label", default=None, help="Display label (default: the name)")
@click.option("--option", "options", multiple=True, help="Enum option (repeatable)")
@click.option("--default", "default", default=None, help="Default value")
@click.option("--required", is_flag=True, help="Required when an item is created")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def type_add_field(
    type_ref: str,
    name: str,
    field_type: str,
    label: str | None,
    options: tuple[str, ...],
    default: str | None,
    required: bool,
    as_json: bool,
) -> None:
    """Add a custom field to a type."""
    with get_db() as db:
        try:
            wit = db.get_type(type_ref)
            defn = db.add_field(
                wit.id,
                name,
                field_type,  # type: ignore[arg-type]
                label=label,
                options=list(options) or None,
                default=default,
                required_on_creation=required,
            )
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(defn.to_dict())
        else:
            click.echo(f"Added field {defn.name} ({defn.field_type}) to {wit.name}")


@type_group.command("add-status")
@click.argument("type_ref")
@click.argument("name")
@click.option("--category", type=click.Choice(sorted(VALID_STATUS_CATEGORIES)), default="backlog")
@click.option("--initial", is_flag=True, help="Status new items start in")
@click.option("--final", is_flag=True, help="Entering this status completes the item")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def type_add_status(type_ref: str, name: str, category: str, initial: bool, final: bool, as_json: bool) -> None:
    """Add a status to a type."""
    with get_db() as db:
        try:
            wit = db.get_type(type_ref)
            status = db.add_status(wit.id, name, category, is_initial=initial, is_final=final)  # type: ignore[arg-type]
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(status.to_dict())
        else:
            click.echo(f"Added status {status.name} ({status.category}) to {wit.name}")


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------


@click.group("relationship")
def relationship_group() -> None:
    """Control which child types may nest under which parent types."""


@relationship_group.command("define")
@click.argument("parent_type")
@click.argument("child_type")
@click.option("--name", default=None, help="Relationship name (default: the child type's name)")
@click.option("--required", is_flag=True, help="A parent needs at least one such child")
@click.option("--min", "min_count", type=int, default=None, help="Minimum number of children")
@click.option("--max", "max_count", type=int, default=None, help="Maximum number of live children")
@click.option("--auto-create", is_flag=True, help="Create one such child with every new parent")
@click.option("--subject-template", default=None, help="Subject for auto-created children, e.g. 'Review {parent.subject}'")
@click.option("--field-value", "field_values", multiple=True, help="Auto-created field as name=template (repeatable)")
@click.option("--inherit", "inherit_fields", multiple=True, help="Field copied from the parent (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def relationship_define(
    parent_type: str,
    child_type: str,
    name: str | None,
    required: bool,
    min_count: int | None,
    max_count: int | None,
    auto_create: bool,
    subject_template: str | None,
    field_values: tuple[str, ...],
    inherit_fields: tuple[str, ...],
    as_json: bool,
) -> None:
    """Allow CHILD_TYPE items under PARENT_TYPE items."""
    values = parse_pairs(field_values, as_json=as_json)
    config: dict[str, Any] | None = None
    if subject_template or values or inherit_fields:
        config = {
            "subject_template": subject_template,
            "field_values": values,
            "inherit_fields": list(inherit_fields),
        }
    with get_db() as db:
        try:
            rel = db.define_relationship(
                db.get_type(parent_type).id,
                db.get_type(child_type).id,
                name,
                is_required=required,
                min_count=min_count,
                max_count=max_count,
                auto_create=auto_create,
                auto_create_config=config,
            )
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(rel.to_dict())
        else:
            click.echo(f"Defined relationship {rel.id}: {parent_type} -> {child_type} ({rel.relationship_name})")


@relationship_group.command("list")
@click.option("--parent", "parent_type", default=None, help="Only relationships of this parent type")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def relationship_list(parent_type: str | None, as_json: bool) -> None:
    """List relationship definitions."""
    with get_db() as db:
        try:
            parent_id = db.get_type(parent_type).id if parent_type else None
            rels = db.list_relationships(parent_id)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json([r.to_dict() for r in rels])
            return
        types = db.get_config_snapshot().types
        for r in rels:
            parent = types[r.parent_type_id].name if r.parent_type_id in types else r.parent_type_id
            child = types[r.child_type_id].name if r.child_type_id in types else r.child_type_id
            limit = f" max={r.max_count}" if r.max_count is not None else ""
            click.echo(f"  {r.id}  {parent} -> {child} ({r.relationship_name}){limit}")


@relationship_group.command("delete")
@click.argument("relationship_id")
def relationship_delete(relationship_id: str) -> None:
    """Remove a relationship definition. Existing items keep their parents."""
    with get_db() as db:
        try:
            db.delete_relationship(relationship_id)
        except (TrellisError, ValueError) as e:
            fail_with(e)
        click.echo(f"Deleted relationship {relationship_id}")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@click.group("transition")
def transition_group() -> None:
    """Configure status transitions: validation and actions."""


@transition_group.command("define")
@click.argument("type_ref")
@click.argument("from_status")
@click.argument("to_status")
@click.option("--deny", is_flag=True, help="Forbid this transition")
@click.option("--require", "required_fields", multiple=True, help="Field that must be set (repeatable)")
@click.option("--validation", "validation_json", default=None, help="validation_config as JSON")
@click.option("--actions", "actions_json", default=None, help="action_config as JSON")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def transition_define(
    type_ref: str,
    from_status: str,
    to_status: str,
    deny: bool,
    required_fields: tuple[str, ...],
    validation_json: str | None,
    actions_json: str | None,
    as_json: bool,
) -> None:
    """Configure the FROM_STATUS -> TO_STATUS transition of TYPE_REF."""
    validation = load_json_option(validation_json, "validation", as_json=as_json)
    actions = load_json_option(actions_json, "actions", as_json=as_json)
    if required_fields:
        validation = dict(validation or {})
        validation["required_fields"] = [*validation.get("required_fields", []), *required_fields]
    with get_db() as db:
        try:
            wit = db.get_type(type_ref)
            snapshot = db.get_config_snapshot()
            transition = db.define_transition(
                wit.id,
                snapshot.get_status(wit.id, from_status).id,
                snapshot.get_status(wit.id, to_status).id,
                is_allowed=not deny,
                validation_config=validation,
                action_config=actions,
            )
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(transition.to_dict())
        else:
            verb = "Denied" if deny else "Defined"
            click.echo(f"{verb} transition {transition.id}: {wit.name} {from_status} -> {to_status}")


@transition_group.command("list")
@click.option("--type", "type_ref", default=None, help="Only transitions of this type")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def transition_list(type_ref: str | None, as_json: bool) -> None:
    """List configured transitions."""
    with get_db() as db:
        try:
            type_id = db.get_type(type_ref).id if type_ref else None
            transitions = db.list_transitions(type_id)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json([t.to_dict() for t in transitions])
            return
        snapshot = db.get_config_snapshot()
        for t in transitions:
            wit = snapshot.types.get(t.work_item_type_id)
            src = wit.status_by_id(t.from_status_id) if wit else None
            dst = wit.status_by_id(t.to_status_id) if wit else None
            allowed = "" if t.is_allowed else " [denied]"
            click.echo(
                f"  {t.id}  {wit.name if wit else t.work_item_type_id}: "
                f"{src.name if src else t.from_status_id} -> {dst.name if dst else t.to_status_id}{allowed}"
            )


@transition_group.command("delete")
@click.argument("transition_id")
def transition_delete(transition_id: str) -> None:
    """Remove a transition configuration (the pair becomes unrestricted)."""
    with get_db() as db:
        try:
            db.delete_transition(transition_id)
        except (TrellisError, ValueError) as e:
            fail_with(e)
        click.echo(f"Deleted transition {transition_id}")


# ---------------------------------------------------------------------------
# Bulk configuration
# ---------------------------------------------------------------------------


@click.group("config")
def config_group() -> None:
    """Load workflow configuration documents."""


@config_group.command("load")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def config_load(path: Path, as_json: bool) -> None:
    """Load types, relationships and transitions from a JSON file, all or nothing."""
    try:
        doc = json_mod.loads(path.read_text())
    except (json_mod.JSONDecodeError, OSError) as e:
        fail(f"Cannot read {path}: {e}", as_json=as_json)
    with get_db() as db:
        try:
            counts = db.load_configuration(doc)
        except (TrellisError, ValueError) as e:
            fail_with(e, as_json=as_json)
        if as_json:
            echo_json(counts)
        else:
            click.echo(", ".join(f"{n} {kind}" for kind, n in counts.items()))


def register(cli: click.Group) -> None:
    """Register configuration commands with the CLI group."""
    cli.add_command(type_group)
    cli.add_command(relationship_group)
    cli.add_command(transition_group)
    cli.add_command(config_group)
