"""
cairn CLI - Entity commands.

Thin wrappers over EntityService.create/update/get/list/hard_delete and the
ready/blocked queries.
"""

import json

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cairn.cli.errors import ExitCode, exit_code_for, print_cairn_error, print_error
from cairn.cli.project import load_service, parse_fields
from cairn.core.entities.canonical import canonical_json
from cairn.core.entities.models import AgentRecord, BaseEntity, ItemKind, Message, WorkItem
from cairn.core.exceptions import CairnError

console = Console()


def _summary(entity: BaseEntity) -> str:
    if isinstance(entity, WorkItem):
        return entity.title
    if isinstance(entity, AgentRecord):
        return entity.name
    if isinstance(entity, Message):
        if entity.subject or not entity.body:
            return entity.subject
        return entity.body.splitlines()[0]
    return ""


def _status(entity: BaseEntity) -> str:
    return str(getattr(entity, "status", "") or "")


def _fail(error: CairnError) -> typer.Exit:
    print_cairn_error(error)
    return typer.Exit(exit_code_for(error))


def create(
    type_code: str = typer.Argument(..., help="Entity type: wi (item), ag (agent), ms (message)"),
    assignments: list[str] | None = typer.Option(
        None,
        "--set",
        "-s",
        help="Field value as key=value; values are parsed as JSON when possible (repeatable)",
    ),
    data: str | None = typer.Option(
        None,
        "--data",
        help="All fields as one JSON object",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    Create a new entity with a fresh ID.

    Examples:
        cairn create wi -s title="Fix login" -s priority=1
        cairn create wi -s title="Write tests" -s 'labels=["testing"]'
        cairn create ms --data '{"author": "alice", "body": "Deploy is done"}'
    """
    fields = parse_fields(assignments, data)
    service = load_service()
    try:
        entity = service.create(type_code, fields)
    except CairnError as e:
        raise _fail(e)

    if json_output:
        typer.echo(canonical_json(entity), nl=False)
    else:
        console.print(f"[green]Created:[/green] {entity.id}")


def update(
    entity_id: str = typer.Argument(..., help="ID of the entity to update"),
    assignments: list[str] | None = typer.Option(
        None,
        "--set",
        "-s",
        help="Field value as key=value; values are parsed as JSON when possible (repeatable)",
    ),
    data: str | None = typer.Option(
        None,
        "--data",
        help="Changed fields as one JSON object",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    Update fields of an entity (writes a new version).

    Examples:
        cairn update wi-0a1b2c3d4e -s status=in_progress
        cairn update wi-0a1b2c3d4e -s assignee=null
    """
    fields = parse_fields(assignments, data)
    if not fields:
        print_error("Nothing to update", solution="Pass at least one --set key=value")
        raise typer.Exit(ExitCode.USER_ERROR)

    service = load_service()
    try:
        entity = service.update(entity_id, fields)
    except CairnError as e:
        raise _fail(e)

    if json_output:
        typer.echo(canonical_json(entity), nl=False)
    else:
        console.print(f"[green]Updated:[/green] {entity.id} (v{entity.version})")


def show(
    entity_id: str = typer.Argument(..., help="ID of the entity to display"),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    Show one entity.

    Examples:
        cairn show wi-0a1b2c3d4e
        cairn show wi-0a1b2c3d4e --json
    """
    service = load_service()
    try:
        entity = service.get(entity_id)
    except CairnError as e:
        raise _fail(e)

    if json_output:
        typer.echo(canonical_json(entity), nl=False)
        return

    table = Table(title=entity.id, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", overflow="fold")
    for name, value in entity.model_dump(mode="json").items():
        if name in ("id", "type"):
            continue
        if isinstance(value, (list, dict)):
            if not value:
                continue
            value = json.dumps(value, ensure_ascii=False, sort_keys=True)
        elif value is None or value == "":
            continue
        table.add_row(name, escape(str(value)))
    console.print(table)


def list_entities(
    collection: str | None = typer.Argument(
        None, help="Collection or type (items/wi, agents/ag, messages/ms); all when omitted"
    ),
    status: str | None = typer.Option(
        None,
        "--status",
        help="Only entities with this status",
    ),
    label: str | None = typer.Option(
        None,
        "--label",
        "-l",
        help="Only work items carrying this label",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    List entities.

    Unreadable entity files are reported and skipped.

    Examples:
        cairn list
        cairn list items --status open
        cairn list wi --label auth --json
    """
    service = load_service()
    try:
        result = service.list(collection)
    except CairnError as e:
        raise _fail(e)

    entities = result.entities
    if status:
        entities = [e for e in entities if _status(e) == status]
    if label:
        entities = [e for e in entities if label in getattr(e, "labels", [])]

    if json_output:
        typer.echo(json.dumps([e.model_dump(mode="json") for e in entities], indent=2))
    elif not entities:
        console.print("[dim]No entities found[/dim]")
    else:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("ID", style="dim")
        table.add_column("Status", width=12)
        table.add_column("Summary", overflow="fold")
        table.add_column("v", justify="right")
        for entity in entities:
            table.add_row(entity.id, _status(entity), escape(_summary(entity)), str(entity.version))
        console.print(table)

    for error in result.errors:
        console.print(f"[yellow]⚠[/yellow]  Skipped unreadable {escape(str(error.path))}")


def delete(
    entity_id: str = typer.Argument(..., help="ID of the entity to delete"),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Skip confirmation prompt",
    ),
) -> None:
    """
    Delete an entity permanently.

    References to it are moved to the orphan archive and the entity itself is
    archived in the attic, so it can still be restored. Prefer closing a work
    item over deleting it.

    Examples:
        cairn delete wi-0a1b2c3d4e           # Shows confirmation prompt
        cairn delete wi-0a1b2c3d4e --force   # Skips prompt
    """
    service = load_service()
    try:
        entity = service.get(entity_id)
    except CairnError as e:
        raise _fail(e)

    if not force:
        confirmation = typer.confirm(
            f"Delete {entity_id} '{_summary(entity)}'?",
            default=False,
        )
        if not confirmation:
            console.print("[yellow]Cancelled.[/yellow]")
            raise typer.Exit(0)

    try:
        entry = service.hard_delete(entity_id)
    except CairnError as e:
        raise _fail(e)

    console.print(f"[green]Deleted:[/green] {entity_id}")
    console.print(f"[dim]Archived as {entry.ref}[/dim]")


def ready(
    kind: ItemKind | None = typer.Option(
        None,
        "--kind",
        "-k",
        help="Only items of this kind",
    ),
    limit: int | None = typer.Option(
        None,
        "--limit",
        "-n",
        min=1,
        help="Show at most this many items",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    List work items ready to pick up.

    Ready items are open, unassigned, and not blocked by any item that is
    still open. Highest priority first.

    Examples:
        cairn ready
        cairn ready --kind bug --limit 5
    """
    service = load_service()
    items = service.ready(kind=kind, limit=limit)

    if json_output:
        typer.echo(json.dumps([i.model_dump(mode="json") for i in items], indent=2))
        return
    if not items:
        console.print("[dim]No ready items found[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("P", justify="right", width=3)
    table.add_column("Kind", width=8)
    table.add_column("Title", overflow="fold")
    for item in items:
        table.add_row(item.id, str(item.priority), str(item.kind), escape(item.title))
    console.print(table)


def blocked(
    limit: int | None = typer.Option(
        None,
        "--limit",
        "-n",
        min=1,
        help="Show at most this many items",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    List work items that cannot be worked on.

    An item is blocked when its status is `blocked`, or when another item
    that is still open blocks it through a `blocks` dependency.

    Examples:
        cairn blocked
        cairn blocked --json
    """
    service = load_service()
    found = service.blocked(limit=limit)

    if json_output:
        data = [
            {
                **b.item.model_dump(mode="json"),
                "blocked_by": [blocker.id for blocker in b.blockers],
            }
            for b in found
        ]
        typer.echo(json.dumps(data, indent=2))
        return
    if not found:
        console.print("[green]No blocked items found[/green]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("P", justify="right", width=3)
    table.add_column("Title", overflow="fold")
    table.add_column("Blocked by", overflow="fold")
    for b in found:
        if b.explicitly_blocked:
            blocked_by = "[dim](status blocked)[/dim]"
        else:
            blocked_by = ", ".join(blocker.id for blocker in b.blockers)
        table.add_row(b.item.id, str(b.item.priority), escape(b.item.title), blocked_by)
    console.print(table)
