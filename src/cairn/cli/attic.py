"""
cairn CLI - Attic commands.

Browse and restore values that lost a merge, were overwritten by a restore,
or were removed by a hard delete, plus references moved to the orphan archive.
"""

import json
from datetime import datetime, timedelta, timezone

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cairn.cli.errors import ExitCode, exit_code_for, print_cairn_error, print_error
from cairn.cli.project import load_service
from cairn.core.attic import AtticEntry, AtticFilter, AtticReason
from cairn.core.attic.store import dump_entry
from cairn.core.exceptions import CairnError

console = Console()
app = typer.Typer(
    name="attic",
    help="Browse and restore archived values",
    no_args_is_help=True,
)


def _preview(value: object, width: int = 60) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    text = text.replace("\n", " ")
    return text if len(text) <= width else text[: width - 1] + "…"


@app.command(name="list")
def list_entries(
    entity_id: str | None = typer.Argument(None, help="Only entries for this entity"),
    field: str | None = typer.Option(
        None,
        "--field",
        help="Only entries for this field",
    ),
    reason: AtticReason | None = typer.Option(
        None,
        "--reason",
        help="Only entries archived for this reason",
    ),
    since: datetime | None = typer.Option(
        None,
        "--since",
        help="Only entries archived at or after this time (UTC)",
    ),
    orphans: bool = typer.Option(
        False,
        "--orphans",
        help="List orphaned references instead of conflict entries",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    List attic entries, oldest first.

    Examples:
        cairn attic list
        cairn attic list wi-0a1b2c3d4e --field title
        cairn attic list --reason hard_delete
        cairn attic list --orphans
    """
    service = load_service()

    if orphans:
        orphan_entries = service.list_orphans(entity_id)
        if json_output:
            data = [dict(e.model_dump(mode="json"), ref=e.ref) for e in orphan_entries]
            typer.echo(json.dumps(data, indent=2, ensure_ascii=False))
            return
        if not orphan_entries:
            console.print("[dim]No orphaned references[/dim]")
            return
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Ref", style="dim", overflow="fold")
        table.add_column("Field")
        table.add_column("Target")
        table.add_column("Reason")
        table.add_column("Removed", justify="center")
        for orphan in orphan_entries:
            table.add_row(
                orphan.ref,
                orphan.field,
                orphan.target_id or "",
                str(orphan.reason),
                "yes" if orphan.removed else "no",
            )
        console.print(table)
        return

    filter = AtticFilter(entity_id=entity_id, field=field, reason=reason, since=since)
    entries = service.list_attic(filter)

    if json_output:
        data = [dict(e.model_dump(mode="json"), ref=e.ref) for e in entries]
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False))
        return
    if not entries:
        console.print("[dim]Attic is empty[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Ref", style="dim", overflow="fold")
    table.add_column("Field")
    table.add_column("Reason")
    table.add_column("Lost value", overflow="fold")
    for entry in entries:
        table.add_row(entry.ref, entry.field, str(entry.reason), escape(_preview(entry.lost_value)))
    console.print(table)


@app.command()
def show(
    ref: str = typer.Argument(..., help="Entry reference (<id>/<stem>, <stem>, or <id>@<time>)"),
) -> None:
    """
    Show one attic entry in full.

    Examples:
        cairn attic show wi-0a1b2c3d4e/20260101T120000000000Z_title_1a2b3c
        cairn attic show wi-0a1b2c3d4e@2026-01-01T12:00:00Z
    """
    service = load_service()
    try:
        entry = service.show_attic(ref)
    except CairnError as e:
        print_cairn_error(e)
        raise typer.Exit(exit_code_for(e))

    kind = "conflict" if isinstance(entry, AtticEntry) else "orphan"
    console.print(f"[bold]{entry.ref}[/bold] [dim]({kind})[/dim]")
    typer.echo(dump_entry(entry), nl=False)


@app.command()
def restore(
    ref: str = typer.Argument(..., help="Entry reference to restore"),
) -> None:
    """
    Reapply an archived value as a new version of its entity.

    The value being replaced is archived first, so a restore can itself be
    undone. Restoring a deleted entity recreates it.

    Examples:
        cairn attic restore wi-0a1b2c3d4e/20260101T120000000000Z_title_1a2b3c
    """
    service = load_service()
    try:
        entity = service.restore(ref)
    except CairnError as e:
        print_cairn_error(e)
        raise typer.Exit(exit_code_for(e))

    console.print(f"[green]✓[/green] Restored {entity.id} (v{entity.version})")
    console.print("[dim]→ Run [bold]cairn sync[/bold] to publish the restored value[/dim]")


@app.command()
def prune(
    days: int | None = typer.Option(
        None,
        "--days",
        min=1,
        help="Remove entries older than this many days (defaults to attic.retention_days)",
    ),
) -> None:
    """
    Remove old attic entries from the local working copy.

    Examples:
        cairn attic prune --days 90
    """
    service = load_service()
    if days is None and service.config.attic.retention_days is None:
        print_error(
            "No retention configured",
            reason="attic.retention_days is unset, so nothing is old enough to prune",
            solution="cairn attic prune --days 90",
        )
        raise typer.Exit(ExitCode.USER_ERROR)

    older_than = None
    if days is not None:
        older_than = datetime.now(timezone.utc) - timedelta(days=days)
    removed = service.prune_attic(older_than)
    console.print(f"[green]✓[/green] Pruned {removed} entr{'y' if removed == 1 else 'ies'}")


__all__ = ["app"]
