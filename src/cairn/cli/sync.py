"""
cairn CLI - Sync command for git-based entity synchronization.

Provides CLI interface to the sync service for reconciling entity state
through the sync branch without affecting the working tree.
"""

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cairn.cli.errors import (
    ExitCode,
    exit_code_for,
    print_cairn_error,
    print_not_git_repo_error,
)
from cairn.cli.project import load_service
from cairn.core.exceptions import CairnError
from cairn.core.sync import SyncReport, SyncStatus

console = Console()
app = typer.Typer(
    name="sync",
    help="Sync entity state through the git sync branch",
    no_args_is_help=False,
)


def _print_report(report: SyncReport, verbose: bool) -> None:
    if not report.success:
        label = report.operation.capitalize()
        console.print(f"[red]{label} failed:[/red] {escape(report.message)}")
        return

    if report.commit_sha:
        console.print(f"[green]✓[/green] Branch at {report.commit_sha[:8]}")
    if report.changed == 0 and not report.errors:
        console.print("[green]✓[/green] Already up to date")
    else:
        counts = [
            (report.inbound, "inbound"),
            (report.outbound, "outbound"),
            (report.merged, "merged"),
            (report.fast_forwarded, "fast-forwarded"),
            (report.deleted, "deleted"),
        ]
        details = ", ".join(f"{n} {label}" for n, label in counts if n)
        if details:
            console.print(f"[green]✓[/green] {details}")
    if report.attic_entries:
        console.print(
            f"[yellow]⚠[/yellow]  Archived {len(report.attic_entries)} conflicting value(s); "
            "see [bold]cairn attic list[/bold]"
        )
    for error in report.errors:
        console.print(
            f"[red]✗[/red] {error.entity_id} ({error.kind}): {escape(error.message)}"
        )
    if report.pushed:
        console.print("[green]✓[/green] Pushed to remote")
    if report.message:
        console.print(f"[dim]{escape(report.message)}[/dim]")

    if verbose:
        for conflict in report.conflicts:
            archived = ", ".join(conflict.archived_fields) or "nothing archived"
            console.print(
                f"  [dim]{conflict.entity_id}: {conflict.winner} won "
                f"(v{conflict.local_version} vs v{conflict.remote_version}), {archived}[/dim]"
            )
        console.print(f"  [dim]attempts: {report.attempts}[/dim]")


@app.callback(invoke_without_command=True)
def sync(
    ctx: typer.Context,
    no_push: bool = typer.Option(
        False,
        "--no-push",
        help="Fetch and merge remote changes, commit locally, do not push",
    ),
    push_only: bool = typer.Option(
        False,
        "--push-only",
        help="Push the local sync branch without fetching or merging",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show per-entity merge details",
    ),
) -> None:
    """
    Reconcile local entities with the sync branch.

    By default fetches the remote branch, merges field by field, commits and
    pushes, retrying with backoff when another writer pushed first. Values
    that lose a merge are kept in the attic.

    Examples:
        cairn sync                  # Full sync: fetch, merge, commit, push
        cairn sync --no-push        # Merge remote changes, commit locally
        cairn sync --push-only      # Push the local branch as-is
    """
    # If a subcommand was invoked, don't run the default action
    if ctx.invoked_subcommand is not None:
        return

    if no_push and push_only:
        console.print("[red]Error:[/red] Cannot use --no-push with --push-only")
        raise typer.Exit(ExitCode.USER_ERROR)

    service = load_service()
    if not service.sync_service.git.is_repo():
        print_not_git_repo_error()
        raise typer.Exit(ExitCode.USER_ERROR)

    try:
        if push_only:
            report = service.push()
        elif no_push:
            report = service.pull()
        else:
            report = service.sync()
    except CairnError as e:
        print_cairn_error(e)
        raise typer.Exit(exit_code_for(e))

    _print_report(report, verbose)
    if not report.success:
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    if report.errors:
        raise typer.Exit(ExitCode.INTEGRITY_ERROR)


@app.command()
def status(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show detailed status information",
    ),
) -> None:
    """
    Show sync status.

    Displays the current state of the sync branch, including whether
    it's up-to-date, ahead, or behind the remote.

    Examples:
        cairn sync status           # Show basic sync status
        cairn sync status -v        # Show detailed status with timestamps
    """
    service = load_service()
    try:
        sync_status = service.sync_status()
    except CairnError as e:
        print_cairn_error(e)
        raise typer.Exit(exit_code_for(e))
    state = service.sync_service.get_state()

    status_icons = {
        SyncStatus.UP_TO_DATE: ("✓", "green", "Up to date with remote"),
        SyncStatus.AHEAD: ("↑", "yellow", "Local changes not pushed"),
        SyncStatus.BEHIND: ("↓", "yellow", "Remote changes available"),
        SyncStatus.DIVERGED: ("⚠", "red", "Local and remote have diverged"),
        SyncStatus.NO_REMOTE: ("○", "blue", "No remote branch"),
        SyncStatus.UNINITIALIZED: ("✗", "red", "Not initialized"),
    }

    icon, color, message = status_icons[sync_status]
    console.print(f"[{color}]{icon}[/{color}] {message}")

    if sync_status == SyncStatus.UNINITIALIZED:
        console.print("\nRun [bold]cairn sync[/bold] to create the sync branch.")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    if verbose:
        table = Table(title="Sync Details", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")

        table.add_row("Node", state.node_id)
        table.add_row("Branch", state.branch_name)
        table.add_row("Remote", state.remote_name)

        if state.last_commit_sha:
            table.add_row("Last commit", state.last_commit_sha[:8])

        if state.last_sync_at:
            table.add_row("Last synced", state.last_sync_at.strftime("%Y-%m-%d %H:%M:%S"))

        if state.last_push_at:
            table.add_row("Last pushed", state.last_push_at.strftime("%Y-%m-%d %H:%M:%S"))
        elif state.last_commit_sha:
            table.add_row("Last pushed", "[dim]Never[/dim]")

        console.print()
        console.print(table)

    if sync_status in (SyncStatus.AHEAD, SyncStatus.BEHIND, SyncStatus.DIVERGED):
        console.print("\n[dim]→ Run [bold]cairn sync[/bold] to reconcile[/dim]")


__all__ = ["app"]
