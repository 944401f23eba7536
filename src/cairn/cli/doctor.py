"""
cairn CLI - Doctor command.

Diagnose and optionally repair the local entity store.
"""

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from cairn.cli.errors import ExitCode
from cairn.cli.project import load_service
from cairn.core.store.atomic import sweep_temp_files

app = typer.Typer(
    name="doctor",
    help="Diagnose and repair the local entity store",
    no_args_is_help=False,
)

console = Console()


@app.callback(invoke_without_command=True)
def doctor(
    ctx: typer.Context,
    fix: bool = typer.Option(
        False,
        "--fix",
        help="Relocate broken references and remove leftover temp files",
    ),
) -> None:
    """
    Diagnose common cairn issues.

    Checks:
    - Git: repository and sync branch
    - Metadata: meta.yml is readable
    - Entities: every entity file parses
    - References: no reference points at a missing or deleted entity
    - Temp files: no leftovers from interrupted writes

    Fix Actions:
    --fix will:
    - Run the integrity sweep (broken references move to the orphan archive)
    - Remove leftover temp files

    Examples:
        cairn doctor              # Run diagnostics
        cairn doctor --fix        # Repair what can be repaired
    """
    debug = ctx.obj.get("debug", False) if ctx.obj else False

    console.print(Panel("[bold]cairn doctor[/bold] - Diagnostic Tool", expand=False))

    service = load_service()
    report = service.check_health()

    for check in report.checks:
        issues = [i for i in report.issues if i.check == check]
        if not issues:
            console.print(f"[green]✓[/green] {check}")
            continue
        console.print(f"[yellow]![/yellow] {check}")
        for issue in issues:
            console.print(f"    {escape(issue.message)}")

    if fix and any(i.fixable for i in report.issues):
        sweep = service.sweep()
        console.print(
            f"\n[green]✓[/green] Relocated {len(sweep.orphans)} reference(s), "
            f"deferred {sweep.deferred} still within the grace period"
        )
        removed = sweep_temp_files(service.data_root, 0)
        console.print(f"[green]✓[/green] Removed {len(removed)} temp file(s)")
        report = service.check_health()

    if debug:
        console.print(f"[dim]Data directory: {service.data_root}[/dim]")

    console.print("\n" + "=" * 60)
    if report.healthy:
        console.print("[green]✓[/green] No issues found")
        raise typer.Exit(0)

    console.print(f"[yellow]![/yellow] Found {len(report.issues)} issue(s)")
    if not fix and any(i.fixable for i in report.issues):
        console.print("\n[dim]Run 'cairn doctor --fix' to repair some issues[/dim]")
    raise typer.Exit(ExitCode.GENERAL_ERROR)
