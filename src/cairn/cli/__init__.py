"""
cairn CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import logging
import sys

import typer
from rich.console import Console

from cairn import __version__
from cairn.cli import attic, doctor, entity, sync

# Help panel names for command grouping
PANEL_ENTITIES = "Work with Entities"
PANEL_SYNC = "Sync and Recover"
PANEL_INSTALL = "Manage Your Installation"

app = typer.Typer(
    name="cairn",
    help="Convergent multi-writer entity store over git",
    no_args_is_help=True,
    add_completion=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def configure_logging(debug: bool) -> None:
    """
    Configure logging for all commands.

    Args:
        debug: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
) -> None:
    """
    cairn - convergent multi-writer entity store over git.

    Writers create and update small records locally, even offline.
    `cairn sync` reconciles every replica through a dedicated git branch,
    merging field by field and keeping every overwritten value in the attic.

    Quick Start:
        cairn create wi -s title="Fix login"     # Create a work item
        cairn update wi-0a1b2c3d4e -s status=closed
        cairn sync                                # Merge and publish

    Recovery:
        cairn attic list                          # Values that lost a merge
        cairn attic restore <ref>                 # Bring one back
        cairn doctor                              # Check store health
    """
    configure_logging(debug)

    ctx.obj = {"debug": debug}


# =============================================================================
# Work with Entities
# =============================================================================

app.command(name="create", rich_help_panel=PANEL_ENTITIES)(entity.create)
app.command(name="update", rich_help_panel=PANEL_ENTITIES)(entity.update)
app.command(name="show", rich_help_panel=PANEL_ENTITIES)(entity.show)
app.command(name="list", rich_help_panel=PANEL_ENTITIES)(entity.list_entities)
app.command(name="delete", rich_help_panel=PANEL_ENTITIES)(entity.delete)
app.command(name="ready", rich_help_panel=PANEL_ENTITIES)(entity.ready)
app.command(name="blocked", rich_help_panel=PANEL_ENTITIES)(entity.blocked)


# =============================================================================
# Sync and Recover
# =============================================================================

app.add_typer(sync.app, name="sync", rich_help_panel=PANEL_SYNC)
app.add_typer(attic.app, name="attic", rich_help_panel=PANEL_SYNC)


# =============================================================================
# Manage Your Installation
# =============================================================================


@app.command(rich_help_panel=PANEL_INSTALL)
def version() -> None:
    """Show cairn version and exit."""
    console.print(f"cairn version {__version__}")
    raise typer.Exit(0)


app.add_typer(doctor.app, name="doctor", rich_help_panel=PANEL_INSTALL)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]
