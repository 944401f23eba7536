"""
Standardized error handling and exit codes for the cairn CLI.

This module provides consistent error messaging with actionable guidance
and standardized exit codes across all CLI commands.
"""

from enum import IntEnum

from rich.console import Console
from rich.markup import escape

from cairn.core.exceptions import (
    AtticEntryNotFoundError,
    CairnError,
    EntityNotFoundError,
    GitError,
    IntegrityError,
    InvalidChangeError,
    ParseError,
    RestoreError,
    SyncRetryExhaustedError,
    UnknownEntityTypeError,
)

console = Console()


class ExitCode(IntEnum):
    """Standard exit codes for cairn CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error (git failure, exhausted retries, I/O)."""

    USER_ERROR = 2
    """Bad input or unknown ID (actionable by user)."""

    INTEGRITY_ERROR = 3
    """Immutable data diverged or stored data is corrupt; needs an operator."""

    SIGINT = 130
    """Terminated by SIGINT (Ctrl+C) - Unix standard."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Args:
        problem: Brief description of what went wrong
        reason: Optional explanation of why it happened
        solution: Optional command or action to fix it

    Example:
        >>> print_error(
        ...     "Entity not found: wi-0a1b2c3d4e",
        ...     reason="The ID may be mistyped or not synced yet",
        ...     solution="cairn sync",
        ... )
    """
    console.print(f"[red]Error:[/red] {escape(problem)}")

    if reason:
        console.print(f"[dim]{escape(reason)}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def print_not_git_repo_error() -> None:
    """Print error when not in a git repository."""
    print_error(
        "Not a git repository",
        reason="cairn distributes entities through a git branch",
        solution="git init  # or cd to your project root",
    )


def print_not_project_root_error() -> None:
    """Print error when no project root can be found."""
    print_error(
        "Not in a cairn project directory",
        reason="Could not find .cairn/, .cairn.json, or .git/",
        solution="git init  # or cd to your project root",
    )


def print_sync_not_initialized_error() -> None:
    """Print error when the sync branch does not exist yet."""
    print_error(
        "Sync branch not initialized",
        reason="The sync branch is created by the first sync",
        solution="cairn sync",
    )


def print_cairn_error(error: CairnError) -> None:
    """Print a core exception with guidance matching its type."""
    if isinstance(error, EntityNotFoundError):
        print_error(
            str(error),
            reason="The ID may be mistyped or the entity may not have synced in yet",
            solution="cairn list  # or cairn sync",
        )
    elif isinstance(error, UnknownEntityTypeError):
        print_error(str(error), solution="Use one of the registered types: wi, ag, ms")
    elif isinstance(error, AtticEntryNotFoundError):
        print_error(
            str(error),
            reason="A reference must match exactly one entry",
            solution="cairn attic list  # to see entry references",
        )
    elif isinstance(error, IntegrityError):
        print_error(
            str(error),
            reason="Two copies disagree on a field that may never change",
            solution="Inspect both copies and repair the entity file by hand",
        )
    elif isinstance(error, ParseError):
        print_error(
            str(error),
            reason=f"Malformed content in {error.path}" if error.path else None,
            solution="cairn doctor",
        )
    elif isinstance(error, SyncRetryExhaustedError):
        print_error(
            str(error),
            reason="Local state is intact; the next sync resumes from it",
            solution="cairn sync",
        )
    elif isinstance(error, GitError):
        print_error(str(error), reason=error.stderr or None)
    else:
        print_error(str(error))


def exit_code_for(error: Exception) -> ExitCode:
    """Exit code for an exception escaping a command."""
    if isinstance(error, (IntegrityError, ParseError)):
        return ExitCode.INTEGRITY_ERROR
    if isinstance(
        error,
        (
            EntityNotFoundError,
            UnknownEntityTypeError,
            InvalidChangeError,
            AtticEntryNotFoundError,
            RestoreError,
        ),
    ):
        return ExitCode.USER_ERROR
    return ExitCode.GENERAL_ERROR


__all__ = [
    "ExitCode",
    "console",
    "exit_code_for",
    "print_cairn_error",
    "print_error",
    "print_not_git_repo_error",
    "print_not_project_root_error",
    "print_sync_not_initialized_error",
]
