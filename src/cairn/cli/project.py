"""
Helpers shared by CLI commands: locating the project and parsing field input.
"""

import json
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError

from cairn.cli.errors import ExitCode, print_error, print_not_project_root_error
from cairn.core.service import EntityService


def load_service(project_dir: Path | None = None) -> EntityService:
    """Open the entity service for the current project, or exit with guidance."""
    try:
        return EntityService.from_project_dir(project_dir)
    except FileNotFoundError:
        print_not_project_root_error()
        raise typer.Exit(ExitCode.USER_ERROR)
    except ValidationError as e:
        print_error(
            "Invalid configuration",
            reason=str(e),
            solution="Check .cairn.json and ~/.config/cairn/config.json",
        )
        raise typer.Exit(ExitCode.USER_ERROR)


def parse_value(raw: str) -> Any:
    """Interpret `raw` as JSON when it parses, otherwise as a plain string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def parse_fields(assignments: list[str] | None, data: str | None = None) -> dict[str, Any]:
    """
    Build a field dict from `--data` JSON and `--set key=value` pairs.

    Pairs are applied after `--data`, so they win on overlap.

    Raises:
        typer.BadParameter: On malformed input
    """
    fields: dict[str, Any] = {}
    if data:
        try:
            loaded = json.loads(data)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"--data is not valid JSON: {e}") from e
        if not isinstance(loaded, dict):
            raise typer.BadParameter("--data must be a JSON object")
        fields.update(loaded)

    for assignment in assignments or []:
        key, sep, raw = assignment.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {assignment!r}")
        fields[key.strip()] = parse_value(raw)
    return fields
