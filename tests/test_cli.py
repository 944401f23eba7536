"""Tests for the cairn CLI commands."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from cairn import __version__
from cairn.cli import app
from cairn.cli.errors import ExitCode

runner = CliRunner()


def _write_config(root: Path, **extra: object) -> None:
    config = {"store": {"fsync": False}, "node_id": "n-cli", **extra}
    (root / ".cairn.json").write_text(json.dumps(config))


def _create(*assignments: str, type_code: str = "wi") -> str:
    args = ["create", type_code, "--json"]
    for assignment in assignments:
        args += ["-s", assignment]
    result = runner.invoke(app, args)
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)["id"]


@pytest.fixture
def project(git_repo: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A git repository with fast settings, used as the working directory."""
    _write_config(git_repo)
    monkeypatch.chdir(git_repo)
    return git_repo


class TestVersion:
    """Tests for the version command."""

    def test_version(self) -> None:
        """version prints the package version."""
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestEntityCommands:
    """Tests for create, update, show, list and delete."""

    def test_create_and_show(self, project: Path) -> None:
        """A created item can be shown as a table and as JSON."""
        entity_id = _create("title=Fix login", "priority=1", 'labels=["auth"]')

        table = runner.invoke(app, ["show", entity_id])
        assert table.exit_code == 0
        assert "Fix login" in table.output

        raw = runner.invoke(app, ["show", entity_id, "--json"])
        data = json.loads(raw.stdout)
        assert data["priority"] == 1
        assert data["labels"] == ["auth"]
        assert data["version"] == 1

    def test_create_from_data(self, project: Path) -> None:
        """--data supplies all fields as one JSON object."""
        result = runner.invoke(
            app, ["create", "ms", "--data", '{"author": "alice", "body": "Deploy is done"}']
        )
        assert result.exit_code == 0
        assert "Created:" in result.output

    def test_create_unknown_type(self, project: Path) -> None:
        """An unknown type is a user error."""
        result = runner.invoke(app, ["create", "zz", "-s", "title=x"])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "Error:" in result.output

    def test_create_malformed_assignment(self, project: Path) -> None:
        """A --set without '=' is rejected."""
        result = runner.invoke(app, ["create", "wi", "-s", "title"])
        assert result.exit_code == 2

    def test_create_invalid_fields(self, project: Path) -> None:
        """Validation failures exit with a user error."""
        result = runner.invoke(app, ["create", "wi", "-s", "title=x", "-s", "priority=9"])
        assert result.exit_code == ExitCode.USER_ERROR

    def test_update(self, project: Path) -> None:
        """update writes a new version."""
        entity_id = _create("title=Fix login")
        result = runner.invoke(app, ["update", entity_id, "-s", "status=closed"])
        assert result.exit_code == 0
        assert f"Updated: {entity_id} (v2)" in result.output

    def test_update_nothing(self, project: Path) -> None:
        """update without fields is refused."""
        entity_id = _create("title=Fix login")
        result = runner.invoke(app, ["update", entity_id])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "Nothing to update" in result.output

    def test_update_immutable(self, project: Path) -> None:
        """Changing an immutable field is a user error."""
        entity_id = _create("title=Fix login", "created_by=alice")
        result = runner.invoke(app, ["update", entity_id, "-s", "created_by=bob"])
        assert result.exit_code == ExitCode.USER_ERROR

    def test_show_missing(self, project: Path) -> None:
        """Showing an unknown ID is a user error."""
        result = runner.invoke(app, ["show", "wi-0000000009"])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "not found" in result.output.lower()

    def test_show_corrupt(self, project: Path) -> None:
        """A malformed entity file is an integrity error."""
        entity_id = _create("title=Fix login")
        (project / ".cairn" / "data" / "items" / f"{entity_id}.json").write_text("{oops")
        result = runner.invoke(app, ["show", entity_id])
        assert result.exit_code == ExitCode.INTEGRITY_ERROR

    def test_list(self, project: Path) -> None:
        """list shows entities and filters by status and label."""
        empty = runner.invoke(app, ["list"])
        assert "No entities found" in empty.output

        _create("title=Fix login", 'labels=["auth"]')
        closed = _create("title=Old task", "status=closed")

        result = runner.invoke(app, ["list"])
        assert "Fix login" in result.output
        assert "Old task" in result.output

        result = runner.invoke(app, ["list", "items", "--status", "closed", "--json"])
        assert [e["id"] for e in json.loads(result.stdout)] == [closed]

        data = json.loads(runner.invoke(app, ["list", "wi", "--label", "auth", "--json"]).stdout)
        assert [e["title"] for e in data] == ["Fix login"]

    def test_list_skips_unreadable(self, project: Path) -> None:
        """Unreadable files are reported but do not fail the listing."""
        entity_id = _create("title=Fix login")
        _create("title=Healthy")
        (project / ".cairn" / "data" / "items" / f"{entity_id}.json").write_text("{oops")

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "Healthy" in result.output
        assert "Skipped unreadable" in result.output

    def test_delete_force(self, project: Path) -> None:
        """delete --force removes the entity and names the attic entry."""
        entity_id = _create("title=Obsolete")

        result = runner.invoke(app, ["delete", entity_id, "--force"])

        assert result.exit_code == 0
        assert f"Deleted: {entity_id}" in result.output
        assert "Archived as" in result.output
        assert runner.invoke(app, ["show", entity_id]).exit_code == ExitCode.USER_ERROR

    def test_delete_cancelled(self, project: Path) -> None:
        """Declining the prompt keeps the entity."""
        entity_id = _create("title=Keep me")
        result = runner.invoke(app, ["delete", entity_id], input="n\n")
        assert "Cancelled" in result.output
        assert runner.invoke(app, ["show", entity_id]).exit_code == 0

    def test_outside_project(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Commands outside any project exit with guidance."""
        outside = tmp_path / "nowhere"
        outside.mkdir()
        monkeypatch.chdir(outside)
        result = runner.invoke(app, ["list"])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "Not in a cairn project directory" in result.output


class TestDependencyCommands:
    """Tests for ready and blocked."""

    def test_ready_and_blocked(self, project: Path) -> None:
        """A blocked item shows under blocked and not under ready."""
        target = _create("title=Ship release")
        blocker = _create("title=Fix login", f'dependencies=[{{"target": "{target}"}}]')

        ready = json.loads(runner.invoke(app, ["ready", "--json"]).stdout)
        assert [i["id"] for i in ready] == [blocker]

        result = runner.invoke(app, ["blocked", "--json"])
        assert result.exit_code == 0
        assert [(b["id"], b["blocked_by"]) for b in json.loads(result.stdout)] == [
            (target, [blocker])
        ]

        table = runner.invoke(app, ["blocked"])
        assert "Ship release" in table.output

    def test_empty(self, project: Path) -> None:
        """Without items both commands say there is nothing to show."""
        assert "No ready items found" in runner.invoke(app, ["ready"]).output
        assert "No blocked items found" in runner.invoke(app, ["blocked"]).output

    def test_ready_kind_filter(self, project: Path) -> None:
        """--kind narrows the listing; an unknown kind is rejected."""
        _create("title=Crash on start", "kind=bug")
        _create("title=Dark mode", "kind=feature")

        result = runner.invoke(app, ["ready", "--kind", "bug"])
        assert "Crash on start" in result.output
        assert "Dark mode" not in result.output

        assert runner.invoke(app, ["ready", "--kind", "story"]).exit_code == 2


class TestSyncCommands:
    """Tests for sync and sync status."""

    def test_conflicting_flags(self, project: Path) -> None:
        """--no-push and --push-only are mutually exclusive."""
        result = runner.invoke(app, ["sync", "--no-push", "--push-only"])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "Cannot use --no-push with --push-only" in result.output

    def test_sync_without_remote(self, project: Path) -> None:
        """Without a remote the branch is committed locally."""
        _create("title=Fix login")
        result = runner.invoke(app, ["sync"])
        assert result.exit_code == 0, result.output
        assert "1 outbound" in result.output
        assert "no remote configured" in result.output

    def test_status_lifecycle(self, project: Path) -> None:
        """Status is uninitialized before the first sync."""
        before = runner.invoke(app, ["sync", "status"])
        assert before.exit_code == ExitCode.GENERAL_ERROR
        assert "Not initialized" in before.output

        runner.invoke(app, ["sync"])
        after = runner.invoke(app, ["sync", "status", "-v"])
        assert after.exit_code == 0
        assert "No remote branch" in after.output
        assert "n-cli" in after.output

    def test_sync_with_remote(self, git_remote, monkeypatch: pytest.MonkeyPatch) -> None:
        """A full sync pushes; the next one has nothing to do."""
        _remote, alice, _bob = git_remote
        _write_config(alice)
        monkeypatch.chdir(alice)
        _create("title=Fix login")

        first = runner.invoke(app, ["sync", "-v"])
        assert first.exit_code == 0, first.output
        assert "Pushed to remote" in first.output
        assert "attempts: 1" in first.output

        second = runner.invoke(app, ["sync"])
        assert "Already up to date" in second.output

        status = runner.invoke(app, ["sync", "status"])
        assert "Up to date with remote" in status.output

    def test_push_only_uninitialized(self, project: Path) -> None:
        """--push-only before any sync fails."""
        result = runner.invoke(app, ["sync", "--push-only"])
        assert result.exit_code == ExitCode.GENERAL_ERROR
        assert "Push failed" in result.output


class TestAtticCommands:
    """Tests for attic list, show, restore and prune."""

    def test_empty(self, project: Path) -> None:
        """An empty attic says so."""
        assert "Attic is empty" in runner.invoke(app, ["attic", "list"]).output
        assert "No orphaned references" in runner.invoke(app, ["attic", "list", "--orphans"]).output

    def test_restore_deleted_entity(self, project: Path) -> None:
        """A deleted entity is listed in the attic and can be restored."""
        entity_id = _create("title=Obsolete")
        runner.invoke(app, ["delete", entity_id, "--force"])

        listed = runner.invoke(app, ["attic", "list", "--reason", "hard_delete", "--json"])
        entries = json.loads(listed.stdout)
        assert [e["entity_id"] for e in entries] == [entity_id]
        ref = entries[0]["ref"]

        shown = runner.invoke(app, ["attic", "show", ref])
        assert shown.exit_code == 0
        assert "hard_delete" in shown.output

        restored = runner.invoke(app, ["attic", "restore", ref])
        assert restored.exit_code == 0
        assert f"Restored {entity_id} (v2)" in restored.output
        assert runner.invoke(app, ["show", entity_id]).exit_code == 0

    def test_orphans_listed_after_delete(self, project: Path) -> None:
        """References to a deleted entity show up as orphans."""
        parent = _create("title=Epic")
        child = _create("title=Task", f"parent_id={parent}")
        runner.invoke(app, ["delete", parent, "--force"])

        result = runner.invoke(app, ["attic", "list", child, "--orphans", "--json"])

        orphans = json.loads(result.stdout)
        assert [(o["field"], o["target_id"]) for o in orphans] == [("parent_id", parent)]

    def test_restore_unknown_ref(self, project: Path) -> None:
        """An unknown reference is a user error."""
        result = runner.invoke(app, ["attic", "restore", "wi-0000000009/nope"])
        assert result.exit_code == ExitCode.USER_ERROR

    def test_prune_requires_retention(self, project: Path) -> None:
        """Without --days or a configured retention, prune refuses."""
        result = runner.invoke(app, ["attic", "prune"])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "No retention configured" in result.output

    def test_prune_days(self, project: Path) -> None:
        """Recent entries survive a prune."""
        entity_id = _create("title=Obsolete")
        runner.invoke(app, ["delete", entity_id, "--force"])
        result = runner.invoke(app, ["attic", "prune", "--days", "30"])
        assert result.exit_code == 0
        assert "Pruned 0 entries" in result.output


class TestDoctorCommand:
    """Tests for doctor."""

    def test_healthy(self, project: Path) -> None:
        """A clean project has no issues."""
        _create("title=Fix login")
        result = runner.invoke(app, ["doctor"])
        assert result.exit_code == 0
        assert "No issues found" in result.output

    def test_broken_reference(self, project: Path) -> None:
        """A dangling reference is reported and --fix relocates it."""
        _write_config(project, sweep={"grace_hours": 0})
        _create("title=Task", "parent_id=wi-0000000009")

        result = runner.invoke(app, ["doctor"])
        assert result.exit_code == ExitCode.GENERAL_ERROR
        assert "Found 1 issue(s)" in result.output
        assert "doctor --fix" in result.output

        fixed = runner.invoke(app, ["doctor", "--fix"])
        assert fixed.exit_code == 0
        assert "Relocated 1 reference(s)" in fixed.output
        assert "No issues found" in fixed.output
