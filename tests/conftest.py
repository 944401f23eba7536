"""
Pytest configuration and shared fixtures.

Provides temp git repositories (with and without a bare remote), entity
stores and services wired for fast tests, and sample entities.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from cairn.core.attic import AtticStore
from cairn.core.config import CairnConfig, StoreConfig, clear_cache
from cairn.core.entities.models import WorkItem
from cairn.core.service import EntityService
from cairn.core.store import EntityStore
from cairn.core.sync.retry import RetryPolicy

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def run_git(repo: Path, *args: str) -> str:
    """Run a git command in `repo` and return its stdout."""
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, check=True, text=True
    )
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    """Create a git repository with a test identity."""
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, capture_output=True, check=True)
    run_git(path, "config", "user.email", "test@example.com")
    run_git(path, "config", "user.name", "Test User")
    run_git(path, "config", "commit.gpgsign", "false")
    return path


def no_sleep_retry(max_attempts: int = 5) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, sleep=lambda _delay: None)


# ==============================================================================
# Environment Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep user config, CAIRN_* variables and the config cache out of tests."""
    for name in (
        "CAIRN_NODE_ID",
        "CAIRN_SYNC_BRANCH",
        "CAIRN_SYNC_REMOTE",
        "CAIRN_SYNC_MAX_ATTEMPTS",
        "CAIRN_THREE_WAY_UNION",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    clear_cache()
    yield
    clear_cache()


# ==============================================================================
# Git Fixtures
# ==============================================================================


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository for testing."""
    return init_repo(tmp_path / "repo")


@pytest.fixture
def git_remote(tmp_path: Path) -> tuple[Path, Path, Path]:
    """
    Create a bare remote and two replicas pointing at it.

    Returns:
        Tuple of (remote_path, alice_repo, bob_repo).
    """
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", str(remote)], capture_output=True, check=True)

    replicas = []
    for name in ("alice", "bob"):
        repo = init_repo(tmp_path / name)
        run_git(repo, "remote", "add", "origin", str(remote))
        replicas.append(repo)

    return remote, replicas[0], replicas[1]


# ==============================================================================
# Store and Service Fixtures
# ==============================================================================


@pytest.fixture
def store(tmp_path: Path) -> EntityStore:
    """Entity store over a temp data root, without fsync."""
    return EntityStore(tmp_path / "data", config=StoreConfig(fsync=False))


@pytest.fixture
def attic(store: EntityStore) -> AtticStore:
    """Attic sharing the store's data root."""
    return AtticStore(store.root, fsync=False)


@pytest.fixture
def make_service() -> Callable[..., EntityService]:
    """
    Factory for entity services with fast, deterministic settings.

    Extra keyword arguments are passed to CairnConfig.
    """

    def _make(
        repo: Path, node_id: str = "n-test", max_attempts: int = 5, **config: Any
    ) -> EntityService:
        config.setdefault("store", StoreConfig(fsync=False))
        return EntityService(
            repo,
            CairnConfig(node_id=node_id, **config),
            retry=no_sleep_retry(max_attempts),
        )

    return _make


@pytest.fixture
def service(git_repo: Path, make_service: Callable[..., EntityService]) -> EntityService:
    """Entity service for a fresh repository without a remote."""
    return make_service(git_repo)


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================


@pytest.fixture
def make_item() -> Callable[..., WorkItem]:
    """Factory for work items with fixed timestamps."""

    def _make(entity_id: str = "wi-0000000001", **fields: Any) -> WorkItem:
        fields.setdefault("title", "Fix login")
        fields.setdefault("created_at", T0)
        fields.setdefault("updated_at", T0)
        return WorkItem(id=entity_id, **fields)

    return _make
