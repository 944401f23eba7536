"""
Data models for the sync service.

Defines Pydantic models for sync state, per-entity conflicts and errors,
and the report returned by a sync cycle.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from cairn.core.entities.models import utc_now


class SyncStatus(str, Enum):
    """Status of sync branch relative to remote."""

    UP_TO_DATE = "up_to_date"
    AHEAD = "ahead"
    BEHIND = "behind"
    DIVERGED = "diverged"
    NO_REMOTE = "no_remote"
    UNINITIALIZED = "uninitialized"


class SyncPhase(str, Enum):
    """Phases of one sync attempt, in order."""

    FETCHING = "fetching"
    COMPARING = "comparing"
    MERGING = "merging"
    STAGING = "staging"
    COMMITTING = "committing"
    PUSHING = "pushing"
    DONE = "done"
    REJECTED = "rejected"


class SyncState(BaseModel):
    """
    Persistent local sync state stored in `.cairn/.sync-state.json`.

    This file is local to one replica and is never pushed.

    Example:
        >>> state = SyncState(node_id="n-1a2b3c", branch_name="cairn-sync")
        >>> state.has_unpushed_changes()
        False
    """

    node_id: str = Field(description="Stable identifier of this replica")

    branch_name: str = Field(
        default="cairn-sync",
        description="Name of the sync branch",
    )

    remote_name: str = Field(
        default="origin",
        description="Name of the remote to sync with",
    )

    # Last sync information
    last_commit_sha: str | None = Field(
        default=None,
        description="SHA of the local branch tip after the last sync",
    )

    last_sync_at: datetime | None = Field(
        default=None,
        description="Timestamp of the last sync",
    )

    last_push_sha: str | None = Field(
        default=None,
        description="SHA of the last pushed commit",
    )

    last_push_at: datetime | None = Field(
        default=None,
        description="Timestamp of the last push",
    )

    def has_unpushed_changes(self) -> bool:
        """Check if there are local commits not pushed to remote."""
        if self.last_commit_sha is None:
            return False
        return self.last_commit_sha != self.last_push_sha

    def mark_synced(self, commit_sha: str) -> None:
        """Update state after a successful local sync."""
        self.last_commit_sha = commit_sha
        self.last_sync_at = utc_now()

    def mark_pushed(self) -> None:
        """Update state after a successful push."""
        self.last_push_sha = self.last_commit_sha
        self.last_push_at = utc_now()


class EntityConflict(BaseModel):
    """
    An entity that was changed on both sides and merged.

    Captures both versions and what the merge archived.
    """

    entity_id: str = Field(description="ID of the merged entity")

    local_version: int = Field(default=0)
    remote_version: int = Field(default=0)

    local_updated_at: datetime | None = Field(
        default=None,
        description="When the local version was last modified",
    )

    remote_updated_at: datetime | None = Field(
        default=None,
        description="When the remote version was last modified",
    )

    winner: str = Field(
        default="",
        description="Side that won last-writer-wins decisions (local or remote)",
    )

    archived_fields: list[str] = Field(
        default_factory=list,
        description="Fields whose losing value went to the attic",
    )


class EntityError(BaseModel):
    """A per-entity failure that did not abort the sync."""

    entity_id: str
    kind: str = Field(description="parse or integrity")
    message: str
    path: str | None = None


class SyncReport(BaseModel):
    """
    Result of a sync operation.

    Provides detailed feedback about what happened during the sync.
    """

    success: bool = Field(default=True, description="Whether the operation succeeded")

    operation: str = Field(
        default="sync",
        description="Type of operation (sync, pull, push)",
    )

    commit_sha: str | None = Field(
        default=None,
        description="SHA of the local branch tip after the operation",
    )

    pushed: bool = Field(default=False, description="Whether the branch was pushed")

    attempts: int = Field(default=0, description="Fetch/merge/push attempts used")

    message: str = Field(
        default="",
        description="Human-readable result message",
    )

    inbound: int = Field(default=0, description="Entities adopted from remote")
    outbound: int = Field(default=0, description="Local-only entities published")
    merged: int = Field(default=0, description="Entities merged field by field")
    fast_forwarded: int = Field(default=0, description="Entities updated to the remote copy")
    deleted: int = Field(default=0, description="Entities removed by tombstones")

    conflicts: list[EntityConflict] = Field(
        default_factory=list,
        description="Entities changed on both sides",
    )

    attic_entries: list[str] = Field(
        default_factory=list,
        description="References of attic entries written by this sync",
    )

    errors: list[EntityError] = Field(
        default_factory=list,
        description="Per-entity parse errors and integrity violations",
    )

    phases: list[SyncPhase] = Field(
        default_factory=list,
        description="Phases visited, across all attempts",
    )

    # Timing
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)

    @property
    def duration_seconds(self) -> float | None:
        """Calculate operation duration in seconds."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return delta.total_seconds()
        return None

    @property
    def changed(self) -> int:
        return self.inbound + self.outbound + self.merged + self.fast_forwarded + self.deleted

    def reset_counts(self) -> None:
        """Clear per-attempt results before retrying."""
        self.inbound = self.outbound = self.merged = self.fast_forwarded = self.deleted = 0
        self.conflicts = []
        self.errors = []

    def summary(self) -> str:
        """Generate a human-readable summary of the result."""
        if not self.success:
            return f"{self.operation} failed: {self.message}"

        parts = [f"{self.operation} succeeded"]

        if self.commit_sha:
            parts.append(f"commit {self.commit_sha[:8]}")

        counts = [
            (self.inbound, "inbound"),
            (self.outbound, "outbound"),
            (self.merged, "merged"),
            (self.fast_forwarded, "fast-forwarded"),
            (self.deleted, "deleted"),
        ]
        for count, label in counts:
            if count:
                parts.append(f"{count} {label}")

        if self.attic_entries:
            parts.append(f"{len(self.attic_entries)} values archived")

        if self.errors:
            parts.append(f"{len(self.errors)} entity errors")

        if self.pushed:
            parts.append("pushed")

        if self.message:
            parts.append(self.message)

        return ", ".join(parts)
