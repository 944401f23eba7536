"""
Data models for merge results.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cairn.core.entities.models import BaseEntity


class Side(str, Enum):
    """Which copy of an entity a value came from."""

    LOCAL = "local"
    REMOTE = "remote"

    @property
    def other(self) -> Side:
        return Side.REMOTE if self is Side.LOCAL else Side.LOCAL


class Resolution(str, Enum):
    """Action the sync manager takes for one entity."""

    NOOP = "noop"
    """Absent on both sides."""

    OUTBOUND = "outbound"
    """Only the local copy exists; publish it."""

    INBOUND = "inbound"
    """Only the remote copy exists; adopt it."""

    IN_SYNC = "in_sync"
    """Both copies hash equal."""

    FAST_FORWARD = "fast_forward"
    """Local is unchanged since the common ancestor; take remote."""

    KEEP_LOCAL = "keep_local"
    """Remote is unchanged since the common ancestor; keep local."""

    MERGE = "merge"
    """Both copies changed; run the merge engine."""


class Discard(BaseModel):
    """
    A value that lost a merge and must be archived.

    Attributes:
        entity_id: Entity the value belonged to
        field: Field name, `extensions.<ns>` for a namespace, or the list
            field name for a keyed item
        lost_value: The losing value (JSON-compatible)
        winner_value: The value that was kept
        winner_source: Side whose value was kept
        loser_source: Side whose value was discarded
        context: Versions and timestamps of both copies
    """

    model_config = ConfigDict(frozen=True)

    entity_id: str
    field: str
    lost_value: Any = None
    winner_value: Any = None
    winner_source: Side
    loser_source: Side
    context: dict[str, Any] = Field(default_factory=dict)


class MergeResult(BaseModel):
    """
    Outcome of merging two copies of an entity.

    `merged` carries `version = max(local, remote) + 1` and a fresh
    `updated_at`. Every field value that did not survive is in `discards`.
    """

    merged: BaseEntity
    discards: list[Discard] = Field(default_factory=list)
    winner: Side = Field(description="Side that won last-writer-wins ties")
    merged_at: datetime

    @property
    def has_losses(self) -> bool:
        return bool(self.discards)
