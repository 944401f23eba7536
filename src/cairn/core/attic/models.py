"""
Data models for the attic.

The attic keeps every value the system would otherwise lose:

- Conflict entries: values that lost a merge, or were overwritten by a
  restore, or whole entities removed by a hard delete.
- Orphan entries: soft references whose target no longer exists, moved
  out of the referencing entity by the integrity sweep.

Entries are immutable once written. Each is stored as its own YAML file so
that replicas can union their attics by path without ever conflicting.
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cairn.core.entities.models import Timestamp, ensure_utc, utc_now
from cairn.core.merge.models import Discard, Side

ENTITY_FIELD = "_entity"
"""Field name used when an entry holds a whole entity."""

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class AtticReason(str, Enum):
    """Why a value was archived."""

    MERGE = "merge"
    RESTORE = "restore"
    HARD_DELETE = "hard_delete"


class OrphanReason(str, Enum):
    """Why a reference was relocated."""

    MISSING_TARGET = "missing_target"
    DELETED_TARGET = "deleted_target"


def _stamp(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y%m%dT%H%M%S%fZ")


def _new_nonce() -> str:
    return secrets.token_hex(3)


class _ArchivedValue(BaseModel):
    """Fields shared by both entry kinds."""

    model_config = ConfigDict(frozen=True, extra="ignore", use_enum_values=True)

    entity_id: str = Field(..., min_length=1)
    timestamp: Timestamp = Field(default_factory=utc_now)
    field: str = Field(..., min_length=1)
    nonce: str = Field(default_factory=_new_nonce)

    @property
    def stem(self) -> str:
        """File name without extension: `<timestamp>_<field>_<nonce>`."""
        return f"{_stamp(self.timestamp)}_{_UNSAFE_CHARS.sub('-', self.field)}_{self.nonce}"

    @property
    def ref(self) -> str:
        """Reference string accepted by `AtticStore.get`."""
        return f"{self.entity_id}/{self.stem}"

    def relative_path(self, section: str) -> str:
        return f"{section}/{self.entity_id}/{self.stem}.yml"


class AtticEntry(_ArchivedValue):
    """
    A value that lost a merge (or was overwritten or deleted).

    Attributes:
        lost_value: The archived value (a whole entity for `_entity`)
        winner_value: The value that replaced it, if any
        winner_source: Side whose value was kept (merges only)
        loser_source: Side whose value was archived (merges only)
        reason: Why the value was archived
        context: Versions and timestamps of the copies involved
    """

    lost_value: Any = None
    winner_value: Any = None
    winner_source: Side | None = None
    loser_source: Side | None = None
    reason: AtticReason = AtticReason.MERGE
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_discard(cls, discard: Discard, timestamp: datetime) -> AtticEntry:
        return cls(
            entity_id=discard.entity_id,
            timestamp=timestamp,
            field=discard.field,
            lost_value=discard.lost_value,
            winner_value=discard.winner_value,
            winner_source=discard.winner_source,
            loser_source=discard.loser_source,
            reason=AtticReason.MERGE,
            context=discard.context,
        )


class OrphanEntry(_ArchivedValue):
    """
    A soft reference that pointed at a missing or deleted entity.

    Attributes:
        value: The reference as it was held (an ID, or a keyed list item)
        target_id: ID of the missing target
        reason: Why the target is considered gone
        removed: Whether the reference was removed from the entity
    """

    value: Any = None
    target_id: str | None = None
    reason: OrphanReason = OrphanReason.MISSING_TARGET
    removed: bool = True


class AtticFilter(BaseModel):
    """Criteria for listing attic entries. Unset fields match everything."""

    entity_id: str | None = None
    field: str | None = None
    reason: AtticReason | None = None
    since: datetime | None = None

    def matches(self, entry: AtticEntry) -> bool:
        if self.entity_id is not None and entry.entity_id != self.entity_id:
            return False
        if self.field is not None and entry.field != self.field:
            return False
        if self.reason is not None and entry.reason != AtticReason(self.reason).value:
            return False
        if self.since is not None and entry.timestamp < ensure_utc(self.since):
            return False
        return True
