"""
Entity data models for cairn.

Every persisted record is a BaseEntity subclass tagged with a two-letter
type discriminator. Set-like fields are normalized (sorted, deduplicated)
at validation time so that two replicas holding the same logical content
always serialize to the same bytes.

Models are immutable once validated; mutations go through
`apply_changes`, which re-validates the result.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with microseconds and a `Z` suffix."""
    return ensure_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


# Datetimes are always stored in UTC and serialized with fixed precision so
# that parse(serialize(x)) is byte-stable.
Timestamp = Annotated[
    datetime,
    AfterValidator(ensure_utc),
    PlainSerializer(format_timestamp, return_type=str, when_used="json"),
]


def _sorted_unique(values: list[str]) -> list[str]:
    return sorted(set(values))


class ItemStatus(str, Enum):
    """Lifecycle status of a work item."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CLOSED = "closed"


class ItemKind(str, Enum):
    """Kind of work item."""

    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"


class DependencyType(str, Enum):
    """Relationship between two work items."""

    BLOCKS = "blocks"
    RELATED = "related"
    PARENT_CHILD = "parent-child"


class AgentStatus(str, Enum):
    """Coarse presence of an agent."""

    ACTIVE = "active"
    IDLE = "idle"
    OFFLINE = "offline"


class Dependency(BaseModel):
    """A soft reference from one work item to another."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: DependencyType = Field(default=DependencyType.BLOCKS)
    target: str = Field(..., min_length=1, description="ID of the referenced item")


class Reservation(BaseModel):
    """Advisory claim on a path held by an agent."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(..., min_length=1)
    reason: str = Field(default="")
    expires_at: Timestamp | None = Field(default=None)


class BaseEntity(BaseModel):
    """
    Fields shared by every entity.

    Attributes:
        type: Two-letter discriminator selecting the model and collection
        id: `{type}-{suffix}`; the prefix always matches `type`
        version: Bumped by one on every write, `max + 1` on a merge
        created_at: Creation time (immutable)
        updated_at: Time of the last local write or merge
        extensions: Namespaced third-party data, merged per namespace
    """

    model_config = ConfigDict(frozen=True, extra="forbid", use_enum_values=True)

    type: str = Field(..., min_length=2, max_length=2)
    id: str = Field(..., min_length=4)
    version: int = Field(default=1, ge=0)
    created_at: Timestamp = Field(default_factory=utc_now)
    updated_at: Timestamp = Field(default_factory=utc_now)
    extensions: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_id_prefix(self) -> BaseEntity:
        if not self.id.startswith(f"{self.type}-"):
            raise ValueError(f"id {self.id!r} does not match type {self.type!r}")
        return self

    def apply_changes(self, changes: dict[str, Any]) -> BaseEntity:
        """
        Return a re-validated copy with `changes` applied.

        Unlike `model_copy(update=...)` this runs normalization and
        validation, so sorted fields stay sorted.
        """
        data = self.model_dump(mode="json")
        data.update(changes)
        return type(self).model_validate(data)

    @classmethod
    def enforce_invariants(cls, data: dict[str, Any], at: datetime) -> dict[str, Any]:
        """Re-establish cross-field invariants on raw field data (after a merge or patch)."""
        return data


class WorkItem(BaseEntity):
    """A unit of work: issue, feature, task and so on."""

    type: Literal["wi"] = "wi"
    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    notes: str = Field(default="")
    kind: ItemKind = Field(default=ItemKind.TASK)
    status: ItemStatus = Field(default=ItemStatus.OPEN)
    priority: int = Field(default=2, ge=0, le=4, description="0 = critical, 4 = backlog")
    assignee: str | None = Field(default=None)
    labels: list[str] = Field(default_factory=list)
    dependencies: list[Dependency] = Field(default_factory=list)
    parent_id: str | None = Field(default=None)
    child_order: list[str] = Field(
        default_factory=list, description="Ordered child IDs (order is meaningful)"
    )
    due_date: Timestamp | None = Field(default=None)
    created_by: str | None = Field(default=None)
    closed_at: Timestamp | None = Field(default=None)
    close_reason: str | None = Field(default=None)

    @field_validator("labels")
    @classmethod
    def _normalize_labels(cls, v: list[str]) -> list[str]:
        return _sorted_unique(v)

    @field_validator("dependencies")
    @classmethod
    def _normalize_dependencies(cls, v: list[Dependency]) -> list[Dependency]:
        # One relationship per target; the last one listed wins
        by_target = {d.target: d for d in v}
        return [by_target[t] for t in sorted(by_target)]

    @classmethod
    def enforce_invariants(cls, data: dict[str, Any], at: datetime) -> dict[str, Any]:
        """
        Keep `closed_at` consistent with status.

        Status and `closed_at` change independently, so a merge or patch can
        reopen an item whose `closed_at` survived from the other side, or
        close one that never had it stamped.
        """
        if data.get("status") == ItemStatus.CLOSED.value:
            if data.get("closed_at") is None:
                data["closed_at"] = format_timestamp(at)
        else:
            data["closed_at"] = None
            data["close_reason"] = None
        return data


class AgentRecord(BaseEntity):
    """Presence and advisory claims of one agent, modelled as an ordinary entity."""

    type: Literal["ag"] = "ag"
    name: str = Field(..., min_length=1)
    status: AgentStatus = Field(default=AgentStatus.ACTIVE)
    heartbeat_at: Timestamp | None = Field(default=None)
    working_set: list[str] = Field(default_factory=list, description="Item IDs in progress")
    reservations: list[Reservation] = Field(default_factory=list)

    @field_validator("working_set")
    @classmethod
    def _normalize_working_set(cls, v: list[str]) -> list[str]:
        return _sorted_unique(v)

    @field_validator("reservations")
    @classmethod
    def _normalize_reservations(cls, v: list[Reservation]) -> list[Reservation]:
        by_path = {r.path: r for r in v}
        return [by_path[p] for p in sorted(by_path)]


class Message(BaseEntity):
    """
    A message between agents.

    Messages never change after creation: an edit is a new message whose
    `reply_to` points at the original.
    """

    type: Literal["ms"] = "ms"
    subject: str = Field(default="")
    body: str = Field(default="")
    author: str = Field(..., min_length=1)
    reply_to: str | None = Field(default=None)
