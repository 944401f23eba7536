"""
Field merge rules.

A rule table maps each field of an entity type to the strategy the merge
engine uses when two copies of that entity disagree. Fields absent from a
table fall back to `lww_with_attic` so that an unlisted field can never be
lost silently.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Strategy(str, Enum):
    """Per-field merge strategy."""

    IMMUTABLE = "immutable"
    """Must be identical on both sides; divergence is an integrity violation."""

    LWW = "lww"
    """Last-writer-wins by `updated_at`, loser dropped."""

    LWW_WITH_ATTIC = "lww_with_attic"
    """Last-writer-wins, loser archived in the attic."""

    UNION = "union"
    """Set union, sorted and deduplicated."""

    MERGE_BY_ID = "merge_by_id"
    """List of objects merged by a key field."""

    MAX_PLUS_ONE = "max_plus_one"
    """Counter: max of both sides plus one."""

    RECALCULATE = "recalculate"
    """Derived value recomputed at merge time."""

    EXTENSIONS = "extensions"
    """Namespaced dict merged per namespace with LWW, losers archived."""


@dataclass(frozen=True)
class FieldRule:
    """Strategy for one field, with the item key for `merge_by_id`."""

    strategy: Strategy
    key: str | None = None

    def __post_init__(self) -> None:
        if self.strategy is Strategy.MERGE_BY_ID and not self.key:
            raise ValueError("merge_by_id rules need a key field")


RuleTable = dict[str, FieldRule]

DEFAULT_RULE = FieldRule(Strategy.LWW_WITH_ATTIC)

_IMMUTABLE = FieldRule(Strategy.IMMUTABLE)
_LWW = FieldRule(Strategy.LWW)
_ATTIC = FieldRule(Strategy.LWW_WITH_ATTIC)
_UNION = FieldRule(Strategy.UNION)

BASE_RULES: RuleTable = {
    "type": _IMMUTABLE,
    "id": _IMMUTABLE,
    "created_at": _IMMUTABLE,
    "version": FieldRule(Strategy.MAX_PLUS_ONE),
    "updated_at": FieldRule(Strategy.RECALCULATE),
    "extensions": FieldRule(Strategy.EXTENSIONS),
}

WORK_ITEM_RULES: RuleTable = {
    **BASE_RULES,
    "created_by": _IMMUTABLE,
    "title": _ATTIC,
    "description": _ATTIC,
    "notes": _ATTIC,
    "kind": _ATTIC,
    "status": _ATTIC,
    "priority": _ATTIC,
    "assignee": _ATTIC,
    "parent_id": _ATTIC,
    "child_order": _ATTIC,
    "labels": _UNION,
    "dependencies": FieldRule(Strategy.MERGE_BY_ID, key="target"),
    "due_date": _ATTIC,
    # Re-derived from status by the post-merge pass
    "closed_at": _LWW,
    "close_reason": _ATTIC,
}

AGENT_RULES: RuleTable = {
    **BASE_RULES,
    "name": _ATTIC,
    "status": _LWW,
    "heartbeat_at": _LWW,
    "working_set": _UNION,
    "reservations": FieldRule(Strategy.MERGE_BY_ID, key="path"),
}

MESSAGE_RULES: RuleTable = {
    **BASE_RULES,
    "subject": _IMMUTABLE,
    "body": _IMMUTABLE,
    "author": _IMMUTABLE,
    "reply_to": _IMMUTABLE,
}


def rule_for(rules: RuleTable, field: str) -> FieldRule:
    """Rule for `field`, falling back to `lww_with_attic`."""
    return rules.get(field, DEFAULT_RULE)
