"""
Field-level merge engine.

Given two divergent copies of the same entity (and optionally their common
ancestor) the engine produces one merged copy plus the list of values that
lost, so the caller can archive them. Merging is deterministic and
symmetric: the winner of every last-writer-wins decision depends only on
the two copies, never on which replica runs the merge.

Winner selection:
    1. The copy with the later `updated_at` wins.
    2. On equal timestamps the copy whose content hash sorts greater wins.
       Equal hashes mean equal content, so there is nothing left to break.

With a common ancestor, a field that only one side changed takes that
side's value outright; last-writer-wins (and archiving) only applies when
both sides changed it.

Example:
    >>> engine = MergeEngine()
    >>> result = engine.merge(local_item, remote_item)
    >>> result.merged.version
    4
    >>> [d.field for d in result.discards]
    ['title']
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from cairn.core.config.models import MergeConfig
from cairn.core.entities.canonical import content_hash
from cairn.core.entities.models import BaseEntity, ensure_utc, format_timestamp, utc_now
from cairn.core.entities.registry import EntityRegistry, default_registry
from cairn.core.exceptions import IntegrityError
from cairn.core.merge.models import Discard, MergeResult, Side
from cairn.core.merge.rules import FieldRule, RuleTable, Strategy, rule_for

logger = logging.getLogger(__name__)

_MISSING = object()


def pick_winner(local: BaseEntity, remote: BaseEntity) -> Side:
    """
    Side that wins last-writer-wins decisions between two copies.

    Ties break on content rather than on a preferred side: each replica
    calls its own copy "local", so a side preference would pick a different
    winner on each of them and the replicas would never converge.
    """
    if local.updated_at != remote.updated_at:
        return Side.LOCAL if local.updated_at > remote.updated_at else Side.REMOTE
    return Side.LOCAL if content_hash(local) >= content_hash(remote) else Side.REMOTE


def check_immutable(local: BaseEntity, remote: BaseEntity, rules: RuleTable) -> None:
    """
    Raise IntegrityError unless both copies agree on every immutable field.

    Applies whenever one copy is about to replace or be merged with another,
    including when only one side changed since the common ancestor.
    """
    if local.type != remote.type:
        raise IntegrityError(local.id, "type", f"{local.type!r} != {remote.type!r}")
    if local.id != remote.id:
        raise IntegrityError(local.id, "id", f"merging with {remote.id!r}")

    local_data = local.model_dump(mode="json")
    remote_data = remote.model_dump(mode="json")
    for field in type(local).model_fields:
        if rule_for(rules, field).strategy is not Strategy.IMMUTABLE:
            continue
        if local_data[field] != remote_data[field]:
            raise IntegrityError(
                local.id,
                field,
                f"immutable field diverged "
                f"(local={local_data[field]!r}, remote={remote_data[field]!r})",
            )


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


class _MergeRun:
    """State for merging one pair of copies."""

    def __init__(
        self,
        local: BaseEntity,
        remote: BaseEntity,
        base: BaseEntity | None,
        rules: RuleTable,
        three_way_union: bool,
    ) -> None:
        self.local = local
        self.remote = remote
        self.rules = rules
        self.three_way_union = three_way_union
        self.entity_id = local.id
        self.winner = pick_winner(local, remote)
        self.local_data = local.model_dump(mode="json")
        self.remote_data = remote.model_dump(mode="json")
        self.base_data = base.model_dump(mode="json") if base is not None else None
        self.discards: list[Discard] = []
        self.context = {
            "local_version": local.version,
            "remote_version": remote.version,
            "local_updated_at": format_timestamp(local.updated_at),
            "remote_updated_at": format_timestamp(remote.updated_at),
        }

    def _base_value(self, field: str) -> Any:
        if self.base_data is None:
            return _MISSING
        return self.base_data.get(field, _MISSING)

    def resolve(self, label: str, local: Any, remote: Any, base: Any, archive: bool) -> Any:
        """Resolve one value that may differ between the two sides."""
        if local == remote:
            return local
        if base is not _MISSING:
            if local == base:
                return remote
            if remote == base:
                return local

        if self.winner is Side.LOCAL:
            kept, lost = local, remote
        else:
            kept, lost = remote, local
        if archive:
            self.discards.append(
                Discard(
                    entity_id=self.entity_id,
                    field=label,
                    lost_value=lost,
                    winner_value=kept,
                    winner_source=self.winner,
                    loser_source=self.winner.other,
                    context=dict(self.context),
                )
            )
            logger.debug("%s.%s: kept %s value, archived %s value",
                         self.entity_id, label, self.winner.value, self.winner.other.value)
        return kept

    def union(self, field: str) -> list[Any]:
        local = {_sort_key(v): v for v in self.local_data[field]}
        remote = {_sort_key(v): v for v in self.remote_data[field]}
        base_values = self._base_value(field)

        if self.three_way_union and base_values is not _MISSING:
            base = {_sort_key(v): v for v in base_values}
            keys = (
                (base.keys() & local.keys() & remote.keys())
                | (local.keys() - base.keys())
                | (remote.keys() - base.keys())
            )
        else:
            keys = local.keys() | remote.keys()

        both = {**local, **remote}
        return [both[k] for k in sorted(keys)]

    def keyed(
        self,
        label_for: Callable[[str], str],
        local: dict[str, Any],
        remote: dict[str, Any],
        base: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Merge two maps entry by entry; entries on one side only are kept."""
        out: dict[str, Any] = {}
        for key in sorted(local.keys() | remote.keys()):
            base_value = base.get(key, _MISSING) if base is not None else _MISSING
            if key in local and key in remote:
                out[key] = self.resolve(label_for(key), local[key], remote[key], base_value, True)
                continue
            present = local[key] if key in local else remote[key]
            if self.three_way_union and base_value is not _MISSING and base_value == present:
                # Removed on the other side and untouched here
                continue
            out[key] = present
        return out

    def merge_by_id(self, field: str, rule: FieldRule) -> list[Any]:
        key = rule.key
        local = {item[key]: item for item in self.local_data[field]}
        remote = {item[key]: item for item in self.remote_data[field]}
        base_values = self._base_value(field)
        base = None if base_values is _MISSING else {item[key]: item for item in base_values}
        merged = self.keyed(lambda _k: field, local, remote, base)
        return list(merged.values())

    def extensions(self, field: str) -> dict[str, Any]:
        base_values = self._base_value(field)
        base = None if base_values is _MISSING else base_values
        return self.keyed(
            lambda ns: f"{field}.{ns}", self.local_data[field], self.remote_data[field], base
        )

    def run(self, now: datetime) -> MergeResult:
        check_immutable(self.local, self.remote, self.rules)

        merged_at = max(now, self.local.updated_at, self.remote.updated_at)
        data: dict[str, Any] = {}

        for field in type(self.local).model_fields:
            rule = rule_for(self.rules, field)
            local_value = self.local_data[field]
            remote_value = self.remote_data[field]

            if rule.strategy is Strategy.IMMUTABLE:
                data[field] = local_value
            elif rule.strategy is Strategy.MAX_PLUS_ONE:
                data[field] = max(local_value, remote_value) + 1
            elif rule.strategy is Strategy.RECALCULATE:
                data[field] = format_timestamp(merged_at)
            elif rule.strategy is Strategy.LWW:
                data[field] = self.resolve(
                    field, local_value, remote_value, self._base_value(field), False
                )
            elif rule.strategy is Strategy.LWW_WITH_ATTIC:
                data[field] = self.resolve(
                    field, local_value, remote_value, self._base_value(field), True
                )
            elif rule.strategy is Strategy.UNION:
                data[field] = self.union(field)
            elif rule.strategy is Strategy.MERGE_BY_ID:
                data[field] = self.merge_by_id(field, rule)
            elif rule.strategy is Strategy.EXTENSIONS:
                data[field] = self.extensions(field)
            else:
                raise ValueError(f"Unhandled merge strategy {rule.strategy!r}")

        model = type(self.local)
        data = model.enforce_invariants(data, merged_at)
        merged = model.model_validate(data)

        logger.debug("Merged %s -> v%d (%d discard(s))",
                     self.entity_id, merged.version, len(self.discards))
        return MergeResult(
            merged=merged, discards=self.discards, winner=self.winner, merged_at=merged_at
        )


class MergeEngine:
    """
    Merges divergent copies of entities using each type's rule table.

    Args:
        registry: Entity registry supplying rule tables
        config: Merge settings (three-way unions)
    """

    def __init__(
        self, registry: EntityRegistry | None = None, config: MergeConfig | None = None
    ) -> None:
        self.registry = registry or default_registry()
        self.config = config or MergeConfig()

    def merge(
        self,
        local: BaseEntity,
        remote: BaseEntity,
        rules: RuleTable | None = None,
        base: BaseEntity | None = None,
        now: datetime | None = None,
    ) -> MergeResult:
        """
        Merge two copies of one entity.

        Args:
            local: Local copy
            remote: Remote copy
            rules: Rule table (defaults to the registered one for the type)
            base: Common ancestor, enabling one-sided changes to win cleanly
            now: Merge time (defaults to the current time)

        Returns:
            MergeResult with the merged entity and every discarded value

        Raises:
            IntegrityError: If the copies disagree on id, type, or an
                immutable field
        """
        if rules is None:
            rules = self.registry.get(local.type).rules
        run = _MergeRun(local, remote, base, rules, self.config.three_way_union)
        return run.run(ensure_utc(now) if now else utc_now())


def merge(
    local: BaseEntity,
    remote: BaseEntity,
    rules: RuleTable | None = None,
    base: BaseEntity | None = None,
    now: datetime | None = None,
) -> MergeResult:
    """Merge with the default registry and settings."""
    return MergeEngine().merge(local, remote, rules=rules, base=base, now=now)
