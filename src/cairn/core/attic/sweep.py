"""
Integrity sweep for soft references.

References between entities are soft: a dependency, parent or reply may
point at an entity that has not synced in yet, or that was hard-deleted.
The sweep finds references whose target is gone, archives each as an
orphan entry, and writes a new version of the referencing entity without
it. The referencing entity itself is never deleted.

Targets that are merely missing get a grace period (measured from the
referencing entity's last update) because they may still arrive with the
next sync. Tombstoned targets are gone for good and are relocated at once.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from cairn.core.entities.models import BaseEntity, ensure_utc, format_timestamp, utc_now
from cairn.core.entities.registry import EntityType, ReferenceField, ReferenceShape
from cairn.core.exceptions import UnknownEntityTypeError
from cairn.core.store.entity_store import EntityStore

from .models import OrphanEntry, OrphanReason
from .store import AtticStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokenReference:
    entity_id: str
    field: str
    target_id: str
    reason: OrphanReason


@dataclass
class SweepReport:
    """What a sweep did."""

    orphans: list[OrphanEntry] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deferred: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.orphans)


def iter_targets(reference: ReferenceField, value: Any) -> list[tuple[str, Any]]:
    """(target ID, held value) pairs for one reference field value."""
    if value is None:
        return []
    if reference.shape is ReferenceShape.SCALAR:
        return [(value, value)]
    if reference.shape is ReferenceShape.LIST:
        return [(item, item) for item in value]
    return [(item[reference.key], item) for item in value]


def _without(reference: ReferenceField, value: Any, targets: set[str]) -> Any:
    if reference.shape is ReferenceShape.SCALAR:
        return None
    if reference.shape is ReferenceShape.LIST:
        return [item for item in value if item not in targets]
    return [item for item in value if item[reference.key] not in targets]


class IntegritySweep:
    """
    Relocates broken references into the orphan archive.

    Args:
        store: Entity store to scan and update
        attic: Attic receiving orphan entries
        grace: How long a missing target is tolerated
    """

    def __init__(self, store: EntityStore, attic: AtticStore, grace: timedelta) -> None:
        self.store = store
        self.attic = attic
        self.grace = grace

    def _target_exists(self, target_id: str) -> bool:
        try:
            return self.store.exists(target_id)
        except UnknownEntityTypeError:
            return False

    def scan(self, tombstones: Collection[str] = ()) -> list[BrokenReference]:
        """List broken references without changing anything."""
        tombstoned = set(tombstones)
        broken: list[BrokenReference] = []
        for entity in self.store.list().entities:
            entity_type = self.store.registry.get(entity.type)
            data = entity.model_dump(mode="json")
            for reference in entity_type.references:
                for target_id, _held in iter_targets(reference, data[reference.name]):
                    if target_id in tombstoned:
                        reason = OrphanReason.DELETED_TARGET
                    elif not self._target_exists(target_id):
                        reason = OrphanReason.MISSING_TARGET
                    else:
                        continue
                    broken.append(BrokenReference(entity.id, reference.name, target_id, reason))
        return broken

    def run(
        self, tombstones: Collection[str] = (), now: datetime | None = None
    ) -> SweepReport:
        """
        Sweep every entity in the store.

        Args:
            tombstones: IDs of hard-deleted entities
            now: Reference time for the grace period
        """
        now = ensure_utc(now) if now else utc_now()
        report = SweepReport()

        by_entity: dict[str, dict[str, OrphanReason]] = {}
        for ref in self.scan(tombstones):
            by_entity.setdefault(ref.entity_id, {})[ref.target_id] = ref.reason

        for entity_id, targets in by_entity.items():
            entity = self.store.read(entity_id)
            if now - entity.updated_at < self.grace:
                # Missing targets may still arrive with the next sync
                deferred = {t for t, r in targets.items() if r is OrphanReason.MISSING_TARGET}
                report.deferred += len(deferred)
                targets = {t: r for t, r in targets.items() if t not in deferred}
            if targets:
                entity_type = self.store.registry.get(entity.type)
                self.relocate(entity, entity_type, targets, now, report)

        if report.orphans:
            logger.warning(
                "Sweep relocated %d broken reference(s) from %d entit%s",
                len(report.orphans),
                len(report.updated),
                "y" if len(report.updated) == 1 else "ies",
            )
        return report

    def relocate(
        self,
        entity: BaseEntity,
        entity_type: EntityType,
        broken: dict[str, OrphanReason],
        now: datetime,
        report: SweepReport,
    ) -> BaseEntity:
        """
        Archive references to `broken` targets and drop them from `entity`.

        References held in immutable fields are archived once and left in
        place.

        Returns:
            The entity as written (unchanged if nothing was removable)
        """
        data = entity.model_dump(mode="json")
        already_archived = {
            (o.field, o.target_id) for o in self.attic.list_orphans(entity.id) if not o.removed
        }
        changed = False

        for reference in entity_type.references:
            value = data[reference.name]
            hits = [
                (target_id, held)
                for target_id, held in iter_targets(reference, value)
                if target_id in broken
            ]
            if not hits:
                continue
            for target_id, held in hits:
                if not reference.removable and (reference.name, target_id) in already_archived:
                    continue
                orphan = OrphanEntry(
                    entity_id=entity.id,
                    timestamp=now,
                    field=reference.name,
                    value=held,
                    target_id=target_id,
                    reason=broken[target_id],
                    removed=reference.removable,
                )
                self.attic.record_orphan(orphan)
                report.orphans.append(orphan)
            if reference.removable:
                data[reference.name] = _without(reference, value, {t for t, _ in hits})
                changed = True

        if not changed:
            return entity

        data.update(
            version=entity.version + 1,
            updated_at=format_timestamp(max(now, entity.updated_at)),
        )
        updated = type(entity).model_validate(data)
        self.store.write(updated)
        report.updated.append(entity.id)
        return updated

    def relocate_references_to(
        self, target_id: str, now: datetime | None = None
    ) -> SweepReport:
        """
        Relocate every reference to `target_id` ahead of its hard delete.

        No grace period applies: the target is about to disappear.
        """
        now = ensure_utc(now) if now else utc_now()
        report = SweepReport()
        broken = {target_id: OrphanReason.DELETED_TARGET}
        for entity in self.store.list().entities:
            if entity.id == target_id:
                continue
            entity_type = self.store.registry.get(entity.type)
            data = entity.model_dump(mode="json")
            if any(
                t == target_id
                for reference in entity_type.references
                for t, _ in iter_targets(reference, data[reference.name])
            ):
                self.relocate(entity, entity_type, broken, now, report)
        return report
