"""
Attic persistence.

Layout under the data root:

    attic/conflicts/<entity_id>/<timestamp>_<field>_<nonce>.yml
    attic/orphans/<entity_id>/<timestamp>_<field>_<nonce>.yml

Entry files are written once and never modified, so the attic of two
replicas merges by plain union of paths.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import ValidationError

from cairn.core.entities.canonical import entity_from_data
from cairn.core.entities.models import BaseEntity, ensure_utc, format_timestamp, utc_now
from cairn.core.exceptions import (
    AtticEntryNotFoundError,
    EntityNotFoundError,
    ParseError,
    RestoreError,
)
from cairn.core.merge.rules import Strategy, rule_for
from cairn.core.store.atomic import atomic_write_text, is_temp_file
from cairn.core.store.entity_store import EntityStore

from .models import ENTITY_FIELD, AtticEntry, AtticFilter, AtticReason, OrphanEntry

logger = logging.getLogger(__name__)

ATTIC_DIR = "attic"
CONFLICTS = "conflicts"
ORPHANS = "orphans"
ENTRY_SUFFIX = ".yml"

_EntryT = TypeVar("_EntryT", AtticEntry, OrphanEntry)


def dump_entry(entry: AtticEntry | OrphanEntry) -> str:
    """Serialize an entry as YAML with sorted keys."""
    return yaml.safe_dump(
        entry.model_dump(mode="json"),
        sort_keys=True,
        allow_unicode=True,
        default_flow_style=False,
    )


def load_entry(text: str | bytes, model: type[_EntryT], path: Path | str | None = None) -> _EntryT:
    """
    Parse an entry file.

    Raises:
        ParseError: If the YAML is malformed or fails validation
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(f"Malformed attic entry: {e}", path=path) from e
    if not isinstance(data, dict):
        raise ParseError("Attic entry is not a mapping", path=path)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Invalid attic entry: {e}", path=path) from e


class AtticStore:
    """
    Loss-preserving archive of overwritten values and orphaned references.

    Example:
        >>> attic = AtticStore(Path(".cairn/data"))
        >>> for entry in attic.list(AtticFilter(entity_id="wi-0a1b2c3d4e")):
        ...     print(entry.ref, entry.field, entry.lost_value)
    """

    def __init__(self, root: Path, fsync: bool = True) -> None:
        self.root = root
        self.attic_dir = root / ATTIC_DIR
        self.fsync = fsync

    def _write(self, section: str, entry: AtticEntry | OrphanEntry) -> Path:
        path = self.root / ATTIC_DIR / entry.relative_path(section)
        atomic_write_text(path, dump_entry(entry), exclusive=True, fsync=self.fsync)
        return path

    def record(self, entry: AtticEntry) -> Path:
        """
        Archive a conflict entry.

        Returns:
            Path of the new entry file
        """
        path = self._write(CONFLICTS, entry)
        logger.info("Archived %s.%s to attic (%s)", entry.entity_id, entry.field, entry.reason)
        return path

    def record_orphan(self, entry: OrphanEntry) -> Path:
        """Archive an orphaned reference."""
        path = self._write(ORPHANS, entry)
        logger.warning(
            "Orphaned reference %s.%s -> %s archived", entry.entity_id, entry.field, entry.target_id
        )
        return path

    def _iter_files(self, section: str, entity_id: str | None = None) -> Iterator[Path]:
        base = self.attic_dir / section
        if entity_id is not None:
            base = base / entity_id
        if not base.is_dir():
            return
        for path in sorted(base.rglob(f"*{ENTRY_SUFFIX}")):
            if not is_temp_file(path):
                yield path

    def _load_all(
        self, section: str, model: type[_EntryT], entity_id: str | None = None
    ) -> list[_EntryT]:
        entries: list[_EntryT] = []
        for path in self._iter_files(section, entity_id):
            try:
                entries.append(load_entry(path.read_bytes(), model, path))
            except ParseError as e:
                logger.warning("Skipping unreadable attic entry %s: %s", path, e)
        entries.sort(key=lambda e: (e.timestamp, e.entity_id, e.stem))
        return entries

    def list(self, filter: AtticFilter | None = None) -> list[AtticEntry]:
        """Conflict entries matching `filter`, oldest first."""
        filter = filter or AtticFilter()
        entries = self._load_all(CONFLICTS, AtticEntry, filter.entity_id)
        return [e for e in entries if filter.matches(e)]

    def list_orphans(self, entity_id: str | None = None) -> list[OrphanEntry]:
        """Orphan entries (for one entity, or all), oldest first."""
        return self._load_all(ORPHANS, OrphanEntry, entity_id)

    def get(self, ref: str) -> AtticEntry | OrphanEntry:
        """
        Resolve a reference to exactly one entry.

        Accepted forms: `<entity_id>/<stem>`, a bare `<stem>`, or
        `<entity_id>@<timestamp>` when only one entry has that timestamp.

        Raises:
            AtticEntryNotFoundError: If no entry, or more than one, matches
        """
        candidates: list[AtticEntry | OrphanEntry] = []
        candidates.extend(self.list())
        candidates.extend(self.list_orphans())

        if "@" in ref:
            entity_id, _, stamp = ref.partition("@")
            try:
                wanted = ensure_utc(datetime.fromisoformat(stamp.replace("Z", "+00:00")))
            except ValueError:
                raise AtticEntryNotFoundError(ref) from None
            matches = [c for c in candidates if c.entity_id == entity_id and c.timestamp == wanted]
        elif "/" in ref:
            matches = [c for c in candidates if c.ref == ref]
        else:
            matches = [c for c in candidates if c.stem == ref]

        if len(matches) != 1:
            raise AtticEntryNotFoundError(ref, matches=len(matches))
        return matches[0]

    def prune(self, older_than: datetime) -> int:
        """
        Remove entries (of both kinds) older than `older_than`.

        Returns:
            Number of entries removed
        """
        cutoff = ensure_utc(older_than)
        removed = 0
        for section, model in ((CONFLICTS, AtticEntry), (ORPHANS, OrphanEntry)):
            for path in list(self._iter_files(section)):
                try:
                    entry = load_entry(path.read_bytes(), model, path)
                except ParseError:
                    continue
                if entry.timestamp < cutoff:
                    path.unlink()
                    removed += 1
        if removed:
            logger.info("Pruned %d attic entr%s older than %s",
                        removed, "y" if removed == 1 else "ies", format_timestamp(cutoff))
        return removed

    def restore(
        self,
        entry: AtticEntry | OrphanEntry,
        store: EntityStore,
        now: datetime | None = None,
    ) -> BaseEntity:
        """
        Reapply an archived value as a new version of its entity.

        The value being overwritten is archived first (reason `restore`), so
        restoring never loses data either. Restoring a whole entity
        recreates it when it no longer exists.

        Returns:
            The new version of the entity

        Raises:
            RestoreError: If the value cannot be applied to the entity
        """
        now = ensure_utc(now) if now else utc_now()
        value = entry.lost_value if isinstance(entry, AtticEntry) else entry.value

        try:
            current: BaseEntity | None = store.read(entry.entity_id)
        except EntityNotFoundError:
            current = None

        if entry.field == ENTITY_FIELD:
            return self._restore_entity(entry, value, current, store, now)

        if current is None:
            raise RestoreError(
                f"Cannot restore {entry.field}: entity {entry.entity_id} does not exist",
                entity_id=entry.entity_id,
            )

        data = current.model_dump(mode="json")
        old_value, new_value = self._apply_value(store, current, data, entry.field, value)
        data.update(
            version=current.version + 1,
            updated_at=format_timestamp(max(now, current.updated_at)),
        )
        data = type(current).enforce_invariants(data, now)
        try:
            restored = type(current).model_validate(data)
        except ValidationError as e:
            raise RestoreError(f"Restored value is invalid: {e}", entity_id=entry.entity_id) from e

        self.record(
            AtticEntry(
                entity_id=current.id,
                timestamp=now,
                field=entry.field,
                lost_value=old_value,
                winner_value=new_value,
                reason=AtticReason.RESTORE,
                context={"restored_from": entry.ref, "version": current.version},
            )
        )
        store.write(restored)
        logger.info("Restored %s.%s from %s", current.id, entry.field, entry.ref)
        return restored

    def _apply_value(
        self,
        store: EntityStore,
        current: BaseEntity,
        data: dict[str, Any],
        field: str,
        value: Any,
    ) -> tuple[Any, Any]:
        """Write `value` into `data`; returns the (previous, new) field values."""
        if field.startswith("extensions."):
            namespace = field.removeprefix("extensions.")
            extensions = dict(data["extensions"])
            previous = extensions.get(namespace)
            extensions[namespace] = value
            data["extensions"] = extensions
            return previous, value

        if field not in data:
            raise RestoreError(f"{current.type} has no field {field!r}", entity_id=current.id)

        previous = data[field]
        rules = store.registry.get(current.type).rules
        rule = rule_for(rules, field)
        if rule.strategy is Strategy.IMMUTABLE:
            raise RestoreError(f"{field!r} is immutable", entity_id=current.id)

        if rule.strategy is Strategy.MERGE_BY_ID and isinstance(value, dict):
            # A keyed item: replace the item with the same key, or add it
            key = rule.key
            items = [item for item in previous if item.get(key) != value.get(key)]
            items.append(value)
            data[field] = items
        elif isinstance(previous, list) and not isinstance(value, list):
            # A single reference relocated from a list field
            data[field] = previous if value in previous else [*previous, value]
        else:
            data[field] = value
        return previous, data[field]

    def _restore_entity(
        self,
        entry: AtticEntry | OrphanEntry,
        value: Any,
        current: BaseEntity | None,
        store: EntityStore,
        now: datetime,
    ) -> BaseEntity:
        try:
            archived = entity_from_data(value, store.registry)
        except ParseError as e:
            raise RestoreError(f"Archived entity is invalid: {e}", entity_id=entry.entity_id) from e

        version = max(archived.version, current.version if current else 0) + 1
        updated_at = max(now, archived.updated_at, current.updated_at if current else now)
        restored = archived.apply_changes(
            {"version": version, "updated_at": format_timestamp(updated_at)}
        )
        if current is not None:
            self.record(
                AtticEntry(
                    entity_id=current.id,
                    timestamp=now,
                    field=ENTITY_FIELD,
                    lost_value=current.model_dump(mode="json"),
                    reason=AtticReason.RESTORE,
                    context={"restored_from": entry.ref, "version": current.version},
                )
            )
        store.write(restored)
        logger.info("Restored entity %s from %s", restored.id, entry.ref)
        return restored
