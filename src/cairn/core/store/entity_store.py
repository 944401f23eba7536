"""
File-per-entity store.

Each entity lives at `<root>/<collection>/<id>.json` in canonical form.
The root is the local working copy of the sync branch, so the store layout
and the branch layout are the same.

Example:
    >>> store = EntityStore(Path(".cairn/data"))
    >>> item = WorkItem(id=generate_id("wi"), title="Fix login")
    >>> store.create(item)
    >>> store.read(item.id).title
    'Fix login'
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from cairn.core.config.models import StoreConfig
from cairn.core.entities.canonical import canonical_bytes, parse_entity
from cairn.core.entities.models import BaseEntity
from cairn.core.entities.registry import EntityRegistry, EntityType, default_registry
from cairn.core.exceptions import CollisionError, EntityNotFoundError, ParseError
from cairn.core.store.atomic import atomic_write_bytes, is_temp_file, sweep_temp_files

logger = logging.getLogger(__name__)

ENTITY_SUFFIX = ".json"


@dataclass
class ListResult:
    """Entities of a listing plus the files that could not be parsed."""

    entities: list[BaseEntity] = field(default_factory=list)
    errors: list[ParseError] = field(default_factory=list)


class EntityStore:
    """
    Local, crash-safe persistence for entities.

    The store never repairs malformed files: reading one raises ParseError
    and listing reports it alongside the entities it could read.
    """

    def __init__(
        self,
        root: Path,
        registry: EntityRegistry | None = None,
        config: StoreConfig | None = None,
    ) -> None:
        """
        Open the store at `root`, removing abandoned temp files.

        Args:
            root: Directory holding the collection directories
            registry: Entity type registry (defaults to the built-in types)
            config: Store settings (defaults to StoreConfig())
        """
        self.root = root
        self.registry = registry or default_registry()
        self.config = config or StoreConfig()
        sweep_temp_files(self.root, self.config.temp_max_age_seconds)

    def path_for(self, entity_id: str) -> Path:
        """File path for `entity_id` (whether or not it exists)."""
        entity_type = self.registry.for_id(entity_id)
        return self.root / entity_type.collection / f"{entity_id}{ENTITY_SUFFIX}"

    def relative_path(self, entity_id: str) -> str:
        """Path of the entity file relative to the root, with forward slashes."""
        return self.path_for(entity_id).relative_to(self.root).as_posix()

    def exists(self, entity_id: str) -> bool:
        return self.path_for(entity_id).exists()

    def read(self, entity_id: str) -> BaseEntity:
        """
        Read and validate one entity.

        Raises:
            EntityNotFoundError: If there is no file for `entity_id`
            ParseError: If the file is malformed or holds a different ID
        """
        path = self.path_for(entity_id)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise EntityNotFoundError(entity_id) from None
        entity = parse_entity(data, self.registry, path)
        if entity.id != entity_id:
            raise ParseError(f"File for {entity_id} holds entity {entity.id}", path=path)
        return entity

    def read_bytes(self, entity_id: str) -> bytes | None:
        """Raw file content, or None when the entity does not exist."""
        try:
            return self.path_for(entity_id).read_bytes()
        except FileNotFoundError:
            return None

    def write(self, entity: BaseEntity) -> Path:
        """
        Atomically write `entity`, replacing any previous version.

        Returns:
            Path of the entity file
        """
        path = self.path_for(entity.id)
        atomic_write_bytes(path, canonical_bytes(entity), fsync=self.config.fsync)
        logger.debug("Wrote %s v%d", entity.id, entity.version)
        return path

    def create(self, entity: BaseEntity) -> Path:
        """
        Atomically write a new entity, failing if its ID is taken.

        Raises:
            CollisionError: If a file for the ID already exists
        """
        path = self.path_for(entity.id)
        try:
            atomic_write_bytes(
                path, canonical_bytes(entity), exclusive=True, fsync=self.config.fsync
            )
        except FileExistsError:
            raise CollisionError(entity.id) from None
        logger.debug("Created %s", entity.id)
        return path

    def write_bytes(self, entity_id: str, data: bytes) -> Path:
        """Atomically write raw content (used when adopting branch blobs as-is)."""
        path = self.path_for(entity_id)
        atomic_write_bytes(path, data, fsync=self.config.fsync)
        return path

    def delete(self, entity_id: str) -> bool:
        """Remove the file for `entity_id`. Returns False if it did not exist."""
        try:
            self.path_for(entity_id).unlink()
        except FileNotFoundError:
            return False
        logger.debug("Deleted %s", entity_id)
        return True

    def _types(self, collection: str | None) -> list[EntityType]:
        if collection is None:
            return self.registry.types()
        if collection in self.registry:
            return [self.registry.get(collection)]
        return [self.registry.for_collection(collection)]

    def iter_ids(self, collection: str | None = None) -> Iterator[str]:
        """
        Yield the IDs of stored entities, in sorted order per collection.

        Args:
            collection: Collection name or type code (all when None)
        """
        for entity_type in self._types(collection):
            directory = self.root / entity_type.collection
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob(f"*{ENTITY_SUFFIX}")):
                if is_temp_file(path):
                    continue
                yield path.stem

    def list(self, collection: str | None = None) -> ListResult:
        """
        Read every entity of a collection (or all collections).

        Unreadable files do not stop the listing; they are collected in
        `ListResult.errors`.
        """
        result = ListResult()
        for entity_id in self.iter_ids(collection):
            try:
                result.entities.append(self.read(entity_id))
            except ParseError as e:
                logger.warning("Skipping unreadable entity %s: %s", entity_id, e)
                result.errors.append(e)
        return result

    def sweep_temp_files(self) -> list[Path]:
        """Remove abandoned temp files older than the configured age."""
        return sweep_temp_files(self.root, self.config.temp_max_age_seconds)
