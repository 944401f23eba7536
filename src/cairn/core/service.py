"""
Entity service: the entry points of the cairn core.

Composes the entity store, attic, integrity sweep and sync service into one
API surface. The CLI (and any other interface) calls these methods instead
of reaching into the core packages directly.

- No Rich, no sys.exit, no print statements; presentation is the caller's job.
- Methods accept typed inputs, return typed outputs and raise the typed
  exceptions of `cairn.core.exceptions`.

Usage:
    >>> service = EntityService.from_project_dir()
    >>> item = service.create("wi", {"title": "Fix login", "labels": ["auth"]})
    >>> service.update(item.id, {"status": "in_progress"})
    >>> report = service.sync()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from cairn.core.attic import (
    ENTITY_FIELD,
    AtticEntry,
    AtticFilter,
    AtticReason,
    AtticStore,
    IntegritySweep,
    OrphanEntry,
    SweepReport,
)
from cairn.core.config import CairnConfig, load_config
from cairn.core.entities.graph import BlockedItem, DependencyGraph
from cairn.core.entities.ids import generate_id
from cairn.core.entities.models import (
    BaseEntity,
    ItemKind,
    WorkItem,
    ensure_utc,
    format_timestamp,
    utc_now,
)
from cairn.core.entities.registry import EntityRegistry, default_registry
from cairn.core.exceptions import CollisionError, InvalidChangeError, ParseError
from cairn.core.merge.rules import Strategy, rule_for
from cairn.core.store import EntityStore, ListResult
from cairn.core.store.atomic import is_temp_file
from cairn.core.sync import BranchMeta, SyncReport, SyncService, SyncStatus
from cairn.core.sync.meta import load_meta, save_meta
from cairn.core.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)

PROJECT_ROOT_MARKERS = (".cairn.json", ".cairn", ".git")

# Bookkeeping fields owned by the store; callers never set them directly
RESERVED_FIELDS = frozenset({"type", "id", "version", "created_at", "updated_at"})


def find_project_root(start: Path | None = None) -> Path | None:
    """
    Find the nearest directory (from `start` upwards) holding a project marker.

    Returns:
        The project root, or None if no marker is found
    """
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        if any((directory / marker).exists() for marker in PROJECT_ROOT_MARKERS):
            return directory
    return None


@dataclass
class HealthIssue:
    """One problem found by a health check."""

    check: str
    message: str
    fixable: bool = False


@dataclass
class HealthReport:
    """Result of `EntityService.check_health`."""

    checks: list[str] = field(default_factory=list)
    issues: list[HealthIssue] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def add(self, check: str, message: str, fixable: bool = False) -> None:
        self.issues.append(HealthIssue(check, message, fixable))


class EntityService:
    """
    Create, mutate, sync and repair entities in one project.

    Example:
        >>> service = EntityService(Path("."))
        >>> for entity in service.list("items").entities:
        ...     print(entity.id, entity.title)
    """

    def __init__(
        self,
        project_dir: Path,
        config: CairnConfig | None = None,
        registry: EntityRegistry | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        """
        Open the entity store of a project.

        Args:
            project_dir: Project (git repository) root
            config: Configuration (defaults to CairnConfig())
            registry: Entity types (defaults to the built-in ones)
            retry: Sync retry policy (defaults to one built from config)
        """
        self.project_dir = project_dir.resolve()
        self.config = config or CairnConfig()
        self.registry = registry or default_registry()
        data_root = self.project_dir / self.config.data_dir
        self.store = EntityStore(data_root, self.registry, self.config.store)
        self.attic = AtticStore(data_root, fsync=self.config.store.fsync)
        self.sync_service = SyncService(
            self.project_dir, self.store, self.attic, self.config, retry=retry
        )

    @classmethod
    def from_project_dir(cls, project_dir: Path | None = None) -> EntityService:
        """
        Create a service for the project containing `project_dir`.

        Configuration is loaded with the usual precedence chain.

        Raises:
            FileNotFoundError: If no project root can be found
        """
        start = project_dir or Path.cwd()
        root = find_project_root(start)
        if root is None:
            raise FileNotFoundError(
                f"Could not find project root from {start.resolve()}. "
                f"Expected one of: {', '.join(PROJECT_ROOT_MARKERS)}"
            )
        return cls(root, load_config(root))

    @property
    def data_root(self) -> Path:
        return self.store.root

    # ============================================================================
    # Entity operations
    # ============================================================================

    def create(
        self, type_code: str, fields: dict[str, Any], now: datetime | None = None
    ) -> BaseEntity:
        """
        Create a new entity with a fresh ID.

        Args:
            type_code: Type discriminator (`wi`, `ag`, `ms`, ...)
            fields: Field values; bookkeeping fields are set by the store
            now: Creation time (defaults to the current time)

        Returns:
            The entity as written

        Raises:
            UnknownEntityTypeError: If `type_code` is not registered
            InvalidChangeError: If `fields` sets reserved fields or fails validation
            CollisionError: If every generated ID was already taken
        """
        entity_type = self.registry.get(type_code)
        reserved = sorted(RESERVED_FIELDS & fields.keys())
        if reserved:
            raise InvalidChangeError(f"Cannot set reserved field(s): {', '.join(reserved)}")

        now = ensure_utc(now) if now else utc_now()
        attempts = self.config.ids.max_attempts
        entity_id = ""
        for attempt in range(1, attempts + 1):
            entity_id = generate_id(type_code, self.config.ids.length)
            data = {
                **fields,
                "type": type_code,
                "id": entity_id,
                "version": 1,
                "created_at": now,
                "updated_at": now,
            }
            data = entity_type.model.enforce_invariants(data, now)
            try:
                entity = entity_type.model.model_validate(data)
            except ValidationError as e:
                raise InvalidChangeError(f"Invalid {type_code} fields: {e}") from e
            try:
                self.store.create(entity)
            except CollisionError:
                logger.warning(
                    "ID collision on %s (attempt %d of %d)", entity_id, attempt, attempts
                )
                continue
            logger.info("Created %s", entity.id)
            return entity

        raise CollisionError(entity_id, attempts=attempts)

    def update(
        self, entity_id: str, patch: dict[str, Any], now: datetime | None = None
    ) -> BaseEntity:
        """
        Apply `patch` to an entity, writing version + 1.

        Raises:
            EntityNotFoundError: If the entity does not exist
            InvalidChangeError: If the patch touches reserved or immutable
                fields, or the result fails validation
        """
        current = self.store.read(entity_id)
        entity_type = self.registry.get(current.type)
        reserved = sorted(RESERVED_FIELDS & patch.keys())
        if reserved:
            raise InvalidChangeError(
                f"Cannot set reserved field(s): {', '.join(reserved)}", entity_id=entity_id
            )

        now = ensure_utc(now) if now else utc_now()
        before = current.model_dump(mode="json")
        data = {**before, **patch}
        data.update(
            version=current.version + 1,
            updated_at=format_timestamp(max(now, current.updated_at)),
        )
        data = type(current).enforce_invariants(data, now)
        try:
            updated = type(current).model_validate(data)
        except ValidationError as e:
            raise InvalidChangeError(
                f"Invalid update to {entity_id}: {e}", entity_id=entity_id
            ) from e

        after = updated.model_dump(mode="json")
        for name in patch:
            rule = rule_for(entity_type.rules, name)
            if rule.strategy is Strategy.IMMUTABLE and after[name] != before[name]:
                raise InvalidChangeError(f"{name!r} is immutable", entity_id=entity_id)

        self.store.write(updated)
        logger.info("Updated %s to v%d", entity_id, updated.version)
        return updated

    def get(self, entity_id: str) -> BaseEntity:
        """
        Read one entity.

        Raises:
            EntityNotFoundError: If the entity does not exist
            ParseError: If its file is malformed
        """
        return self.store.read(entity_id)

    def list(self, collection: str | None = None) -> ListResult:
        """Entities of a collection (name or type code), or of all collections."""
        return self.store.list(collection)

    def _dependency_graph(self) -> DependencyGraph:
        items = [e for e in self.store.list("items").entities if isinstance(e, WorkItem)]
        return DependencyGraph(items)

    def blocked(self, limit: int | None = None) -> list[BlockedItem]:
        """
        Work items that cannot be worked on.

        An item is blocked when it is not closed and either its status is
        `blocked` or another item that is still open blocks it. Unreadable
        files are skipped.

        Args:
            limit: Return at most this many items (highest priority first)
        """
        found = self._dependency_graph().blocked()
        return found[:limit] if limit else found

    def ready(self, kind: ItemKind | None = None, limit: int | None = None) -> list[WorkItem]:
        """
        Work items ready to pick up: open, unassigned and not blocked.

        Args:
            kind: Only items of this kind
            limit: Return at most this many items (highest priority first)
        """
        found = self._dependency_graph().ready(kind)
        return found[:limit] if limit else found

    def hard_delete(self, entity_id: str, now: datetime | None = None) -> AtticEntry:
        """
        Permanently remove an entity.

        Every reference to it is first relocated into the orphan archive,
        the entity itself is archived whole, and a tombstone is written so
        other replicas drop it on their next sync.

        Returns:
            The attic entry holding the deleted entity

        Raises:
            EntityNotFoundError: If the entity does not exist
        """
        entity = self.store.read(entity_id)
        now = max(ensure_utc(now) if now else utc_now(), entity.updated_at)

        relocated = self._integrity_sweep().relocate_references_to(entity_id, now)
        entry = AtticEntry(
            entity_id=entity_id,
            timestamp=now,
            field=ENTITY_FIELD,
            lost_value=entity.model_dump(mode="json"),
            reason=AtticReason.HARD_DELETE,
            context={"version": entity.version, "relocated_references": len(relocated.orphans)},
        )
        self.attic.record(entry)

        meta = load_meta(self.data_root) or BranchMeta()
        meta.tombstone(entity_id, now)
        save_meta(self.data_root, meta)

        self.store.delete(entity_id)
        logger.info(
            "Hard-deleted %s (%d reference(s) relocated)", entity_id, len(relocated.orphans)
        )
        return entry

    # ============================================================================
    # Sync
    # ============================================================================

    def sync(self) -> SyncReport:
        """
        Fetch, merge, commit and push the sync branch.

        Raises:
            SyncRetryExhaustedError: If every attempt failed
            GitError: If the project is not a git repository
        """
        return self.sync_service.sync()

    def pull(self) -> SyncReport:
        return self.sync_service.pull()

    def push(self) -> SyncReport:
        return self.sync_service.push()

    def sync_status(self) -> SyncStatus:
        return self.sync_service.status()

    # ============================================================================
    # Attic
    # ============================================================================

    def list_attic(self, filter: AtticFilter | None = None) -> list[AtticEntry]:
        """Conflict entries matching `filter`, oldest first."""
        return self.attic.list(filter)

    def list_orphans(self, entity_id: str | None = None) -> list[OrphanEntry]:
        return self.attic.list_orphans(entity_id)

    def show_attic(self, ref: str) -> AtticEntry | OrphanEntry:
        """
        Resolve an attic reference.

        Raises:
            AtticEntryNotFoundError: If `ref` matches no entry or several
        """
        return self.attic.get(ref)

    def restore(self, ref: str, now: datetime | None = None) -> BaseEntity:
        """
        Reapply the archived value named by `ref` as a new entity version.

        Raises:
            AtticEntryNotFoundError: If `ref` does not resolve
            RestoreError: If the value cannot be applied
        """
        entry = self.attic.get(ref)
        return self.attic.restore(entry, self.store, now)

    def prune_attic(self, older_than: datetime | None = None) -> int:
        """
        Remove attic entries older than `older_than`.

        Defaults to the configured retention; without one, nothing is pruned.
        """
        if older_than is None:
            if self.config.attic.retention_days is None:
                return 0
            older_than = utc_now() - timedelta(days=self.config.attic.retention_days)
        return self.attic.prune(older_than)

    # ============================================================================
    # Integrity
    # ============================================================================

    def _integrity_sweep(self) -> IntegritySweep:
        grace = timedelta(hours=self.config.sweep.grace_hours)
        return IntegritySweep(self.store, self.attic, grace)

    def _tombstones(self) -> dict[str, datetime]:
        meta = load_meta(self.data_root)
        return dict(meta.tombstones) if meta else {}

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """
        Relocate broken references into the orphan archive.

        References to missing targets are only relocated once the
        referencing entity is older than `sweep.grace_hours`.
        """
        return self._integrity_sweep().run(self._tombstones(), now)

    def check_health(self) -> HealthReport:
        """
        Diagnose the local store without changing it.

        Checks the git repository, branch metadata,
        unreadable entity files, broken references and abandoned temp files.
        """
        report = HealthReport()
        git = self.sync_service.git

        report.checks.append("git")
        if not git.is_repo():
            report.add("git", f"{self.project_dir} is not a git repository")

        report.checks.append("meta")
        tombstones: dict[str, datetime] = {}
        try:
            tombstones = self._tombstones()
        except ParseError as e:
            report.add("meta", str(e))

        report.checks.append("entities")
        for error in self.store.list().errors:
            report.add("entities", f"{error.path}: {error}")

        report.checks.append("references")
        # Immutable references stay in place once archived
        kept = {
            (o.entity_id, o.field, o.target_id) for o in self.attic.list_orphans() if not o.removed
        }
        for broken in self._integrity_sweep().scan(tombstones):
            if (broken.entity_id, broken.field, broken.target_id) in kept:
                continue
            report.add(
                "references",
                f"{broken.entity_id}.{broken.field} -> {broken.target_id} ({broken.reason.value})",
                fixable=True,
            )

        report.checks.append("temp files")
        if self.data_root.is_dir():
            for path in self.data_root.rglob("*"):
                if path.is_file() and is_temp_file(path):
                    report.add("temp files", f"Leftover temp file {path}", fixable=True)

        return report
