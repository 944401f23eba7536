"""
Git-based entity synchronization service.

Each replica keeps a working copy of the sync branch under `.cairn/data/`
and a local ref `refs/heads/<branch>`. A sync cycle:

    FETCHING    fetch the remote branch into its remote-tracking ref
    COMPARING   hash-compare every entity: working copy vs remote tip,
                with the merge-base of both tips as common ancestor
    MERGING     adopt, keep, or field-merge each entity; archive losers
    STAGING     hash the working copy into a private index and write a tree
    COMMITTING  commit with parents [local tip, remote tip] and move the
                local ref with a compare-and-swap update-ref
    PUSHING     fast-forward push; a rejection goes back to FETCHING

All branch work uses git plumbing, so the user's checkout, HEAD and index
are never touched. A corrupt or conflicting entity is reported and kept
as-is; it never aborts the rest of the cycle.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cairn.core.attic.models import AtticEntry
from cairn.core.attic.store import ATTIC_DIR, ENTRY_SUFFIX, AtticStore
from cairn.core.config.models import CairnConfig
from cairn.core.entities.canonical import parse_entity
from cairn.core.entities.models import BaseEntity, utc_now
from cairn.core.exceptions import (
    GitError,
    IntegrityError,
    ParseError,
    PushRejectedError,
    SyncRetryExhaustedError,
    UnknownEntityTypeError,
)
from cairn.core.merge.detector import classify
from cairn.core.merge.engine import MergeEngine, check_immutable
from cairn.core.merge.models import Resolution
from cairn.core.store.atomic import atomic_write_bytes, is_temp_file
from cairn.core.store.entity_store import ENTITY_SUFFIX, EntityStore
from cairn.core.sync.git import GitRepo
from cairn.core.sync.meta import META_FILE, SCHEMA_VERSION, BranchMeta, load_meta, save_meta
from cairn.core.sync.models import (
    EntityConflict,
    EntityError,
    SyncPhase,
    SyncReport,
    SyncState,
    SyncStatus,
)
from cairn.core.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)

_ATTIC_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


class _RetryableFailure(Exception):
    """A transport failure or lost race that warrants another attempt."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(str(cause))
        self.cause = cause


@dataclass
class _Tree:
    """File listing of one commit plus the blobs read from it."""

    files: dict[str, str] = field(default_factory=dict)
    blobs: dict[str, bytes] = field(default_factory=dict)

    def read(self, path: str) -> bytes | None:
        sha = self.files.get(path)
        if sha is None:
            return None
        return self.blobs.get(sha)


def _attic_timestamp(path: str) -> datetime | None:
    """Timestamp encoded in an attic file name, if it parses."""
    stem = Path(path).name.split("_", 1)[0]
    try:
        return datetime.strptime(stem, _ATTIC_STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class SyncService:
    """
    Service for syncing entities through a git branch.

    Example:
        >>> sync = SyncService(Path("."), store, attic, config)
        >>> report = sync.sync()
        >>> print(report.summary())
        sync succeeded, commit 1a2b3c4d, 3 inbound, 1 merged, pushed
    """

    STATE_FILE = ".cairn/.sync-state.json"
    IGNORE_FILE = ".cairn/.gitignore"

    def __init__(
        self,
        project_dir: Path,
        store: EntityStore,
        attic: AtticStore,
        config: CairnConfig | None = None,
        engine: MergeEngine | None = None,
        retry: RetryPolicy | None = None,
        git: GitRepo | None = None,
    ) -> None:
        """
        Initialize the sync service.

        Args:
            project_dir: Root of the git repository
            store: Entity store over the branch working copy
            attic: Attic over the same working copy
            config: Configuration (defaults to CairnConfig())
            engine: Merge engine (defaults to one built from config)
            retry: Retry policy (defaults to one built from config)
            git: Git client (defaults to one rooted at project_dir)
        """
        self.project_dir = project_dir.resolve()
        self.store = store
        self.attic = attic
        self.config = config or CairnConfig()
        self.engine = engine or MergeEngine(store.registry, self.config.merge)
        self.retry = retry or RetryPolicy.from_config(self.config.sync)
        self.git = git or GitRepo(self.project_dir, timeout=self.config.sync.git_timeout_seconds)
        self._state: SyncState | None = None

    @property
    def branch_name(self) -> str:
        return self.config.sync.branch

    @property
    def remote_name(self) -> str:
        return self.config.sync.remote

    @property
    def branch_ref(self) -> str:
        """Full git ref for the sync branch."""
        return f"refs/heads/{self.branch_name}"

    @property
    def remote_ref(self) -> str:
        """Remote-tracking ref the sync branch is fetched into."""
        return f"refs/remotes/{self.remote_name}/{self.branch_name}"

    @property
    def state_file_path(self) -> Path:
        """Full path to the sync state file."""
        return self.project_dir / self.STATE_FILE

    @property
    def data_root(self) -> Path:
        return self.store.root

    # State

    def _load_state(self) -> SyncState:
        """Load sync state from file or return default state."""
        if self._state is not None:
            return self._state

        if self.state_file_path.exists():
            try:
                content = self.state_file_path.read_text(encoding="utf-8")
                self._state = SyncState.model_validate_json(content)
                return self._state
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("Failed to load sync state: %s", e)

        self._state = SyncState(
            node_id=self.config.node_id or f"n-{secrets.token_hex(4)}",
            branch_name=self.branch_name,
            remote_name=self.remote_name,
        )
        return self._state

    def _save_state(self, state: SyncState) -> None:
        """Save sync state to file atomically."""
        self._state = state
        atomic_write_bytes(
            self.state_file_path,
            state.model_dump_json(indent=2).encode("utf-8"),
            fsync=self.config.store.fsync,
        )

    def get_state(self) -> SyncState:
        return self._load_state()

    def _ensure_ignored(self) -> None:
        # Working copy and state are local; keep them out of the user's commits
        ignore = self.project_dir / self.IGNORE_FILE
        if not ignore.exists():
            ignore.parent.mkdir(parents=True, exist_ok=True)
            ignore.write_text("*\n", encoding="utf-8")

    def is_initialized(self) -> bool:
        """True once the local sync branch exists."""
        if not self.git.is_repo():
            return False
        return self.git.rev_parse(self.branch_ref) is not None

    # Tree helpers

    def _entity_id_for(self, path: str) -> str | None:
        """Entity ID stored at branch path `path`, or None if not an entity file."""
        directory, sep, name = path.partition("/")
        if not sep or "/" in name or not name.endswith(ENTITY_SUFFIX):
            return None
        entity_id = name[: -len(ENTITY_SUFFIX)]
        try:
            if self.store.relative_path(entity_id) != path:
                return None
        except UnknownEntityTypeError:
            return None
        return entity_id

    def _is_known_path(self, path: str) -> bool:
        return (
            path == META_FILE
            or (path.startswith(f"{ATTIC_DIR}/") and path.endswith(ENTRY_SUFFIX))
            or self._entity_id_for(path) is not None
        )

    def _local_files(self) -> list[str]:
        """Branch-layout files present in the working copy (relative paths)."""
        if not self.data_root.is_dir():
            return []
        files = []
        for path in self.data_root.rglob("*"):
            if not path.is_file() or is_temp_file(path):
                continue
            rel = path.relative_to(self.data_root).as_posix()
            if self._is_known_path(rel):
                files.append(rel)
        return sorted(files)

    def _read_tree(self, commit: str | None, local_files: set[str]) -> _Tree:
        """List `commit` and read the blobs a sync needs from it."""
        if commit is None:
            return _Tree()
        files = self.git.ls_tree(commit)
        wanted = [
            sha
            for path, sha in files.items()
            if path == META_FILE
            or self._entity_id_for(path) is not None
            or (path.startswith(f"{ATTIC_DIR}/") and path not in local_files)
        ]
        return _Tree(files=files, blobs=self.git.cat_blobs(wanted))

    def _parse_copy(self, data: bytes | None, entity_id: str, path: str) -> BaseEntity | None:
        if data is None:
            return None
        entity = parse_entity(data, self.store.registry, path)
        if entity.id != entity_id:
            raise ParseError(f"{path} holds entity {entity.id}", path=path)
        return entity

    # Cycle phases

    def _merge_meta(self, remote: _Tree) -> BranchMeta:
        try:
            local_meta = load_meta(self.data_root)
        except ParseError as e:
            logger.warning("Ignoring unreadable local %s: %s", META_FILE, e)
            local_meta = None

        remote_meta = None
        remote_bytes = remote.read(META_FILE)
        if remote_bytes is not None:
            try:
                remote_meta = BranchMeta.loads(remote_bytes, META_FILE)
            except ParseError as e:
                logger.warning("Ignoring unreadable remote %s: %s", META_FILE, e)

        if local_meta and remote_meta:
            meta = local_meta.merge(remote_meta)
        else:
            meta = local_meta or remote_meta or BranchMeta()

        for entity_type in self.store.registry.types():
            meta.collections.setdefault(entity_type.collection, SCHEMA_VERSION)

        new_text = meta.dumps()
        current = self.data_root / META_FILE
        if not current.exists() or current.read_text(encoding="utf-8") != new_text:
            save_meta(self.data_root, meta)
        return meta

    def _import_attic(self, remote: _Tree, local_files: set[str], now: datetime) -> None:
        """Union remote attic entries into the working copy."""
        cutoff = None
        if self.config.attic.retention_days is not None:
            cutoff = now - timedelta(days=self.config.attic.retention_days)

        for path in remote.files:
            if not path.startswith(f"{ATTIC_DIR}/") or path in local_files:
                continue
            if cutoff is not None:
                stamp = _attic_timestamp(path)
                if stamp is not None and stamp < cutoff:
                    continue
            data = remote.read(path)
            if data is not None:
                atomic_write_bytes(self.data_root / path, data, fsync=self.config.store.fsync)

    def _reconcile_entities(
        self,
        report: SyncReport,
        meta: BranchMeta,
        local_tree: _Tree,
        remote: _Tree,
        base: _Tree,
        has_remote_tip: bool,
        now: datetime,
    ) -> dict[str, str | None]:
        """
        Bring every entity in the working copy to its synced state.

        Returns:
            Branch paths pinned to an existing blob (entities that could not
            be reconciled keep their previous branch content). A None value
            keeps the path off the branch
        """
        pinned: dict[str, str | None] = {}
        reference = remote if has_remote_tip else local_tree

        remote_ids = {
            entity_id
            for path in remote.files
            if (entity_id := self._entity_id_for(path)) is not None
        }
        for entity_id in sorted(set(self.store.iter_ids()) | remote_ids):
            path = self.store.relative_path(entity_id)
            previous_sha = remote.files.get(path) or local_tree.files.get(path)

            try:
                local = self._parse_copy(self.store.read_bytes(entity_id), entity_id, path)
            except ParseError as e:
                logger.warning("Skipping %s: local copy unreadable: %s", entity_id, e)
                report.errors.append(
                    EntityError(entity_id=entity_id, kind="parse", message=str(e), path=path)
                )
                # Never-published corrupt copies stay off the branch
                pinned[path] = previous_sha
                continue

            try:
                remote_copy = self._parse_copy(remote.read(path), entity_id, path)
            except ParseError as e:
                logger.warning("Skipping %s: remote copy unreadable: %s", entity_id, e)
                report.errors.append(
                    EntityError(entity_id=entity_id, kind="parse", message=str(e), path=path)
                )
                pinned[path] = remote.files[path]
                continue

            try:
                base_copy = self._parse_copy(base.read(path), entity_id, path)
            except ParseError:
                base_copy = None

            # Copies covered by a tombstone are gone; a newer write outlives it
            if local is not None and meta.is_deleted(local):
                local = None
            if remote_copy is not None and meta.is_deleted(remote_copy):
                remote_copy = None
            if local is None and remote_copy is None:
                if self.store.delete(entity_id):
                    report.deleted += 1
                continue

            resolution = classify(local, remote_copy, base_copy)

            if resolution in (Resolution.FAST_FORWARD, Resolution.KEEP_LOCAL):
                # Only one side changed, but it may not touch immutable fields
                rules = self.engine.registry.get(local.type).rules
                try:
                    check_immutable(local, remote_copy, rules)
                except IntegrityError as e:
                    self._report_integrity(report, e, pinned, remote, path)
                    continue

            if resolution is Resolution.OUTBOUND:
                if path not in reference.files:
                    report.outbound += 1
            elif resolution in (Resolution.INBOUND, Resolution.FAST_FORWARD):
                self.store.write_bytes(entity_id, remote.read(path))
                if resolution is Resolution.INBOUND:
                    report.inbound += 1
                else:
                    report.fast_forwarded += 1
            elif resolution is Resolution.IN_SYNC:
                # Same content; keep whichever copy carries the higher version
                if remote_copy.version > local.version:
                    self.store.write_bytes(entity_id, remote.read(path))
            elif resolution is Resolution.KEEP_LOCAL:
                report.outbound += 1
            elif resolution is Resolution.MERGE:
                self._merge_one(report, local, remote_copy, base_copy, now, pinned, remote, path)

        return pinned

    def _report_integrity(
        self,
        report: SyncReport,
        error: IntegrityError,
        pinned: dict[str, str | None],
        remote: _Tree,
        path: str,
    ) -> None:
        logger.error("Integrity violation, %s not merged: %s", error.entity_id, error)
        report.errors.append(
            EntityError(entity_id=error.entity_id, kind="integrity", message=str(error), path=path)
        )
        # Local copy stays; the branch keeps the remote copy
        pinned[path] = remote.files[path]

    def _merge_one(
        self,
        report: SyncReport,
        local: BaseEntity,
        remote_copy: BaseEntity,
        base_copy: BaseEntity | None,
        now: datetime,
        pinned: dict[str, str | None],
        remote: _Tree,
        path: str,
    ) -> None:
        try:
            result = self.engine.merge(local, remote_copy, base=base_copy, now=now)
        except IntegrityError as e:
            self._report_integrity(report, e, pinned, remote, path)
            return

        self.store.write(result.merged)
        for discard in result.discards:
            entry = AtticEntry.from_discard(discard, now)
            self.attic.record(entry)
            report.attic_entries.append(entry.ref)

        report.merged += 1
        report.conflicts.append(
            EntityConflict(
                entity_id=local.id,
                local_version=local.version,
                remote_version=remote_copy.version,
                local_updated_at=local.updated_at,
                remote_updated_at=remote_copy.updated_at,
                winner=result.winner.value,
                archived_fields=[d.field for d in result.discards],
            )
        )
        if result.discards:
            logger.warning(
                "Conflict on %s: %s copy won, archived %s",
                local.id,
                result.winner.value,
                ", ".join(d.field for d in result.discards),
            )

    def _stage(self, pinned: dict[str, str | None], reference: _Tree) -> str:
        """Hash the working copy into a tree; returns the tree SHA."""
        files = {path: sha for path, sha in pinned.items() if sha}

        # Paths written by newer clients that this one does not understand
        for path, sha in reference.files.items():
            if not self._is_known_path(path):
                files[path] = sha

        disk = [p for p in self._local_files() if p not in pinned]
        shas = self.git.hash_files([self.data_root / p for p in disk])
        files.update(zip(disk, shas))
        return self.git.write_tree(files)

    def _commit(
        self, tree: str, local_tip: str | None, remote_tip: str | None, message: str
    ) -> str:
        """Create (or reuse) the commit for `tree` and move the local branch."""
        git = self.git
        if (
            remote_tip
            and (local_tip is None or git.is_ancestor(local_tip, remote_tip))
            and git.tree_of(remote_tip) == tree
        ):
            new_tip = remote_tip
        elif (
            local_tip
            and (remote_tip is None or git.is_ancestor(remote_tip, local_tip))
            and git.tree_of(local_tip) == tree
        ):
            new_tip = local_tip
        else:
            parents = [p for p in (local_tip, remote_tip) if p]
            if local_tip and remote_tip:
                if git.is_ancestor(remote_tip, local_tip):
                    parents = [local_tip]
                elif git.is_ancestor(local_tip, remote_tip):
                    parents = [remote_tip]
            new_tip = git.commit_tree(tree, parents, message)
            logger.info("Committed to %s: %s (%s)", self.branch_name, new_tip[:8], message)

        if new_tip != local_tip:
            try:
                git.update_ref(self.branch_ref, new_tip, local_tip)
            except GitError as e:
                # Another local process moved the branch first
                raise _RetryableFailure(e) from e
        return new_tip

    @staticmethod
    def _commit_message(report: SyncReport, node_id: str) -> str:
        parts = [f"cairn sync from {node_id}"]
        counts = [
            (report.outbound, "outbound"),
            (report.inbound, "inbound"),
            (report.merged, "merged"),
            (report.deleted, "deleted"),
        ]
        details = ", ".join(f"{n} {label}" for n, label in counts if n)
        if details:
            parts.append(f"({details})")
        return " ".join(parts)

    def _cycle(self, report: SyncReport, push: bool) -> None:
        """
        Run one fetch/merge/commit(/push) attempt.

        Raises:
            _RetryableFailure: On transport failure, a lost ref race, or a
                rejected push
        """
        state = self._load_state()
        now = utc_now()
        git = self.git

        report.phases.append(SyncPhase.FETCHING)
        has_remote = git.has_remote(self.remote_name)
        remote_tip = None
        if has_remote:
            try:
                if git.fetch(self.remote_name, self.branch_name):
                    remote_tip = git.rev_parse(self.remote_ref)
            except GitError as e:
                raise _RetryableFailure(e) from e
        local_tip = git.rev_parse(self.branch_ref)
        base_tip = git.merge_base(local_tip, remote_tip) if local_tip and remote_tip else None

        report.phases.append(SyncPhase.COMPARING)
        if self.config.attic.retention_days is not None:
            self.attic.prune(now - timedelta(days=self.config.attic.retention_days))
        local_files = set(self._local_files())
        remote = self._read_tree(remote_tip, local_files)
        base = remote if base_tip == remote_tip else self._read_tree(base_tip, local_files)
        local_tree = _Tree(files=git.ls_tree(local_tip)) if local_tip else _Tree()

        report.phases.append(SyncPhase.MERGING)
        self._import_attic(remote, local_files, now)
        meta = self._merge_meta(remote)
        pinned = self._reconcile_entities(
            report, meta, local_tree, remote, base, remote_tip is not None, now
        )

        report.phases.append(SyncPhase.STAGING)
        tree = self._stage(pinned, remote if remote_tip else local_tree)

        report.phases.append(SyncPhase.COMMITTING)
        message = self._commit_message(report, state.node_id)
        new_tip = self._commit(tree, local_tip, remote_tip, message)
        report.commit_sha = new_tip
        state.mark_synced(new_tip)
        self._save_state(state)

        if push and has_remote and new_tip != remote_tip:
            report.phases.append(SyncPhase.PUSHING)
            try:
                git.push(self.remote_name, new_tip, self.branch_name)
            except PushRejectedError as e:
                report.phases.append(SyncPhase.REJECTED)
                logger.info("Push rejected, another writer got there first")
                raise _RetryableFailure(e) from e
            except GitError as e:
                raise _RetryableFailure(e) from e
            report.pushed = True
            state.mark_pushed()
            self._save_state(state)
            logger.info("Pushed sync branch to %s/%s", self.remote_name, self.branch_name)
        elif push and new_tip == remote_tip:
            state.mark_pushed()
            self._save_state(state)

        if not has_remote:
            report.message = "no remote configured, committed locally"

    def _check_repo(self) -> None:
        if not self.git.is_repo():
            raise GitError(f"Not a git repository: {self.project_dir}")

    # Public operations

    def sync(self) -> SyncReport:
        """
        Fetch, merge, commit and push, retrying with backoff.

        Per-entity parse errors and integrity violations are collected in
        the report and never abort the sync.

        Returns:
            SyncReport for the successful attempt

        Raises:
            SyncRetryExhaustedError: If every attempt failed; local entity
                state is left valid and the next sync resumes from it
            GitError: If the project is not a git repository
        """
        self._check_repo()
        self._ensure_ignored()
        report = SyncReport(operation="sync", started_at=utc_now())

        last_error: Exception | None = None
        for attempt in range(self.retry.max_attempts):
            report.attempts = attempt + 1
            report.reset_counts()
            try:
                self._cycle(report, push=True)
            except _RetryableFailure as failure:
                last_error = failure.cause
                if attempt + 1 < self.retry.max_attempts:
                    self.retry.backoff(attempt)
                continue

            report.phases.append(SyncPhase.DONE)
            report.completed_at = utc_now()
            logger.info("%s", report.summary())
            return report

        logger.error("Sync gave up after %d attempts: %s", self.retry.max_attempts, last_error)
        raise SyncRetryExhaustedError(self.retry.max_attempts, last_error)

    def pull(self) -> SyncReport:
        """
        Fetch and merge remote changes, committing locally without pushing.

        Returns:
            SyncReport (success False if the fetch or ref update failed)
        """
        self._check_repo()
        self._ensure_ignored()
        report = SyncReport(operation="pull", started_at=utc_now(), attempts=1)
        try:
            self._cycle(report, push=False)
        except _RetryableFailure as failure:
            report.success = False
            report.message = f"{failure.cause}"
            if isinstance(failure.cause, GitError) and failure.cause.stderr:
                report.message += f": {failure.cause.stderr}"
        report.completed_at = utc_now()
        return report

    def push(self) -> SyncReport:
        """
        Push the local sync branch without merging.

        A rejected push is reported as a failure; run `sync` to merge first.
        """
        self._check_repo()
        report = SyncReport(operation="push", started_at=utc_now(), attempts=1)
        local_tip = self.git.rev_parse(self.branch_ref)
        if local_tip is None:
            report.success = False
            report.message = "Sync branch not initialized. Run sync first."
        elif not self.git.has_remote(self.remote_name):
            report.success = False
            report.message = f"No remote named {self.remote_name!r}"
        else:
            state = self._load_state()
            try:
                self.git.push(self.remote_name, local_tip, self.branch_name)
            except GitError as e:
                logger.error("Failed to push sync branch: %s", e.stderr or str(e))
                report.success = False
                report.message = e.stderr or str(e)
            else:
                report.pushed = True
                state.last_commit_sha = local_tip
                state.mark_pushed()
                self._save_state(state)
            report.commit_sha = local_tip
        report.completed_at = utc_now()
        return report

    def status(self) -> SyncStatus:
        """
        Sync status comparing local and remote branches.

        Returns:
            SyncStatus enum indicating the relationship between local and remote.
        """
        if not self.is_initialized():
            return SyncStatus.UNINITIALIZED

        if not self.git.has_remote(self.remote_name):
            return SyncStatus.NO_REMOTE
        try:
            fetched = self.git.fetch(self.remote_name, self.branch_name)
        except GitError as e:
            logger.warning("Failed to fetch remote: %s", e.stderr or str(e))
            return SyncStatus.NO_REMOTE
        if not fetched:
            return SyncStatus.NO_REMOTE

        local_sha = self.git.rev_parse(self.branch_ref)
        remote_sha = self.git.rev_parse(self.remote_ref)
        if local_sha is None or remote_sha is None:
            return SyncStatus.NO_REMOTE

        if local_sha == remote_sha:
            return SyncStatus.UP_TO_DATE

        merge_base = self.git.merge_base(local_sha, remote_sha)
        if merge_base == local_sha:
            return SyncStatus.BEHIND
        if merge_base == remote_sha:
            return SyncStatus.AHEAD
        return SyncStatus.DIVERGED
