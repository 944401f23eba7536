"""
Sync branch metadata (`meta.yml`).

Holds the schema versions of the branch layout and the tombstones of
hard-deleted entities. Two copies merge without conflict: schema versions
by max, creation time by min, tombstones by union.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from cairn.core.entities.models import BaseEntity, Timestamp, ensure_utc, utc_now
from cairn.core.exceptions import ParseError
from cairn.core.store.atomic import atomic_write_text

logger = logging.getLogger(__name__)

META_FILE = "meta.yml"
SCHEMA_VERSION = 1


class BranchMeta(BaseModel):
    """
    Contents of `meta.yml` at the root of the sync branch.

    Example:
        >>> meta = BranchMeta()
        >>> meta.tombstone("wi-0a1b2c3d4e")
        >>> "wi-0a1b2c3d4e" in meta.tombstones
        True
    """

    schema_version: int = Field(default=SCHEMA_VERSION, ge=1)
    created_at: Timestamp = Field(default_factory=utc_now)
    collections: dict[str, int] = Field(
        default_factory=dict, description="Schema version per collection"
    )
    tombstones: dict[str, Timestamp] = Field(
        default_factory=dict, description="Hard-deleted entity IDs and deletion time"
    )

    def tombstone(self, entity_id: str, deleted_at: datetime | None = None) -> None:
        self.tombstones[entity_id] = ensure_utc(deleted_at) if deleted_at else utc_now()

    def is_deleted(self, entity: BaseEntity) -> bool:
        """
        True if `entity` is covered by a tombstone.

        A copy written after the deletion (for example by a restore)
        outlives the tombstone.
        """
        deleted_at = self.tombstones.get(entity.id)
        return deleted_at is not None and deleted_at >= entity.updated_at

    def merge(self, other: BranchMeta) -> BranchMeta:
        tombstones = dict(self.tombstones)
        for entity_id, deleted_at in other.tombstones.items():
            current = tombstones.get(entity_id)
            tombstones[entity_id] = deleted_at if current is None else max(current, deleted_at)

        collections = dict(self.collections)
        for name, version in other.collections.items():
            collections[name] = max(collections.get(name, 0), version)

        return BranchMeta(
            schema_version=max(self.schema_version, other.schema_version),
            created_at=min(self.created_at, other.created_at),
            collections=collections,
            tombstones=tombstones,
        )

    def dumps(self) -> str:
        return yaml.safe_dump(
            self.model_dump(mode="json"), sort_keys=True, default_flow_style=False
        )

    @classmethod
    def loads(cls, text: str | bytes, path: Path | str | None = None) -> BranchMeta:
        """
        Parse `meta.yml` content.

        Raises:
            ParseError: If the YAML is malformed or fails validation
        """
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ParseError(f"Malformed {META_FILE}: {e}", path=path) from e
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"Invalid {META_FILE}: {e}", path=path) from e


def load_meta(root: Path) -> BranchMeta | None:
    """Read `meta.yml` from a data root; None if it does not exist."""
    path = root / META_FILE
    try:
        text = path.read_bytes()
    except FileNotFoundError:
        return None
    return BranchMeta.loads(text, path)


def save_meta(root: Path, meta: BranchMeta) -> None:
    atomic_write_text(root / META_FILE, meta.dumps())
