"""
Canonical serialization and content hashing.

The canonical form of an entity is JSON with recursively sorted keys, a
two-space indent, UTF-8 without ASCII escaping, explicit nulls and exactly
one trailing newline. Set-like fields are already sorted by the models, so
equal logical content yields identical bytes on every replica.

The content hash is SHA-256 over the canonical form with `version` removed.
The version counter is informational: two copies that differ only in
version hold the same data and must not be reported as a conflict.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from cairn.core.entities.models import BaseEntity
from cairn.core.entities.registry import EntityRegistry
from cairn.core.exceptions import ParseError, UnknownEntityTypeError

HASH_EXCLUDED_FIELDS = frozenset({"version"})


def canonical_dumps(data: Any) -> str:
    """Serialize plain JSON data in canonical form."""
    return json.dumps(data, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def to_canonical_dict(entity: BaseEntity) -> dict[str, Any]:
    """JSON-compatible dict of every field of `entity`."""
    return entity.model_dump(mode="json")


def canonical_json(entity: BaseEntity) -> str:
    """The exact text written to an entity file."""
    return canonical_dumps(to_canonical_dict(entity))


def canonical_bytes(entity: BaseEntity) -> bytes:
    return canonical_json(entity).encode("utf-8")


def content_hash(entity: BaseEntity) -> str:
    """
    SHA-256 hex digest of the entity content, excluding `version`.

    Example:
        >>> a = WorkItem(id="wi-0000000001", title="x")
        >>> content_hash(a) == content_hash(a.model_copy(update={"version": 9}))
        True
    """
    data = {
        k: v for k, v in to_canonical_dict(entity).items() if k not in HASH_EXCLUDED_FIELDS
    }
    return hashlib.sha256(canonical_dumps(data).encode("utf-8")).hexdigest()


def entity_from_data(
    data: Any, registry: EntityRegistry, path: Path | str | None = None
) -> BaseEntity:
    """
    Validate decoded JSON into the registered model for its type.

    Raises:
        ParseError: If the data is not an object, has an unknown type, or
            fails model validation
    """
    if not isinstance(data, dict):
        raise ParseError("Entity content is not a JSON object", path=path)
    type_code = data.get("type")
    if not isinstance(type_code, str):
        raise ParseError("Entity has no type discriminator", path=path)
    try:
        model = registry.get(type_code).model
    except UnknownEntityTypeError as e:
        raise ParseError(str(e), path=path) from e
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Invalid {type_code} entity: {e}", path=path) from e


def parse_entity(
    text: str | bytes, registry: EntityRegistry, path: Path | str | None = None
) -> BaseEntity:
    """
    Parse persisted entity content.

    Raises:
        ParseError: If the content is not valid JSON or not a valid entity
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Malformed JSON: {e}", path=path) from e
    return entity_from_data(data, registry, path)
