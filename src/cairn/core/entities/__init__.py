"""
Entity models, type registry, canonical serialization and IDs.
"""

from cairn.core.entities.canonical import (
    canonical_bytes,
    canonical_json,
    content_hash,
    parse_entity,
)
from cairn.core.entities.graph import BlockedItem, DependencyGraph
from cairn.core.entities.ids import generate_id, is_valid_id, type_code_of
from cairn.core.entities.models import (
    AgentRecord,
    AgentStatus,
    BaseEntity,
    Dependency,
    DependencyType,
    ItemKind,
    ItemStatus,
    Message,
    Reservation,
    WorkItem,
    format_timestamp,
    utc_now,
)
from cairn.core.entities.registry import (
    EntityRegistry,
    EntityType,
    ReferenceField,
    ReferenceShape,
    default_registry,
)

__all__ = [
    "AgentRecord",
    "AgentStatus",
    "BaseEntity",
    "BlockedItem",
    "Dependency",
    "DependencyType",
    "DependencyGraph",
    "EntityRegistry",
    "EntityType",
    "ItemKind",
    "ItemStatus",
    "Message",
    "ReferenceField",
    "ReferenceShape",
    "Reservation",
    "WorkItem",
    "canonical_bytes",
    "canonical_json",
    "content_hash",
    "default_registry",
    "format_timestamp",
    "generate_id",
    "is_valid_id",
    "parse_entity",
    "type_code_of",
    "utc_now",
]
