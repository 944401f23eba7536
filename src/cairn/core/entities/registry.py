"""
Entity type registry.

Maps each two-letter type discriminator to its model, its collection
directory on the sync branch, its merge rule table, and the fields that
hold soft references to other entities. Adding a new entity type means
registering one `EntityType`; nothing else in the store or sync engine
needs to change.

Example:
    >>> from cairn.core.entities.registry import default_registry
    >>> registry = default_registry()
    >>> registry.for_id("wi-0a1b2c3d4e").collection
    'items'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from cairn.core.entities.models import AgentRecord, BaseEntity, Message, WorkItem
from cairn.core.exceptions import UnknownEntityTypeError
from cairn.core.merge.rules import AGENT_RULES, MESSAGE_RULES, WORK_ITEM_RULES, RuleTable


class ReferenceShape(str, Enum):
    """How a reference field holds its target IDs."""

    SCALAR = "scalar"
    """A single ID or None."""

    LIST = "list"
    """A list of IDs."""

    KEYED = "keyed"
    """A list of objects whose `key` attribute is an ID."""


@dataclass(frozen=True)
class ReferenceField:
    """
    A field holding soft references checked by the integrity sweep.

    Attributes:
        name: Field name on the model
        shape: How the IDs are held
        key: Attribute holding the ID for KEYED fields
        removable: False when the field is immutable; a broken reference is
            then archived but left in place
    """

    name: str
    shape: ReferenceShape = ReferenceShape.SCALAR
    key: str | None = None
    removable: bool = True


@dataclass(frozen=True)
class EntityType:
    """Registration of one entity type."""

    code: str
    collection: str
    model: type[BaseEntity]
    rules: RuleTable
    references: tuple[ReferenceField, ...] = field(default_factory=tuple)


class EntityRegistry:
    """Lookup of entity types by discriminator, ID prefix, or collection."""

    def __init__(self) -> None:
        self._by_code: dict[str, EntityType] = {}

    def register(self, entity_type: EntityType) -> None:
        """
        Register an entity type.

        Raises:
            ValueError: If the code or collection is already registered
        """
        if entity_type.code in self._by_code:
            raise ValueError(f"Entity type {entity_type.code!r} already registered")
        if any(t.collection == entity_type.collection for t in self._by_code.values()):
            raise ValueError(f"Collection {entity_type.collection!r} already registered")
        self._by_code[entity_type.code] = entity_type

    def get(self, code: str) -> EntityType:
        try:
            return self._by_code[code]
        except KeyError:
            raise UnknownEntityTypeError(code) from None

    def for_id(self, entity_id: str) -> EntityType:
        """Entity type owning `entity_id`, from its prefix."""
        code, sep, _ = entity_id.partition("-")
        if not sep:
            raise UnknownEntityTypeError(entity_id)
        return self.get(code)

    def for_collection(self, collection: str) -> EntityType:
        for entity_type in self._by_code.values():
            if entity_type.collection == collection:
                return entity_type
        raise UnknownEntityTypeError(collection)

    def for_model(self, model: type[BaseEntity]) -> EntityType:
        for entity_type in self._by_code.values():
            if entity_type.model is model:
                return entity_type
        raise UnknownEntityTypeError(model.__name__)

    def types(self) -> list[EntityType]:
        """Registered types, ordered by discriminator."""
        return [self._by_code[code] for code in sorted(self._by_code)]

    def __contains__(self, code: object) -> bool:
        return code in self._by_code


def default_registry() -> EntityRegistry:
    """Registry with the built-in work item, agent and message types."""
    registry = EntityRegistry()
    registry.register(
        EntityType(
            code="wi",
            collection="items",
            model=WorkItem,
            rules=WORK_ITEM_RULES,
            references=(
                ReferenceField("parent_id"),
                ReferenceField("dependencies", ReferenceShape.KEYED, key="target"),
                ReferenceField("child_order", ReferenceShape.LIST),
            ),
        )
    )
    registry.register(
        EntityType(
            code="ag",
            collection="agents",
            model=AgentRecord,
            rules=AGENT_RULES,
            references=(ReferenceField("working_set", ReferenceShape.LIST),),
        )
    )
    registry.register(
        EntityType(
            code="ms",
            collection="messages",
            model=Message,
            rules=MESSAGE_RULES,
            references=(ReferenceField("reply_to", removable=False),),
        )
    )
    return registry
