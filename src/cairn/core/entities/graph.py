"""
Blocking relationships between work items.

A pure query object built from a snapshot of work items. A `blocks`
dependency on item A with target B means A blocks B: B cannot be worked on
until A is closed. Blockers that are missing from the snapshot (deleted, or
not synced yet) never block anything.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cairn.core.entities.models import DependencyType, ItemKind, ItemStatus, WorkItem


@dataclass(frozen=True)
class BlockedItem:
    """A work item that cannot be worked on, with the open items blocking it."""

    item: WorkItem
    blockers: list[WorkItem] = field(default_factory=list)

    @property
    def explicitly_blocked(self) -> bool:
        """True when only the item's own status marks it blocked."""
        return not self.blockers


def _by_priority(item: WorkItem) -> tuple[int, str]:
    return item.priority, item.id


class DependencyGraph:
    """Immutable view of `blocks` dependencies over a snapshot of items.

    Example::

        graph = DependencyGraph(items)
        graph.ready()      # open, unassigned, nothing open blocking it
        graph.blocked()    # not closed, and blocked by status or by an open item
    """

    __slots__ = ("_items", "_blocked_by")

    def __init__(self, items: list[WorkItem]) -> None:
        self._items: dict[str, WorkItem] = {i.id: i for i in items}

        # blocked_by[B] = {A} means A blocks B
        self._blocked_by: dict[str, set[str]] = {}
        for item in items:
            for dep in item.dependencies:
                if dep.type == DependencyType.BLOCKS:
                    self._blocked_by.setdefault(dep.target, set()).add(item.id)

    def open_blockers(self, item_id: str) -> list[WorkItem]:
        """Items blocking `item_id` that are not closed yet, by priority."""
        blockers = [
            self._items[blocker_id]
            for blocker_id in self._blocked_by.get(item_id, set())
            if blocker_id in self._items
            and self._items[blocker_id].status != ItemStatus.CLOSED
        ]
        return sorted(blockers, key=_by_priority)

    def blocked(self) -> list[BlockedItem]:
        """Items that are not closed and either marked blocked or have an open blocker."""
        found = []
        for item in sorted(self._items.values(), key=_by_priority):
            if item.status == ItemStatus.CLOSED:
                continue
            blockers = self.open_blockers(item.id)
            if blockers or item.status == ItemStatus.BLOCKED:
                found.append(BlockedItem(item=item, blockers=blockers))
        return found

    def ready(self, kind: ItemKind | None = None) -> list[WorkItem]:
        """Open, unassigned items with no open blocker, by priority."""
        return [
            item
            for item in sorted(self._items.values(), key=_by_priority)
            if item.status == ItemStatus.OPEN
            and not item.assignee
            and (kind is None or item.kind == kind)
            and not self.open_blockers(item.id)
        ]
