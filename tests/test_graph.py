"""
Tests for blocking relationships between work items.

Tests cover:
- Open blockers, ignoring closed and missing ones
- blocked(): explicit status and open blockers
- ready(): open, unassigned, unblocked, kind filter and ordering
"""

from __future__ import annotations

from cairn.core.entities import (
    Dependency,
    DependencyGraph,
    DependencyType,
    ItemKind,
    WorkItem,
)


def _item(suffix: str, blocks: tuple[str, ...] = (), **fields) -> WorkItem:
    fields.setdefault("title", f"Item {suffix}")
    return WorkItem(
        id=f"wi-{suffix * 10}",
        dependencies=[Dependency(target=f"wi-{t * 10}") for t in blocks],
        **fields,
    )


class TestOpenBlockers:
    """Tests for DependencyGraph.open_blockers()."""

    def test_open_blocker(self) -> None:
        """An open item with a blocks dependency blocks its target."""
        graph = DependencyGraph([_item("a", blocks=("b",)), _item("b")])
        assert [i.id for i in graph.open_blockers("wi-bbbbbbbbbb")] == ["wi-aaaaaaaaaa"]
        assert graph.open_blockers("wi-aaaaaaaaaa") == []

    def test_closed_blocker_ignored(self) -> None:
        """Closing the blocker releases the target."""
        graph = DependencyGraph([_item("a", blocks=("b",), status="closed"), _item("b")])
        assert graph.open_blockers("wi-bbbbbbbbbb") == []

    def test_related_dependency_does_not_block(self) -> None:
        """Only blocks dependencies count."""
        related = WorkItem(
            id="wi-aaaaaaaaaa",
            title="Item a",
            dependencies=[Dependency(target="wi-bbbbbbbbbb", type=DependencyType.RELATED)],
        )
        graph = DependencyGraph([related, _item("b")])
        assert graph.open_blockers("wi-bbbbbbbbbb") == []

    def test_missing_target_or_blocker(self) -> None:
        """References to items outside the snapshot never block."""
        graph = DependencyGraph([_item("a", blocks=("z",)), _item("b")])
        assert graph.open_blockers("wi-bbbbbbbbbb") == []
        assert graph.blocked() == []


class TestBlocked:
    """Tests for DependencyGraph.blocked()."""

    def test_blocked_by_status_and_dependency(self) -> None:
        """Status blocked and open blockers both count; closed items never do."""
        items = [
            _item("a", blocks=("b", "d"), priority=3),
            _item("b", priority=1),
            _item("c", status="blocked", priority=2),
            _item("d", status="closed", closed_at="2026-03-01T12:00:00Z"),
        ]

        found = DependencyGraph(items).blocked()

        assert [b.item.id for b in found] == ["wi-bbbbbbbbbb", "wi-cccccccccc"]
        assert [i.id for i in found[0].blockers] == ["wi-aaaaaaaaaa"]
        assert not found[0].explicitly_blocked
        assert found[1].explicitly_blocked


class TestReady:
    """Tests for DependencyGraph.ready()."""

    def test_ready_items(self) -> None:
        """Open, unassigned, unblocked items are ready, highest priority first."""
        items = [
            _item("a", blocks=("b",), priority=3),
            _item("b", priority=0),
            _item("c", priority=1),
            _item("d", assignee="alice"),
            _item("e", status="in_progress"),
        ]

        ready = DependencyGraph(items).ready()

        assert [i.id for i in ready] == ["wi-cccccccccc", "wi-aaaaaaaaaa"]

    def test_closing_blocker_makes_target_ready(self) -> None:
        """Once its blocker closes, the target becomes ready."""
        items = [_item("a", blocks=("b",), status="closed"), _item("b")]
        assert [i.id for i in DependencyGraph(items).ready()] == ["wi-bbbbbbbbbb"]

    def test_kind_filter(self) -> None:
        """Only items of the requested kind are returned."""
        items = [_item("a", kind="bug"), _item("b", kind="feature")]
        ready = DependencyGraph(items).ready(ItemKind.BUG)
        assert [i.id for i in ready] == ["wi-aaaaaaaaaa"]
