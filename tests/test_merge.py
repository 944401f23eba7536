"""
Tests for conflict detection and the field-level merge engine.

Tests cover:
- classify() resolutions with and without a common ancestor
- Winner selection (later updated_at, hash tie-break, symmetry)
- Per-strategy behavior: lww_with_attic, lww, union, merge_by_id,
  extensions, immutable, max_plus_one, recalculate
- Post-merge invariants and idempotence
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cairn.core.config import MergeConfig
from cairn.core.entities import (
    Dependency,
    DependencyType,
    Message,
    WorkItem,
    content_hash,
)
from cairn.core.exceptions import IntegrityError
from cairn.core.merge import FieldRule, Resolution, Side, Strategy
from cairn.core.merge.rules import WORK_ITEM_RULES
from cairn.core.merge.detector import classify, needs_merge
from cairn.core.merge.engine import MergeEngine, check_immutable, merge, pick_winner

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(minutes=1)
T2 = T0 + timedelta(minutes=2)
NOW = T0 + timedelta(hours=1)


def _item(updated_at: datetime = T0, version: int = 1, **fields) -> WorkItem:
    fields.setdefault("title", "Fix login")
    return WorkItem(
        id="wi-0000000001", created_at=T0, updated_at=updated_at, version=version, **fields
    )


class TestClassify:
    """Tests for classify()."""

    def test_absent_both(self) -> None:
        """Nothing on either side is a no-op."""
        assert classify(None, None) is Resolution.NOOP

    def test_one_sided(self) -> None:
        """A copy on one side only is published or adopted."""
        assert classify(_item(), None) is Resolution.OUTBOUND
        assert classify(None, _item()) is Resolution.INBOUND

    def test_equal_hash_in_sync(self) -> None:
        """Copies differing only in version are in sync."""
        assert classify(_item(version=1), _item(version=5)) is Resolution.IN_SYNC
        assert not needs_merge(_item(version=1), _item(version=5))

    def test_divergent_without_base(self) -> None:
        """Different content without an ancestor needs a merge."""
        assert classify(_item(title="a"), _item(title="b")) is Resolution.MERGE

    def test_local_unchanged_fast_forwards(self) -> None:
        """If local equals the ancestor, remote is taken."""
        base = _item()
        remote = _item(T1, 2, title="remote")
        assert classify(base, remote, base) is Resolution.FAST_FORWARD

    def test_remote_unchanged_keeps_local(self) -> None:
        """If remote equals the ancestor, local is kept."""
        base = _item()
        local = _item(T1, 2, title="local")
        assert classify(local, base, base) is Resolution.KEEP_LOCAL

    def test_both_changed_merge(self) -> None:
        """If both sides moved from the ancestor, merge."""
        base = _item()
        assert (
            classify(_item(T1, 2, title="a"), _item(T2, 2, title="b"), base) is Resolution.MERGE
        )


class TestPickWinner:
    """Tests for winner selection."""

    def test_later_timestamp_wins(self) -> None:
        """The copy updated later wins regardless of version."""
        local = _item(T2, version=1, title="a")
        remote = _item(T1, version=9, title="b")
        assert pick_winner(local, remote) is Side.LOCAL
        assert pick_winner(remote, local) is Side.REMOTE

    def test_equal_timestamps_break_by_hash(self) -> None:
        """On a tie the greater content hash wins, on either replica."""
        a = _item(T1, title="alpha")
        b = _item(T1, title="beta")
        expected_winner = a if content_hash(a) > content_hash(b) else b

        result_ab = merge(a, b, now=NOW)
        result_ba = merge(b, a, now=NOW)

        assert result_ab.merged.title == expected_winner.title
        assert result_ba.merged.title == expected_winner.title


class TestCheckImmutable:
    """Tests for check_immutable()."""

    def test_agreeing_copies_pass(self) -> None:
        """Copies differing only in mutable fields are accepted."""
        edited = _item(T1, 2, title="x", created_by="alice")
        check_immutable(_item(created_by="alice"), edited, WORK_ITEM_RULES)

    def test_one_sided_change_detected(self) -> None:
        """A changed created_by is caught even without a merge."""
        with pytest.raises(IntegrityError) as exc_info:
            check_immutable(
                _item(T1, 2, created_by="mallory"), _item(created_by="alice"), WORK_ITEM_RULES
            )
        assert exc_info.value.field == "created_by"

    def test_other_entity_rejected(self) -> None:
        """Copies of different entities never compare equal."""
        other = WorkItem(id="wi-0000000002", title="Fix login", created_at=T0, updated_at=T0)
        with pytest.raises(IntegrityError, match="merging with"):
            check_immutable(_item(), other, WORK_ITEM_RULES)


class TestMergeEngine:
    """Tests for MergeEngine.merge()."""

    def test_concurrent_scalar_edit_archives_loser(self) -> None:
        """The later title wins and the earlier one is discarded with context."""
        local = _item(T1, 2, title="Fix login flow")
        remote = _item(T2, 3, title="Fix login bug")

        result = merge(local, remote, now=NOW)

        assert result.merged.title == "Fix login bug"
        assert result.winner is Side.REMOTE
        assert len(result.discards) == 1
        discard = result.discards[0]
        assert discard.field == "title"
        assert discard.lost_value == "Fix login flow"
        assert discard.winner_value == "Fix login bug"
        assert discard.loser_source is Side.LOCAL
        assert discard.context["local_version"] == 2
        assert discard.context["remote_version"] == 3

    def test_version_is_max_plus_one(self) -> None:
        """The merged version is one more than the larger side."""
        result = merge(_item(T1, 4, title="a"), _item(T2, 7, title="b"), now=NOW)
        assert result.merged.version == 8

    def test_updated_at_recalculated(self) -> None:
        """updated_at is the merge time, never earlier than either side."""
        result = merge(_item(T1, title="a"), _item(T2, title="b"), now=NOW)
        assert result.merged.updated_at == NOW

        result = merge(_item(T1, title="a"), _item(T2, title="b"), now=T0)
        assert result.merged.updated_at == T2

    def test_label_union(self) -> None:
        """Labels from both sides are kept, sorted."""
        result = merge(
            _item(T1, labels=["auth", "ui"]), _item(T2, labels=["backend", "auth"]), now=NOW
        )
        assert result.merged.labels == ["auth", "backend", "ui"]
        assert result.discards == []

    def test_union_is_additive_by_default(self) -> None:
        """Without three-way unions a removal does not propagate."""
        base = _item(labels=["auth", "ui"])
        local = _item(T1, 2, labels=["auth"])
        remote = _item(T2, 2, labels=["auth", "ui", "urgent"], title="x")
        result = merge(local, remote, base=base, now=NOW)
        assert result.merged.labels == ["auth", "ui", "urgent"]

    def test_three_way_union_propagates_removal(self) -> None:
        """With three-way unions a value removed on one side stays removed."""
        engine = MergeEngine(config=MergeConfig(three_way_union=True))
        base = _item(labels=["auth", "ui"])
        local = _item(T1, 2, labels=["auth"])
        remote = _item(T2, 2, labels=["auth", "ui", "urgent"], title="x")
        result = engine.merge(local, remote, base=base, now=NOW)
        assert result.merged.labels == ["auth", "urgent"]

    def test_base_aware_one_sided_change(self) -> None:
        """A field changed on one side only takes that value without a discard."""
        base = _item(title="Fix login", priority=2)
        local = _item(T2, 2, title="Fix login", priority=0)
        remote = _item(T1, 2, title="Fix login page", priority=2)

        result = merge(local, remote, base=base, now=NOW)

        # Local is later, yet remote's title survives: local never touched it
        assert result.merged.title == "Fix login page"
        assert result.merged.priority == 0
        assert result.discards == []

    def test_lww_with_attic_due_date(self) -> None:
        """A concurrent due date change archives the earlier writer's date."""
        result = merge(
            _item(T1, due_date=T0 + timedelta(days=3)),
            _item(T2, due_date=T0 + timedelta(days=5)),
            now=NOW,
        )
        assert result.merged.due_date == T0 + timedelta(days=5)
        assert [d.field for d in result.discards] == ["due_date"]
        assert result.discards[0].lost_value == "2026-03-04T12:00:00.000000Z"

    def test_close_reason_loser_archived(self) -> None:
        """Two closes with different reasons keep both, one in the attic."""
        earlier = _item(T1, 2, status="closed", closed_at=T1, close_reason="duplicate of wi-x")
        later = _item(T2, 2, status="closed", closed_at=T2, close_reason="fixed upstream")

        result = merge(earlier, later, now=NOW)

        assert result.merged.close_reason == "fixed upstream"
        assert len(result.discards) == 1
        discard = result.discards[0]
        assert discard.field == "close_reason"
        assert discard.lost_value == "duplicate of wi-x"
        assert discard.loser_source is Side.LOCAL

    def test_closed_at_resolved_without_discard(self) -> None:
        """closed_at is derived from status, so its loser is not archived."""
        earlier = _item(T1, 2, status="closed", closed_at=T1, close_reason="done")
        later = _item(T2, 2, status="closed", closed_at=T2, close_reason="done")

        result = merge(earlier, later, now=NOW)

        assert result.merged.closed_at == T2
        assert result.discards == []

    def test_dependencies_merge_by_target(self) -> None:
        """Dependencies merge per target; conflicting items archive the loser."""
        local = _item(
            T1,
            dependencies=[
                Dependency(target="wi-aaaaaaaaaa"),
                Dependency(target="wi-bbbbbbbbbb", type=DependencyType.BLOCKS),
            ],
        )
        remote = _item(
            T2,
            dependencies=[
                Dependency(target="wi-bbbbbbbbbb", type=DependencyType.RELATED),
                Dependency(target="wi-cccccccccc"),
            ],
        )

        result = merge(local, remote, now=NOW)

        targets = {d.target: d.type for d in result.merged.dependencies}
        assert set(targets) == {"wi-aaaaaaaaaa", "wi-bbbbbbbbbb", "wi-cccccccccc"}
        assert targets["wi-bbbbbbbbbb"] == DependencyType.RELATED
        assert [d.field for d in result.discards] == ["dependencies"]
        assert result.discards[0].lost_value == {"target": "wi-bbbbbbbbbb", "type": "blocks"}

    def test_extensions_merge_per_namespace(self) -> None:
        """Namespaces on one side are kept; a shared one is LWW with attic."""
        local = _item(T1, extensions={"ci": {"run": 1}, "gh": {"issue": 12}})
        remote = _item(T2, extensions={"ci": {"run": 2}, "jira": {"key": "OPS-1"}})

        result = merge(local, remote, now=NOW)

        assert result.merged.extensions == {
            "ci": {"run": 2},
            "gh": {"issue": 12},
            "jira": {"key": "OPS-1"},
        }
        assert [d.field for d in result.discards] == ["extensions.ci"]
        assert result.discards[0].lost_value == {"run": 1}

    def test_immutable_divergence_raises(self) -> None:
        """Copies disagreeing on created_by cannot be merged."""
        with pytest.raises(IntegrityError) as exc_info:
            merge(_item(T1, created_by="alice"), _item(T2, created_by="bob"), now=NOW)
        assert exc_info.value.field == "created_by"
        assert exc_info.value.entity_id == "wi-0000000001"

    def test_message_body_immutable(self) -> None:
        """Messages never merge divergent bodies."""
        a = Message(id="ms-0000000001", author="alice", body="one", created_at=T0, updated_at=T1)
        b = Message(id="ms-0000000001", author="alice", body="two", created_at=T0, updated_at=T2)
        with pytest.raises(IntegrityError, match="body"):
            merge(a, b, now=NOW)

    def test_closed_at_consistent_after_merge(self) -> None:
        """A reopen that wins over a close clears closed_at."""
        closed = _item(T1, 2, status="closed", closed_at=T1, close_reason="done")
        reopened = _item(T2, 2, status="open")

        result = merge(closed, reopened, now=NOW)

        assert result.merged.status == "open"
        assert result.merged.closed_at is None
        assert result.merged.close_reason is None

    def test_close_that_wins_keeps_closed_at(self) -> None:
        """A winning close keeps (or stamps) closed_at."""
        closed = _item(T2, 2, status="closed", closed_at=T2)
        other = _item(T1, 2, title="renamed")
        result = merge(closed, other, base=_item(), now=NOW)
        assert result.merged.status == "closed"
        assert result.merged.closed_at == T2
        assert result.merged.title == "renamed"

    def test_unlisted_field_defaults_to_attic(self) -> None:
        """A rule table without an entry for a field archives its loser."""
        rules = {"id": FieldRule(Strategy.IMMUTABLE)}
        result = MergeEngine().merge(
            _item(T1, notes="mine"), _item(T2, notes="theirs"), rules=rules, now=NOW
        )
        assert result.merged.notes == "theirs"
        assert "notes" in [d.field for d in result.discards]

    def test_merge_by_id_rule_needs_key(self) -> None:
        """A merge_by_id rule without a key is rejected."""
        with pytest.raises(ValueError, match="key"):
            FieldRule(Strategy.MERGE_BY_ID)

    def test_merge_is_deterministic_across_replicas(self) -> None:
        """Both replicas produce byte-identical merged content."""
        a = _item(T1, 3, title="a", labels=["x"], notes="n1")
        b = _item(T2, 5, title="b", labels=["y"], priority=0)
        ab = merge(a, b, now=NOW).merged
        ba = merge(b, a, now=NOW).merged
        assert content_hash(ab) == content_hash(ba)
        assert ab.version == ba.version == 6

    def test_merge_with_itself_is_idempotent(self) -> None:
        """Merging a copy with itself changes nothing but version and updated_at."""
        item = _item(
            T1,
            3,
            labels=["auth", "ui"],
            dependencies=[
                Dependency(target="wi-aaaaaaaaaa"),
                Dependency(target="wi-bbbbbbbbbb", type=DependencyType.RELATED),
            ],
            extensions={"ci": {"run": 4}, "gh": {"issue": 12}},
        )

        result = merge(item, item, base=item, now=NOW)

        assert result.discards == []
        ignored = {"version", "updated_at"}
        assert result.merged.model_dump(exclude=ignored) == item.model_dump(exclude=ignored)
        assert result.merged.version == 4

        # Without an ancestor the result is the same
        again = merge(item, item, now=NOW)
        assert again.discards == []
        assert again.merged.model_dump(exclude=ignored) == item.model_dump(exclude=ignored)
