"""
Tests for the file-per-entity store and atomic writes.

Tests cover:
- Create, read, write, delete
- Exclusive create (ID collisions)
- Crash safety: abandoned temp files, untouched destination
- Listing with unreadable files
"""

from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from cairn.core.config import StoreConfig
from cairn.core.entities import AgentRecord, canonical_bytes
from cairn.core.exceptions import CollisionError, EntityNotFoundError, ParseError
from cairn.core.store import EntityStore, atomic_write_bytes, sweep_temp_files


class TestAtomicWrite:
    """Tests for atomic_write_bytes and temp file sweeping."""

    def test_writes_and_replaces(self, tmp_path: Path) -> None:
        """A second write replaces the first."""
        target = tmp_path / "a" / "file.json"
        atomic_write_bytes(target, b"one", fsync=False)
        atomic_write_bytes(target, b"two", fsync=False)
        assert target.read_bytes() == b"two"
        assert list(target.parent.iterdir()) == [target]

    def test_exclusive_refuses_existing(self, tmp_path: Path) -> None:
        """An exclusive write never overwrites and leaves no temp file."""
        target = tmp_path / "file.json"
        target.write_bytes(b"original")
        with pytest.raises(FileExistsError):
            atomic_write_bytes(target, b"new", exclusive=True, fsync=False)
        assert target.read_bytes() == b"original"
        assert list(tmp_path.iterdir()) == [target]

    def test_failed_write_keeps_destination(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A crash before the rename leaves the old content intact."""
        target = tmp_path / "file.json"
        target.write_bytes(b"original")

        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", boom)
        with pytest.raises(OSError, match="disk full"):
            atomic_write_bytes(target, b"new", fsync=False)
        assert target.read_bytes() == b"original"
        assert list(tmp_path.iterdir()) == [target]

    def test_sweep_removes_only_old_temp_files(self, tmp_path: Path) -> None:
        """Temp files younger than the threshold are left alone."""
        old = tmp_path / ".wi-1.json.abc.tmp"
        young = tmp_path / ".wi-2.json.def.tmp"
        old.write_bytes(b"partial")
        young.write_bytes(b"partial")
        an_hour_ago = time.time() - 3600
        os.utime(old, (an_hour_ago, an_hour_ago))

        removed = sweep_temp_files(tmp_path, max_age_seconds=600)

        assert removed == [old]
        assert not old.exists()
        assert young.exists()


class TestEntityStore:
    """Tests for EntityStore."""

    def test_create_and_read(self, store: EntityStore, make_item) -> None:
        """A created entity reads back equal."""
        item = make_item(labels=["auth"])
        path = store.create(item)
        assert path == store.root / "items" / "wi-0000000001.json"
        assert store.read(item.id) == item

    def test_file_holds_canonical_bytes(self, store: EntityStore, make_item) -> None:
        """Entity files are written in canonical form."""
        item = make_item()
        path = store.write(item)
        assert path.read_bytes() == canonical_bytes(item)

    def test_create_collision(self, store: EntityStore, make_item) -> None:
        """Creating an existing ID raises CollisionError and keeps the original."""
        store.create(make_item(title="first"))
        with pytest.raises(CollisionError):
            store.create(make_item(title="second"))
        assert store.read("wi-0000000001").title == "first"

    def test_read_missing(self, store: EntityStore) -> None:
        """Reading an unknown ID raises EntityNotFoundError."""
        with pytest.raises(EntityNotFoundError):
            store.read("wi-9999999999")
        assert store.read_bytes("wi-9999999999") is None

    def test_read_malformed(self, store: EntityStore) -> None:
        """A malformed file raises ParseError and is not repaired."""
        path = store.path_for("wi-0000000001")
        path.parent.mkdir(parents=True)
        path.write_text("{broken")
        with pytest.raises(ParseError):
            store.read("wi-0000000001")
        assert path.read_text() == "{broken"

    def test_read_wrong_id(self, store: EntityStore, make_item) -> None:
        """A file holding a different entity is a parse error."""
        store.write_bytes("wi-0000000002", canonical_bytes(make_item()))
        with pytest.raises(ParseError, match="holds entity"):
            store.read("wi-0000000002")

    def test_delete(self, store: EntityStore, make_item) -> None:
        """delete removes the file and reports whether it existed."""
        store.create(make_item())
        assert store.delete("wi-0000000001") is True
        assert store.delete("wi-0000000001") is False
        assert not store.exists("wi-0000000001")

    def test_list_by_collection(self, store: EntityStore, make_item) -> None:
        """list filters by collection name or type code."""
        store.create(make_item("wi-0000000002"))
        store.create(make_item("wi-0000000001"))
        store.create(AgentRecord(id="ag-0000000001", name="builder"))

        assert [e.id for e in store.list("items").entities] == ["wi-0000000001", "wi-0000000002"]
        assert [e.id for e in store.list("ag").entities] == ["ag-0000000001"]
        assert len(store.list().entities) == 3

    def test_list_reports_unreadable(self, store: EntityStore, make_item) -> None:
        """Unreadable files are reported without stopping the listing."""
        store.create(make_item())
        store.write_bytes("wi-0000000002", b"not json")

        result = store.list()

        assert [e.id for e in result.entities] == ["wi-0000000001"]
        assert len(result.errors) == 1
        assert "wi-0000000002" in str(result.errors[0].path)

    def test_open_sweeps_abandoned_temp_files(self, tmp_path: Path, make_item) -> None:
        """A write interrupted before its rename is cleaned up on the next open."""
        root = tmp_path / "data"
        store = EntityStore(root, config=StoreConfig(fsync=False))
        store.create(make_item(title="before crash"))

        # What a process killed mid-write leaves behind
        leftover = root / "items" / ".wi-0000000001.json.x1y2.tmp"
        leftover.write_bytes(b'{"type": "wi", "id": "wi-00')
        stale = time.time() - 7200
        os.utime(leftover, (stale, stale))

        reopened = EntityStore(root, config=StoreConfig(fsync=False))

        assert not leftover.exists()
        assert reopened.read("wi-0000000001").title == "before crash"

    def test_temp_files_not_listed(self, store: EntityStore, make_item) -> None:
        """In-flight temp files never show up as entities."""
        store.create(make_item())
        (store.root / "items" / ".wi-0000000002.json.abc.tmp").write_bytes(b"{}")
        assert list(store.iter_ids()) == ["wi-0000000001"]
