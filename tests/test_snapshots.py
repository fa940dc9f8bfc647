"""Tests for the snapshot store."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from stackctl.snapshots import (
    METADATA_NAME,
    SnapshotError,
    SnapshotKind,
    SnapshotNotFoundError,
    SnapshotSet,
    SnapshotStore,
    normalize_kind,
)

BASE = datetime(2024, 1, 1, 8, 0, 0, tzinfo=UTC)


def _complete(store: SnapshotStore, kind: str, *, minutes: int = 0) -> SnapshotSet:
    """Write a complete snapshot of *kind* with dummy payloads."""
    workspace = store.allocate(kind, now=BASE + timedelta(minutes=minutes))
    (workspace.config_dir / "settings.yml").write_text("database: {}\n", encoding="utf-8")
    workspace.database_dump.write_bytes(b"dump")
    workspace.tree_archive.write_bytes(b"tree")
    return store.finalize(
        workspace,
        SnapshotSet(
            id=workspace.id,
            kind=workspace.kind,
            created_at=workspace.created_at,
            source_version="1.0.0",
            path=workspace.final_path,
            config_name="settings.yml",
            checksums={},
            size_bytes=store.measure(workspace),
        ),
    )


def test_allocate_builds_partial_layout(tmp_path: Path) -> None:
    """A new workspace lives under ``<id>.partial`` with config and database dirs."""
    store = SnapshotStore(tmp_path / "snapshots")

    workspace = store.allocate(SnapshotKind.PRE_UPDATE, now=BASE)

    assert workspace.id == "backup-20240101-080000-pre-update"
    assert workspace.path.name == f"{workspace.id}.partial"
    assert workspace.config_dir.is_dir()
    assert workspace.database_dir.is_dir()
    assert oct(store.root.stat().st_mode & 0o777) == "0o711"


def test_finalize_publishes_snapshot(tmp_path: Path) -> None:
    """Finalising renames the workspace and makes it listable."""
    store = SnapshotStore(tmp_path / "snapshots")

    snapshot = _complete(store, "manual")

    assert snapshot.path.name == snapshot.id
    assert (snapshot.path / METADATA_NAME).is_file()
    assert store.partials() == []
    assert [item.id for item in store.list_snapshots()] == [snapshot.id]


def test_listing_skips_partial_incomplete_and_corrupt(tmp_path: Path) -> None:
    """Only complete snapshots with readable metadata are listed."""
    store = SnapshotStore(tmp_path / "snapshots")
    good = _complete(store, "manual")
    store.allocate("manual", now=BASE + timedelta(minutes=5))

    incomplete = _complete(store, "initial", minutes=10)
    incomplete.tree_archive.unlink()

    corrupt = store.root / "backup-20240101-090000-manual"
    corrupt.mkdir()
    (corrupt / METADATA_NAME).write_text("{not json", encoding="utf-8")

    assert [item.id for item in store.list_snapshots()] == [good.id]
    assert store.get(incomplete.id) is None
    assert len(store.partials()) == 1


def test_list_orders_newest_first_and_marks_protected(tmp_path: Path) -> None:
    """Listing is newest first and flags the protected id."""
    store = SnapshotStore(tmp_path / "snapshots")
    old = _complete(store, "initial")
    new = _complete(store, "manual", minutes=1)

    listed = store.list_snapshots(protected_id=old.id)

    assert [item.id for item in listed] == [new.id, old.id]
    assert [item.protected for item in listed] == [False, True]


def test_require_and_delete(tmp_path: Path) -> None:
    """Missing snapshots raise; deleting removes the directory."""
    store = SnapshotStore(tmp_path / "snapshots")
    snapshot = _complete(store, "manual")

    with pytest.raises(SnapshotNotFoundError):
        store.require("backup-19990101-000000-manual")
    with pytest.raises(SnapshotNotFoundError):
        store.require(f"{snapshot.id}.partial")

    store.delete(snapshot.id)
    assert not snapshot.path.exists()
    with pytest.raises(SnapshotNotFoundError):
        store.delete(snapshot.id)


def test_verify_reports_mismatch_and_unrecorded(tmp_path: Path) -> None:
    """Verification compares payload checksums without raising."""
    store = SnapshotStore(tmp_path / "snapshots")
    snapshot = _complete(store, "manual")
    metadata = json.loads(snapshot.metadata_path.read_text(encoding="utf-8"))
    metadata["checksums"] = {"config": "0" * 64}
    snapshot.metadata_path.write_text(json.dumps(metadata), encoding="utf-8")

    report = store.verify(store.require(snapshot.id))

    assert report == {"config": "mismatch", "database": "unrecorded", "tree": "unrecorded"}


def test_metadata_round_trip(tmp_path: Path) -> None:
    """Metadata written by finalize reads back into an equal description."""
    store = SnapshotStore(tmp_path / "snapshots")
    snapshot = _complete(store, "manual")

    again = SnapshotSet.from_metadata(snapshot.path, snapshot.to_metadata())

    assert again.id == snapshot.id
    assert again.created_at == snapshot.created_at
    assert again.config_name == "settings.yml"
    assert again.to_listing()["created_at"] == "2024-01-01T08:00:00+00:00"


def test_malformed_metadata_raises() -> None:
    """Metadata lacking a kind is rejected."""
    with pytest.raises(SnapshotError):
        SnapshotSet.from_metadata(Path("/x"), {"created_at": BASE.isoformat()})


@pytest.mark.parametrize("kind", ["pre update", "", "a" * 41, "../x"])
def test_normalize_kind_rejects_bad_tags(kind: str) -> None:
    """Kinds are lowercase tags of letters, digits and dashes."""
    with pytest.raises(SnapshotError):
        normalize_kind(kind)


def test_normalize_kind_lowercases() -> None:
    """Kinds are case-folded and enum members map to their value."""
    assert normalize_kind(" Manual ") == "manual"
    assert normalize_kind(SnapshotKind.FINAL) == "final-pre-uninstall"


def test_remove_partial_deletes_only_leftovers(tmp_path: Path) -> None:
    """Leftover workspaces can be removed; complete snapshots are refused."""
    store = SnapshotStore(tmp_path / "snapshots")
    good = _complete(store, "manual")
    workspace = store.allocate("manual", now=BASE + timedelta(minutes=5))

    (leftover,) = store.partials()
    assert leftover == workspace.path
    store.remove_partial(leftover)

    assert store.partials() == []
    with pytest.raises(SnapshotError):
        store.remove_partial(good.path)
    assert [item.id for item in store.list_snapshots()] == [good.id]
