from __future__ import annotations

from pathlib import Path

import pytest

from litetracker_mcp.errors import SnapshotError
from litetracker_mcp.snapshot import SnapshotManager, open_snapshot
from litetracker_mcp.store import CacheStore, StoryRow


@pytest.fixture
def store(tmp_path: Path):
    s = CacheStore(tmp_path / "litetracker.db").initialize()
    yield s
    s.close()


def _count(path: Path) -> int:
    conn = open_snapshot(path)
    try:
        return conn.execute("SELECT COUNT(*) FROM stories").fetchone()[0]
    finally:
        conn.close()


def test_snapshot_contains_committed_rows(store: CacheStore, tmp_path: Path) -> None:
    store.upsert_story(StoryRow(id=1, project_id=9, title="Cached", is_mine=True))
    manager = SnapshotManager(store, tmp_path / "litetracker-snapshot.db")

    published = manager.create_snapshot()

    assert published == manager.path
    assert not manager.tmp_path.exists()
    conn = manager.open_snapshot()
    try:
        row = conn.execute("SELECT title FROM my_stories").fetchone()
    finally:
        conn.close()
    assert row["title"] == "Cached"


def test_snapshot_is_read_only(store: CacheStore, tmp_path: Path) -> None:
    import sqlite3

    manager = SnapshotManager(store, tmp_path / "snap.db")
    manager.create_snapshot()

    conn = manager.open_snapshot()
    try:
        with pytest.raises(sqlite3.OperationalError):
            conn.execute("DELETE FROM stories")
    finally:
        conn.close()


def test_failed_copy_keeps_previous_snapshot(
    store: CacheStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store.upsert_story(StoryRow(id=1, project_id=9, title="One"))
    manager = SnapshotManager(store, tmp_path / "snap.db")
    manager.create_snapshot()

    store.upsert_story(StoryRow(id=2, project_id=9, title="Two"))

    def partial_copy(src, dst, *args, **kwargs):
        Path(dst).write_bytes(b"SQLite format 3\x00 truncated")
        raise OSError("disk full")

    monkeypatch.setattr("litetracker_mcp.snapshot.shutil.copyfile", partial_copy)

    with pytest.raises(SnapshotError):
        manager.create_snapshot()

    assert not manager.tmp_path.exists()
    assert _count(manager.path) == 1


def test_stale_tmp_file_is_replaced(store: CacheStore, tmp_path: Path) -> None:
    manager = SnapshotManager(store, tmp_path / "snap.db")
    manager.tmp_path.write_bytes(b"leftover from a crash")

    manager.create_snapshot()

    assert not manager.tmp_path.exists()
    assert _count(manager.path) == 0


def test_open_missing_snapshot_raises(tmp_path: Path) -> None:
    with pytest.raises(SnapshotError):
        open_snapshot(tmp_path / "absent.db")


def test_unremovable_tmp_path_raises_snapshot_error(store: CacheStore, tmp_path: Path) -> None:
    manager = SnapshotManager(store, tmp_path / "snap.db")
    manager.tmp_path.mkdir()
    (manager.tmp_path / "keep").write_text("x")

    with pytest.raises(SnapshotError):
        manager.create_snapshot()

    assert not manager.path.exists()


class BusyCheckpointConnection:
    """Wraps a real connection but reports a checkpoint blocked by a reader."""

    def __init__(self, conn):
        self._conn = conn

    def commit(self) -> None:
        self._conn.commit()

    def execute(self, sql: str, *args):
        if sql.startswith("PRAGMA wal_checkpoint"):
            return self
        return self._conn.execute(sql, *args)

    def fetchone(self):
        return (1, 10, 3)

    def close(self) -> None:
        self._conn.close()


def test_busy_checkpoint_is_not_published(
    store: CacheStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store.upsert_story(StoryRow(id=1, project_id=9, title="One"))
    manager = SnapshotManager(store, tmp_path / "snap.db")
    monkeypatch.setattr(store, "_conn", BusyCheckpointConnection(store._conn))

    with pytest.raises(SnapshotError) as exc_info:
        manager.create_snapshot()

    assert "checkpoint" in exc_info.value.message
    assert not manager.path.exists()
    assert not manager.tmp_path.exists()
