"""
Publishes a read-only copy of the cache for external readers.

The live store is checkpointed, copied to a temporary file and renamed onto
the published path. Readers of the snapshot path see either the previous
complete copy or the new one, never a partial file.
"""

from __future__ import annotations

import logging
import os
import shutil
import sqlite3
from pathlib import Path

from .errors import SnapshotError
from .store import CacheStore

logger = logging.getLogger(__name__)


class SnapshotManager:
    def __init__(self, store: CacheStore, snapshot_path: str | Path):
        self._store = store
        self._snapshot_path = Path(snapshot_path)

    @property
    def path(self) -> Path:
        return self._snapshot_path

    @property
    def tmp_path(self) -> Path:
        return self._snapshot_path.with_name(self._snapshot_path.name + ".tmp")

    def create_snapshot(self) -> Path:
        tmp_path = self.tmp_path
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            raise SnapshotError(f"remove stale {tmp_path}: {exc}") from exc

        try:
            self._store.checkpoint()
        except sqlite3.Error as exc:
            raise SnapshotError(f"checkpoint: {exc}") from exc

        try:
            shutil.copyfile(self._store.path, tmp_path)
            # The live store runs in WAL mode; the copy must open read-only
            # without -wal/-shm companions.
            conn = sqlite3.connect(str(tmp_path))
            try:
                conn.execute("PRAGMA journal_mode = DELETE").fetchone()
            finally:
                conn.close()
            os.replace(tmp_path, self._snapshot_path)
        except (OSError, sqlite3.Error) as exc:
            tmp_path.unlink(missing_ok=True)
            raise SnapshotError(f"publish snapshot: {exc}") from exc

        logger.info("Snapshot published to %s", self._snapshot_path)
        return self._snapshot_path

    def open_snapshot(self) -> sqlite3.Connection:
        return open_snapshot(self._snapshot_path)


def _require_snapshot(snapshot_path: str | Path) -> Path:
    snapshot_path = Path(snapshot_path)
    if not snapshot_path.exists():
        raise SnapshotError(f"no snapshot at {snapshot_path}; run a sync first")
    return snapshot_path


def open_snapshot(snapshot_path: str | Path) -> sqlite3.Connection:
    """Open a published snapshot read-only."""
    snapshot_path = _require_snapshot(snapshot_path)
    conn = sqlite3.connect(f"{snapshot_path.resolve().as_uri()}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def open_snapshot_store(snapshot_path: str | Path) -> CacheStore:
    """Open a published snapshot as a read-only CacheStore."""
    snapshot_path = _require_snapshot(snapshot_path)
    try:
        return CacheStore.open_read_only(snapshot_path)
    except sqlite3.Error as exc:
        raise SnapshotError(f"open snapshot {snapshot_path}: {exc}") from exc
