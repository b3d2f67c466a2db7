"""
Local SQLite mirror of LiteTracker stories and comments.

The store only ever holds the latest known state of each remote entity. Rows
are never deleted by sync, so the cache accumulates stories even after they
drop out of the fetched state filters.

Contents are disposable: everything here can be rebuilt from the remote API
with a full sync. Schema upgrades therefore drop and recreate the data tables
instead of migrating rows.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_API_DATE_RE = re.compile(r"^(\d{1,2})\s+(\w{3})\s+(\d{4}),\s+(\d{1,2}):(\d{2})(AM|PM)$", re.IGNORECASE)
_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS stories (
        id INTEGER PRIMARY KEY,
        project_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        story_type TEXT,
        current_state TEXT,
        estimate INTEGER,
        priority TEXT,
        url TEXT,
        requested_by_id INTEGER,
        owner_names TEXT,
        label_names TEXT,
        is_mine INTEGER NOT NULL DEFAULT 0,
        mentions_me INTEGER NOT NULL DEFAULT 0,
        created_at TEXT,
        updated_at TEXT,
        synced_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comments (
        id INTEGER PRIMARY KEY,
        story_id INTEGER NOT NULL,
        project_id INTEGER NOT NULL,
        text TEXT,
        person_id INTEGER,
        person_name TEXT,
        mentions_me INTEGER NOT NULL DEFAULT 0,
        created_at TEXT,
        synced_at TEXT NOT NULL
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_stories_mine ON stories (is_mine)",
    "CREATE INDEX IF NOT EXISTS idx_stories_state ON stories (current_state)",
    "CREATE INDEX IF NOT EXISTS idx_stories_project ON stories (project_id)",
    "CREATE INDEX IF NOT EXISTS idx_stories_updated ON stories (updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_stories_mine_state ON stories (is_mine, current_state)",
    "CREATE INDEX IF NOT EXISTS idx_comments_story ON comments (story_id)",
    "CREATE INDEX IF NOT EXISTS idx_comments_mentions ON comments (mentions_me)",
    "CREATE INDEX IF NOT EXISTS idx_comments_created ON comments (created_at DESC)",
)

_STORY_COLUMNS = (
    "id, title, story_type, current_state, estimate, priority, "
    "owner_names, label_names, url, mentions_me, created_at, updated_at"
)

_VIEWS = {
    "my_stories": f"""
        SELECT {_STORY_COLUMNS}
        FROM stories WHERE is_mine = 1
        ORDER BY updated_at DESC
    """,
    "my_active_stories": f"""
        SELECT {_STORY_COLUMNS}
        FROM stories WHERE is_mine = 1 AND current_state IN ('started', 'unstarted')
        ORDER BY updated_at DESC
    """,
    "stories_mentioning_me": """
        SELECT s.id, s.title, s.current_state, s.owner_names, s.is_mine,
               s.updated_at, COUNT(c.id) AS mention_count
        FROM stories s
        JOIN comments c ON c.story_id = s.id AND c.mentions_me = 1
        GROUP BY s.id, s.title, s.current_state, s.owner_names, s.is_mine, s.updated_at
        ORDER BY s.updated_at DESC
    """,
    "recent_comments": """
        SELECT c.id, c.story_id, s.title AS story_title, c.person_name,
               c.text, c.mentions_me, c.created_at
        FROM comments c
        JOIN stories s ON s.id = c.story_id
        ORDER BY c.created_at DESC
    """,
    "story_stats": """
        SELECT
          COUNT(*) AS total_stories,
          COUNT(CASE WHEN is_mine = 1 THEN 1 END) AS my_stories,
          COUNT(CASE WHEN mentions_me = 1 THEN 1 END) AS stories_with_mentions,
          COUNT(CASE WHEN current_state = 'started' THEN 1 END) AS started,
          COUNT(CASE WHEN current_state = 'unstarted' THEN 1 END) AS unstarted,
          COUNT(CASE WHEN current_state = 'delivered' THEN 1 END) AS delivered,
          COUNT(CASE WHEN current_state = 'accepted' THEN 1 END) AS accepted,
          COUNT(CASE WHEN current_state = 'rejected' THEN 1 END) AS rejected
        FROM stories
    """,
}

_BOOL_COLUMNS = ("is_mine", "mentions_me")


def parse_api_date(value: str | None) -> str | None:
    """Convert LiteTracker's "11 Feb 2026, 04:30AM" to ISO-8601 UTC text.

    Returns None for empty or unrecognized input.
    """
    if not value:
        return None
    match = _API_DATE_RE.match(value.strip())
    if not match:
        return None
    day, month_name, year, hour, minute, meridiem = match.groups()
    month = _MONTHS.get(month_name.lower())
    if month is None:
        return None

    hour_num = int(hour)
    if hour_num > 12:
        return None
    meridiem = meridiem.upper()
    if meridiem == "PM" and hour_num != 12:
        hour_num += 12
    if meridiem == "AM" and hour_num == 12:
        hour_num = 0

    try:
        parsed = datetime(int(year), month, int(day), hour_num, int(minute), tzinfo=timezone.utc)
    except ValueError:
        return None
    return parsed.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class StoryRow:
    id: int
    project_id: int
    title: str
    description: str | None = None
    story_type: str | None = None
    current_state: str | None = None
    estimate: int | None = None
    priority: str | None = None
    url: str | None = None
    requested_by_id: int | None = None
    owner_names: str | None = None
    label_names: str | None = None
    is_mine: bool = False
    mentions_me: bool = False
    created_at: str | None = None  # raw API text
    updated_at: str | None = None  # raw API text


@dataclass
class CommentRow:
    id: int
    story_id: int
    project_id: int
    text: str | None = None
    person_id: int | None = None
    person_name: str | None = None
    mentions_me: bool = False
    created_at: str | None = None  # raw API text


class CacheStore:
    """Single-connection SQLite store; every access is serialized by one lock."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> Path:
        return self._db_path

    @classmethod
    def open_read_only(cls, db_path: str | Path) -> "CacheStore":
        """Attach to an existing database file without creating or migrating it.

        Only the read methods are usable; any write raises
        ``sqlite3.OperationalError``.
        """
        store = cls(db_path)
        conn = sqlite3.connect(
            f"{store._db_path.resolve().as_uri()}?mode=ro",
            uri=True,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        store._conn = conn
        return store

    def initialize(self) -> "CacheStore":
        with self._lock:
            if self._conn is not None:
                return self
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")
            self._conn = conn

            self._migrate_schema()
            with conn:
                for stmt in _TABLES:
                    conn.execute(stmt)
                for stmt in _INDEXES:
                    conn.execute(stmt)
                for name, body in _VIEWS.items():
                    conn.execute(f"DROP VIEW IF EXISTS {name}")
                    conn.execute(f"CREATE VIEW {name} AS {body}")
        return self

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("cache store is not initialized")
        return self._conn

    def schema_version(self) -> int:
        with self._lock:
            try:
                row = self._connection().execute(
                    "SELECT version FROM schema_version LIMIT 1"
                ).fetchone()
            except sqlite3.OperationalError:
                return 0
            return int(row["version"]) if row else 0

    def _migrate_schema(self) -> None:
        current = self.schema_version()
        if current >= SCHEMA_VERSION:
            return

        logger.info("Migrating cache schema from %s to %s (dropping cached data)", current, SCHEMA_VERSION)
        conn = self._connection()
        with conn:
            for name in _VIEWS:
                conn.execute(f"DROP VIEW IF EXISTS {name}")
            conn.execute("DROP TABLE IF EXISTS comments")
            conn.execute("DROP TABLE IF EXISTS stories")
            conn.execute("DROP TABLE IF EXISTS schema_version")
            conn.execute("CREATE TABLE schema_version (version INTEGER NOT NULL)")
            conn.execute("INSERT INTO schema_version VALUES (?)", (SCHEMA_VERSION,))

    def upsert_story(self, row: StoryRow) -> None:
        """Insert or update a story by id.

        Scalars take the incoming value. ``mentions_me`` becomes
        ``existing OR incoming`` so a later pass never clears it.
        """
        with self._lock:
            conn = self._connection()
            with conn:
                existing = conn.execute(
                    "SELECT mentions_me FROM stories WHERE id = ?", (row.id,)
                ).fetchone()
                mentions_me = bool(row.mentions_me) or bool(existing and existing["mentions_me"])
                conn.execute(
                    """
                    INSERT INTO stories (id, project_id, title, description, story_type,
                        current_state, estimate, priority, url, requested_by_id,
                        owner_names, label_names, is_mine, mentions_me,
                        created_at, updated_at, synced_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        project_id = excluded.project_id,
                        title = excluded.title,
                        description = excluded.description,
                        story_type = excluded.story_type,
                        current_state = excluded.current_state,
                        estimate = excluded.estimate,
                        priority = excluded.priority,
                        url = excluded.url,
                        requested_by_id = excluded.requested_by_id,
                        owner_names = excluded.owner_names,
                        label_names = excluded.label_names,
                        is_mine = excluded.is_mine,
                        mentions_me = excluded.mentions_me,
                        created_at = excluded.created_at,
                        updated_at = excluded.updated_at,
                        synced_at = excluded.synced_at
                    """,
                    (
                        row.id,
                        row.project_id,
                        row.title,
                        row.description,
                        row.story_type,
                        row.current_state,
                        row.estimate,
                        row.priority,
                        row.url,
                        row.requested_by_id,
                        row.owner_names,
                        row.label_names,
                        int(bool(row.is_mine)),
                        int(mentions_me),
                        parse_api_date(row.created_at),
                        parse_api_date(row.updated_at),
                        _utc_now(),
                    ),
                )

    def upsert_comment(self, row: CommentRow) -> None:
        """Insert or update a comment by id; ``mentions_me`` is monotonic."""
        with self._lock:
            conn = self._connection()
            with conn:
                existing = conn.execute(
                    "SELECT mentions_me FROM comments WHERE id = ?", (row.id,)
                ).fetchone()
                mentions_me = bool(row.mentions_me) or bool(existing and existing["mentions_me"])
                conn.execute(
                    """
                    INSERT INTO comments (id, story_id, project_id, text, person_id,
                        person_name, mentions_me, created_at, synced_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        text = excluded.text,
                        person_id = excluded.person_id,
                        person_name = excluded.person_name,
                        mentions_me = excluded.mentions_me,
                        synced_at = excluded.synced_at
                    """,
                    (
                        row.id,
                        row.story_id,
                        row.project_id,
                        row.text,
                        row.person_id,
                        row.person_name,
                        int(mentions_me),
                        parse_api_date(row.created_at),
                        _utc_now(),
                    ),
                )

    def mark_mentions_me(self, story_id: int) -> None:
        with self._lock:
            conn = self._connection()
            with conn:
                conn.execute(
                    "UPDATE stories SET mentions_me = 1, synced_at = ? WHERE id = ?",
                    (_utc_now(), story_id),
                )

    @staticmethod
    def _to_dict(row: sqlite3.Row) -> dict[str, Any]:
        item = dict(row)
        for key in _BOOL_COLUMNS:
            if key in item and item[key] is not None:
                item[key] = bool(item[key])
        return item

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._connection().execute(sql, params).fetchall()
        return [self._to_dict(row) for row in rows]

    def get_story(self, story_id: int) -> dict[str, Any] | None:
        rows = self._query("SELECT * FROM stories WHERE id = ?", (story_id,))
        return rows[0] if rows else None

    def get_comments(self, story_id: int) -> list[dict[str, Any]]:
        return self._query(
            "SELECT * FROM comments WHERE story_id = ? ORDER BY created_at", (story_id,)
        )

    def my_stories(self) -> list[dict[str, Any]]:
        return self._query("SELECT * FROM my_stories")

    def my_active_stories(self) -> list[dict[str, Any]]:
        return self._query("SELECT * FROM my_active_stories")

    def stories_mentioning_me(self) -> list[dict[str, Any]]:
        return self._query("SELECT * FROM stories_mentioning_me")

    def recent_comments(self, limit: int = 50) -> list[dict[str, Any]]:
        return self._query("SELECT * FROM recent_comments LIMIT ?", (limit,))

    def story_stats(self) -> dict[str, int]:
        rows = self._query("SELECT * FROM story_stats")
        return rows[0] if rows else {}

    def checkpoint(self) -> None:
        """Flush the write-ahead log into the main database file."""
        with self._lock:
            conn = self._connection()
            conn.commit()
            busy, log_frames, checkpointed = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
            if busy:
                raise sqlite3.OperationalError(
                    f"wal checkpoint incomplete: {checkpointed} of {log_frames} frames copied"
                )

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
