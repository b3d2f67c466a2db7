"""
Pulls stories and comments for tracked projects into the local cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .api_client import TrackerApiClient
from .errors import SnapshotError, TrackerError
from .snapshot import SnapshotManager
from .store import CacheStore, CommentRow, StoryRow

logger = logging.getLogger(__name__)

SYNC_STATES = ("started", "unstarted", "delivered", "accepted", "rejected")
STORIES_PER_STATE = 200


@dataclass
class SyncStats:
    stories: int = 0
    mine: int = 0
    comments: int = 0


def mentions_user(text: str | None, username: str) -> bool:
    """Case-insensitive match of the bare or @-prefixed username."""
    if not text or not username:
        return False
    lowered = text.lower()
    name = username.lower()
    return name in lowered or f"@{name}" in lowered


def _join_names(items: list[dict[str, Any]] | None) -> str | None:
    names = [item.get("name", "") for item in items or [] if item.get("name")]
    return ", ".join(names) if names else None


class SyncEngine:
    """Reconciles remote stories/comments into a CacheStore."""

    def __init__(
        self,
        api: TrackerApiClient,
        store: CacheStore,
        user_id: int,
        username: str,
        snapshots: SnapshotManager | None = None,
    ):
        self._api = api
        self._store = store
        self._user_id = user_id
        self._username = username
        self._snapshots = snapshots

    def _fetch_stories(self, project_id: int, state: str) -> list[dict[str, Any]]:
        try:
            return self._api.list_stories(project_id, state=state, limit=STORIES_PER_STATE) or []
        except TrackerError as exc:
            logger.error(
                "Failed to fetch %s stories for project %s: %s", state, project_id, exc
            )
            return []

    def _is_mine(self, story: dict[str, Any]) -> bool:
        return any(
            owner.get("user_id") == self._user_id for owner in story.get("owners") or []
        )

    def _story_row(self, project_id: int, story: dict[str, Any]) -> StoryRow:
        return StoryRow(
            id=story["id"],
            project_id=project_id,
            title=story.get("title") or "",
            description=story.get("description") or None,
            story_type=story.get("story_type") or None,
            current_state=story.get("current_state") or None,
            estimate=story.get("estimate"),
            priority=story.get("story_priority") or None,
            url=story.get("url") or None,
            requested_by_id=story.get("requested_by_id"),
            owner_names=_join_names(story.get("owners")),
            label_names=_join_names(story.get("labels")),
            is_mine=self._is_mine(story),
            mentions_me=False,
            created_at=story.get("created_at"),
            updated_at=story.get("updated_at"),
        )

    def sync_project(self, project_id: int) -> SyncStats:
        stats = SyncStats()

        candidates: dict[int, dict[str, Any]] = {}
        for state in SYNC_STATES:
            for story in self._fetch_stories(project_id, state):
                story_id = story.get("id")
                if story_id is None:
                    continue
                # Overlapping state filters can return a story twice.
                candidates.setdefault(story_id, story)

        mine: set[int] = set()
        for story_id, story in candidates.items():
            try:
                row = self._story_row(project_id, story)
                self._store.upsert_story(row)
            except Exception:
                logger.exception("Upsert failed for story %s", story_id)
                continue
            stats.stories += 1
            if row.is_mine:
                mine.add(story_id)
        stats.mine = len(mine)

        for story_id in candidates:
            try:
                comments = self._api.get_story_comments(project_id, story_id) or []
            except TrackerError as exc:
                logger.error("Failed to fetch comments for story %s: %s", story_id, exc)
                continue

            for comment in comments:
                text = comment.get("text") or None
                person = comment.get("person") or {}
                mentioned = mentions_user(text, self._username)
                try:
                    row = CommentRow(
                        id=comment["id"],
                        story_id=story_id,
                        project_id=project_id,
                        text=text,
                        person_id=comment.get("person_id") or None,
                        person_name=person.get("name") or None,
                        mentions_me=mentioned,
                        created_at=comment.get("created_at"),
                    )
                    self._store.upsert_comment(row)
                    stats.comments += 1
                    if mentioned:
                        self._store.mark_mentions_me(story_id)
                except Exception:
                    logger.exception("Upsert failed for comment %s", comment.get("id"))

        return stats

    def sync_all(self, project_ids: list[int]) -> dict[int, SyncStats]:
        logger.info("Starting story sync for %d project(s)", len(project_ids))
        results: dict[int, SyncStats] = {}
        for project_id in project_ids:
            stats = self.sync_project(project_id)
            results[project_id] = stats
            logger.info(
                "Synced project %s: stories=%d mine=%d comments=%d",
                project_id,
                stats.stories,
                stats.mine,
                stats.comments,
            )

        if self._snapshots is not None:
            try:
                self._snapshots.create_snapshot()
            except SnapshotError as exc:
                logger.error("Snapshot creation failed: %s", exc)

        logger.info("Story sync complete")
        return results
