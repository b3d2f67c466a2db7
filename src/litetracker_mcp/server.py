"""
MCP server exposing LiteTracker reads/writes and the local cache snapshot.
"""

from __future__ import annotations

import atexit
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from .api_client import TrackerApiClient
from .config import Settings, ensure_data_dir, load_settings
from .errors import TrackerError
from .snapshot import open_snapshot_store
from .store import CacheStore
from .web_session import WebSessionClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ACTIVITY_WINDOW = timedelta(days=7)

mcp = FastMCP(
    "litetracker",
    instructions=(
        "LiteTracker tools. Live reads use the token API; comments, labels and "
        "owners are written through a logged-in web session. Cache tools "
        "(my_stories, stories_mentioning_me, ...) read the snapshot published "
        "by the sync daemon and may lag the remote by one poll interval."
    ),
)

_settings: Settings | None = None
_api: TrackerApiClient | None = None
_web: WebSessionClient | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_api() -> TrackerApiClient:
    global _api
    if _api is None:
        _api = TrackerApiClient.from_settings(get_settings())
    return _api


def get_web() -> WebSessionClient:
    global _web
    if _web is None:
        _web = WebSessionClient.from_settings(get_settings(), get_api())
    return _web


def _shutdown() -> None:
    if _web is not None:
        _web.close()
    if _api is not None:
        _api.close()


atexit.register(_shutdown)


def _call(fn: Callable[[], T]) -> T:
    try:
        return fn()
    except TrackerError as exc:
        raise ToolError(exc.message) from exc


def _read_snapshot(read: Callable[[CacheStore], T]) -> T:
    settings = get_settings()
    if settings.data_dir is None:
        ensure_data_dir(settings)

    def run() -> T:
        store = open_snapshot_store(settings.snapshot_path)
        try:
            return read(store)
        except sqlite3.Error as exc:
            raise ToolError(f"snapshot query failed: {exc}") from exc
        finally:
            store.close()

    return _call(run)


def _label_names(story: dict[str, Any]) -> list[str]:
    return [label.get("name", "") for label in story.get("labels") or []]


def _comment_summary(comment: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": comment.get("id"),
        "text": comment.get("text", ""),
        "person_id": comment.get("person_id"),
        "created_at": comment.get("created_at", ""),
    }


@mcp.tool()
def get_me() -> dict[str, Any]:
    """Get the authenticated user's profile and project memberships."""
    me = _call(lambda: get_api().get_me())
    return {
        "id": me.get("id"),
        "name": me.get("name"),
        "username": me.get("username"),
        "email": me.get("email"),
        "initials": me.get("initials"),
        "projects": [
            {"id": p.get("project_id"), "name": p.get("project_name"), "role": p.get("role")}
            for p in me.get("projects") or []
        ],
    }


@mcp.tool()
def list_projects() -> list[dict[str, Any]]:
    """List all LiteTracker projects."""
    projects = _call(lambda: get_api().list_projects())
    return [
        {"id": p.get("id"), "name": p.get("title"), "description": p.get("description", "")}
        for p in projects
    ]


@mcp.tool()
def list_stories(
    project_id: int,
    filter: str | None = None,
    query: int | None = None,
    owners: int | None = None,
    section_type: str | None = None,
    owned_by: int | None = None,
    state: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """List stories in a LiteTracker project.

    Args:
        project_id: LiteTracker project ID.
        filter: Tracker search syntax, e.g. "state:started label:bug".
        query: Raw query parameter for searching stories.
        owners: Filter by owner user ID.
        section_type: Section type filter (e.g. user_stories).
        owned_by: Filter by owner user ID.
        state: started, unstarted, delivered, accepted or rejected.
        limit: Max stories to return (default 20).

    Returns:
        List of {id, name, type, state, labels, estimate, url}.
    """
    stories = _call(
        lambda: get_api().list_stories(
            project_id,
            filter=filter,
            query=query,
            owners=owners,
            section_type=section_type,
            owned_by=owned_by,
            state=state,
            limit=limit,
        )
    )
    return [
        {
            "id": s.get("id"),
            "name": s.get("title"),
            "type": s.get("story_type"),
            "state": s.get("current_state"),
            "labels": _label_names(s),
            "estimate": s.get("estimate"),
            "url": s.get("url"),
        }
        for s in stories
    ]


@mcp.tool()
def get_story(project_id: int, story_id: int) -> dict[str, Any]:
    """Get a single story with its comments."""
    api = get_api()
    story = _call(lambda: api.get_story(project_id, story_id))
    comments = _call(lambda: api.get_story_comments(project_id, story_id))
    return {
        "id": story.get("id"),
        "name": story.get("title"),
        "description": story.get("description", ""),
        "type": story.get("story_type"),
        "state": story.get("current_state"),
        "labels": _label_names(story),
        "estimate": story.get("estimate"),
        "owner_ids": story.get("owner_ids") or [],
        "url": story.get("url"),
        "created_at": story.get("created_at"),
        "updated_at": story.get("updated_at"),
        "comments": [_comment_summary(c) for c in comments],
    }


@mcp.tool()
def get_story_comments(project_id: int, story_id: int) -> list[dict[str, Any]]:
    """Get comments for a story."""
    comments = _call(lambda: get_api().get_story_comments(project_id, story_id))
    return [_comment_summary(c) for c in comments]


@mcp.tool()
def post_comment(project_id: int, story_id: int, text: str) -> dict[str, Any]:
    """Post a comment on a story (uses the logged-in web session)."""
    if not text:
        raise ToolError("text is required")
    comment = _call(lambda: get_web().post_comment(story_id, text))
    return {"id": comment["id"], "text": comment["text"], "created_at": comment["created_at"]}


@mcp.tool()
def create_story(
    project_id: int,
    title: str,
    description: str | None = None,
    story_type: str | None = None,
    estimate: int | None = None,
    labels: str | None = None,
) -> dict[str, Any]:
    """Create a new story.

    Args:
        project_id: LiteTracker project ID.
        title: Story title.
        description: Story description/body.
        story_type: feature, bug, or chore (default: feature).
        estimate: Point estimate.
        labels: Comma-separated label names.
    """
    if not title:
        raise ToolError("title is required")
    params: dict[str, Any] = {"name": title}
    if description:
        params["description"] = description
    if story_type:
        params["story_type"] = story_type
    if estimate:
        params["estimate"] = estimate
    if labels:
        names = [name.strip() for name in labels.split(",") if name.strip()]
        params["labels"] = [{"name": name} for name in names]

    story = _call(lambda: get_api().create_story(project_id, params))
    return {
        "id": story.get("id"),
        "name": story.get("title"),
        "type": story.get("story_type"),
        "state": story.get("current_state"),
        "url": story.get("url"),
    }


@mcp.tool()
def get_project_activity(project_id: int, occurred_after: str | None = None) -> list[dict[str, Any]]:
    """Get recent project activity.

    Args:
        project_id: LiteTracker project ID.
        occurred_after: RFC3339 lower bound, e.g. "2026-02-01T00:00:00Z".
            Defaults to seven days ago.
    """
    if not occurred_after:
        since = datetime.now(timezone.utc) - DEFAULT_ACTIVITY_WINDOW
        occurred_after = since.strftime("%Y-%m-%dT%H:%M:%SZ")
    activities = _call(lambda: get_api().get_project_activity(project_id, occurred_after))
    return [
        {
            "message": a.get("message", ""),
            "performed_by": (a.get("performed_by") or {}).get("name", ""),
            "occurred_at": a.get("occurred_at", ""),
            "resources": [
                {"name": r.get("name", ""), "url": r.get("url", "")}
                for r in a.get("primary_resources") or []
            ],
        }
        for a in activities
    ]


@mcp.tool()
def add_label(project_id: int, story_id: int, label: str) -> dict[str, Any]:
    """Add a label to a story."""
    if not label:
        raise ToolError("label is required")
    return _call(lambda: get_web().add_label(story_id, project_id, label))


@mcp.tool()
def add_owner(project_id: int, story_id: int, user_id: int) -> list[dict[str, Any]]:
    """Add an owner to a story. No-op if the user already owns it."""
    owners = _call(lambda: get_web().add_owner(story_id, project_id, user_id))
    return [
        {"user_id": o.get("user_id"), "name": o.get("name"), "initials": o.get("initials")}
        for o in owners
    ]


@mcp.tool()
def my_stories(active_only: bool = False) -> list[dict[str, Any]]:
    """Stories owned by the configured user, from the local cache snapshot.

    Args:
        active_only: Only started/unstarted stories.
    """
    if active_only:
        return _read_snapshot(lambda store: store.my_active_stories())
    return _read_snapshot(lambda store: store.my_stories())


@mcp.tool()
def stories_mentioning_me() -> list[dict[str, Any]]:
    """Cached stories with at least one comment mentioning the configured user."""
    return _read_snapshot(lambda store: store.stories_mentioning_me())


@mcp.tool()
def recent_comments(limit: int = 20) -> list[dict[str, Any]]:
    """Most recent cached comments with their story titles, newest first."""
    return _read_snapshot(lambda store: store.recent_comments(limit))


@mcp.tool()
def story_stats() -> dict[str, Any]:
    """Cached story counts: total, mine, with mentions, and per state."""
    return _read_snapshot(lambda store: store.story_stats())


@mcp.tool()
def get_session_health() -> dict[str, Any]:
    """Return web-session login state and last write error."""
    return get_web().get_health()


def run() -> None:
    mcp.run()
