"""
Activity polling, notification and the long-running daemon loop.

Each poll pass reads activity since the persisted cursor, notifies on
relevant events and then moves the cursor to the pass start time, even when
some projects failed. A failed window is therefore skipped rather than
retried forever.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .api_client import TrackerApiClient
from .errors import TrackerError
from .notify import send_notification
from .store import CacheStore
from .sync import SyncEngine

logger = logging.getLogger(__name__)

COMMENT_CREATE_KIND = "comment_create_activity"
DEFAULT_NOTIFICATION_TITLE = "LiteTracker"
DEFAULT_PERFORMER = "Someone"

Notifier = Callable[[str, str], None]


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PollState:
    """Persisted activity cursor: ``{"lastPoll": "<RFC3339>"}``."""

    path: Path
    last_poll: str

    @classmethod
    def load(cls, path: str | Path, now: datetime | None = None) -> "PollState":
        path = Path(path)
        default = format_timestamp(now or _utc_now())
        try:
            data = json.loads(path.read_text())
            last_poll = data["lastPoll"]
            if not isinstance(last_poll, str):
                raise TypeError(f"lastPoll must be a string, got {type(last_poll).__name__}")
            parse_timestamp(last_poll)
        except FileNotFoundError:
            return cls(path, default)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable poll state %s: %s", path, exc)
            return cls(path, default)
        return cls(path, last_poll)

    def advance(self, timestamp: str) -> None:
        """Move the cursor forward; an older timestamp is ignored."""
        if parse_timestamp(timestamp) >= parse_timestamp(self.last_poll):
            self.last_poll = timestamp

    def save(self) -> None:
        content = json.dumps({"lastPoll": self.last_poll}, indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(suffix=".json.tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise


def _contains(text: str, username: str) -> bool:
    return bool(username) and username.lower() in text.lower()


def is_relevant(activity: dict[str, Any], username: str) -> bool:
    """Whether an activity should notify the configured user.

    True when the message or any change's new values mention the username,
    or when the activity is a comment creation.
    """
    if _contains(activity.get("message") or "", username):
        return True
    for change in activity.get("changes") or []:
        new_values = change.get("new_values")
        if new_values and _contains(json.dumps(new_values), username):
            return True
    return activity.get("kind") == COMMENT_CREATE_KIND


def build_notification(activity: dict[str, Any]) -> tuple[str, str]:
    resources = activity.get("primary_resources") or []
    title = DEFAULT_NOTIFICATION_TITLE
    if resources and resources[0].get("name"):
        title = f"[{resources[0]['name']}]"
    performer = (activity.get("performed_by") or {}).get("name") or DEFAULT_PERFORMER
    return title, f"{performer}: {activity.get('message') or ''}"


class ActivityPoller:
    def __init__(
        self,
        api: TrackerApiClient,
        project_ids: list[int],
        username: str,
        state: PollState,
        notifier: Notifier = send_notification,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._api = api
        self._project_ids = project_ids
        self._username = username
        self._state = state
        self._notifier = notifier
        self._clock = clock

    @property
    def state(self) -> PollState:
        return self._state

    def poll_once(self) -> int:
        """Run one pass and return the number of notifications sent."""
        since = self._state.last_poll
        now = format_timestamp(self._clock())
        seen: set[str] = set()
        sent = 0

        for project_id in self._project_ids:
            try:
                activities = self._api.get_project_activity(project_id, since) or []
            except TrackerError as exc:
                logger.error("Poll failed for project %s: %s", project_id, exc)
                continue

            for activity in activities:
                guid = activity.get("guid")
                if guid:
                    if guid in seen:
                        continue
                    seen.add(guid)
                if not is_relevant(activity, self._username):
                    continue

                title, body = build_notification(activity)
                logger.info(
                    "Notification triggered (kind=%s): %s", activity.get("kind"), activity.get("message")
                )
                self._notifier(title, body)
                sent += 1

        self._state.advance(now)
        self._state.save()
        return sent


class Daemon:
    """Poll then sync on a fixed interval until stopped by a signal."""

    def __init__(
        self,
        poller: ActivityPoller,
        engine: SyncEngine,
        store: CacheStore,
        project_ids: list[int],
        interval_seconds: float,
    ):
        self._poller = poller
        self._engine = engine
        self._store = store
        self._project_ids = project_ids
        self._interval_seconds = interval_seconds
        self._stop = threading.Event()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
        self._stop.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def stop(self) -> None:
        self._stop.set()

    def run_cycle(self) -> None:
        try:
            self._poller.poll_once()
            logger.info("Poll complete, lastPoll=%s", self._poller.state.last_poll)
        except Exception:
            logger.exception("Poll cycle failed")
        try:
            self._engine.sync_all(self._project_ids)
        except Exception:
            logger.exception("Sync cycle failed")

    def run(self) -> None:
        logger.info(
            "Daemon running: projects=%s interval=%.0fs", self._project_ids, self._interval_seconds
        )
        try:
            self.run_cycle()
            while not self._stop.wait(self._interval_seconds):
                self.run_cycle()
        finally:
            self._store.close()
            logger.info("Cache store closed")
