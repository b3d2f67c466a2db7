from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from litetracker_mcp.errors import TransportError
from litetracker_mcp.poller import (
    ActivityPoller,
    Daemon,
    PollState,
    build_notification,
    is_relevant,
)

T0 = datetime(2026, 2, 1, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 2, 1, 0, 5, tzinfo=timezone.utc)
T2 = datetime(2026, 2, 1, 0, 10, tzinfo=timezone.utc)


class FakeApi:
    def __init__(self, activity: dict[int, list[dict[str, Any]]] | None = None):
        self.activity = activity or {}
        self.failing: set[int] = set()
        self.calls: list[tuple[int, str]] = []

    def get_project_activity(self, project_id: int, occurred_after: str) -> list[dict[str, Any]]:
        self.calls.append((project_id, occurred_after))
        if project_id in self.failing:
            raise TransportError("connection reset")
        return self.activity.get(project_id, [])


class FakeNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def __call__(self, title: str, body: str) -> None:
        self.sent.append((title, body))


class FakeClock:
    def __init__(self, *times: datetime):
        self._times = list(times)

    def __call__(self) -> datetime:
        return self._times.pop(0)


def _activity(guid: str, message: str, kind: str = "story_update_activity", **extra) -> dict[str, Any]:
    activity = {
        "guid": guid,
        "kind": kind,
        "message": message,
        "performed_by": {"name": "Bob"},
        "primary_resources": [{"name": "Fix login"}],
    }
    activity.update(extra)
    return activity


class TestIsRelevant:
    def test_message_mention(self) -> None:
        assert is_relevant({"message": "Bob assigned ALICE"}, "alice")

    def test_change_new_values_mention(self) -> None:
        activity = {"message": "edited", "changes": [{"new_values": {"description": "cc alice"}}]}
        assert is_relevant(activity, "alice")

    def test_comment_creation_always_relevant(self) -> None:
        assert is_relevant({"kind": "comment_create_activity", "message": "Bob commented"}, "alice")

    def test_unrelated_update(self) -> None:
        activity = {"kind": "story_update_activity", "message": "Bob moved story", "changes": [{"new_values": None}]}
        assert not is_relevant(activity, "alice")

    def test_empty_username_matches_comments_only(self) -> None:
        assert not is_relevant({"kind": "story_update_activity", "message": "anything"}, "")
        assert is_relevant({"kind": "comment_create_activity", "message": "anything"}, "")


class TestBuildNotification:
    def test_uses_resource_and_performer(self) -> None:
        assert build_notification(_activity("a", "Bob commented")) == ("[Fix login]", "Bob: Bob commented")

    def test_defaults(self) -> None:
        assert build_notification({"message": "hello"}) == ("LiteTracker", "Someone: hello")


class TestPollState:
    def test_missing_file_defaults_to_now(self, tmp_path: Path) -> None:
        state = PollState.load(tmp_path / "poll-state.json", now=T0)
        assert state.last_poll == "2026-02-01T00:00:00Z"

    def test_corrupt_file_defaults_to_now(self, tmp_path: Path) -> None:
        path = tmp_path / "poll-state.json"
        path.write_text("{not json")
        assert PollState.load(path, now=T0).last_poll == "2026-02-01T00:00:00Z"

    @pytest.mark.parametrize("content", ['{"lastPoll": 1738368000}', '{"lastPoll": null}', '["2026-01-01T00:00:00Z"]'])
    def test_non_string_cursor_defaults_to_now(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "poll-state.json"
        path.write_text(content)
        assert PollState.load(path, now=T0).last_poll == "2026-02-01T00:00:00Z"

    def test_save_and_reload(self, tmp_path: Path) -> None:
        path = tmp_path / "poll-state.json"
        PollState(path, "2026-01-15T08:00:00Z").save()

        assert json.loads(path.read_text()) == {"lastPoll": "2026-01-15T08:00:00Z"}
        assert PollState.load(path, now=T0).last_poll == "2026-01-15T08:00:00Z"
        assert [p.name for p in tmp_path.iterdir()] == ["poll-state.json"]

    def test_advance_never_moves_backwards(self, tmp_path: Path) -> None:
        state = PollState(tmp_path / "s.json", "2026-02-01T00:10:00Z")
        state.advance("2026-02-01T00:05:00Z")
        assert state.last_poll == "2026-02-01T00:10:00Z"


def test_poll_advances_cursor_despite_failed_project(tmp_path: Path) -> None:
    api = FakeApi({1: [_activity("g1", "Bob mentioned alice")], 3: []})
    api.failing = {2}
    notifier = FakeNotifier()
    state = PollState(tmp_path / "poll-state.json", "2026-01-31T23:55:00Z")
    poller = ActivityPoller(api, [1, 2, 3], "alice", state, notifier=notifier, clock=FakeClock(T1, T2))  # type: ignore[arg-type]

    assert poller.poll_once() == 1
    assert notifier.sent == [("[Fix login]", "Bob: Bob mentioned alice")]
    assert [c[0] for c in api.calls] == [1, 2, 3]
    assert state.last_poll == "2026-02-01T00:05:00Z"
    assert json.loads(state.path.read_text()) == {"lastPoll": "2026-02-01T00:05:00Z"}

    api.calls.clear()
    poller.poll_once()
    assert {since for _, since in api.calls} == {"2026-02-01T00:05:00Z"}
    assert state.last_poll == "2026-02-01T00:10:00Z"


def test_same_activity_in_two_projects_notifies_once(tmp_path: Path) -> None:
    shared = _activity("dup", "Bob commented", kind="comment_create_activity")
    api = FakeApi({1: [shared], 2: [dict(shared)]})
    notifier = FakeNotifier()
    state = PollState(tmp_path / "poll-state.json", "2026-01-31T23:55:00Z")
    poller = ActivityPoller(api, [1, 2], "alice", state, notifier=notifier, clock=FakeClock(T1))  # type: ignore[arg-type]

    assert poller.poll_once() == 1
    assert len(notifier.sent) == 1


def test_irrelevant_activity_is_not_notified(tmp_path: Path) -> None:
    api = FakeApi({1: [_activity("g", "Bob moved a story")]})
    notifier = FakeNotifier()
    state = PollState(tmp_path / "poll-state.json", "2026-01-31T23:55:00Z")
    poller = ActivityPoller(api, [1], "alice", state, notifier=notifier, clock=FakeClock(T1))  # type: ignore[arg-type]

    assert poller.poll_once() == 0
    assert notifier.sent == []


class FakePoller:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0
        self.state = PollState(Path("unused.json"), "2026-02-01T00:00:00Z")

    def poll_once(self) -> int:
        self.calls += 1
        if self.fail:
            raise RuntimeError("poll exploded")
        return 0


class FakeEngine:
    def __init__(self):
        self.calls: list[list[int]] = []

    def sync_all(self, project_ids: list[int]) -> dict:
        self.calls.append(list(project_ids))
        return {}


class FakeStore:
    def __init__(self):
        self.closed = False

    def close(self) -> None:
        self.closed = True


class TestDaemon:
    def test_cycle_syncs_even_when_poll_fails(self) -> None:
        poller, engine = FakePoller(fail=True), FakeEngine()
        daemon = Daemon(poller, engine, FakeStore(), [1, 2], 60)  # type: ignore[arg-type]

        daemon.run_cycle()

        assert poller.calls == 1
        assert engine.calls == [[1, 2]]

    def test_stopped_daemon_runs_once_and_closes_store(self) -> None:
        poller, engine, store = FakePoller(), FakeEngine(), FakeStore()
        daemon = Daemon(poller, engine, store, [1], 3600)  # type: ignore[arg-type]

        daemon.stop()
        daemon.run()

        assert poller.calls == 1
        assert engine.calls == [[1]]
        assert store.closed

    def test_store_closed_when_cycle_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        store = FakeStore()
        daemon = Daemon(FakePoller(), FakeEngine(), store, [1], 3600)  # type: ignore[arg-type]

        def boom() -> None:
            raise KeyboardInterrupt

        monkeypatch.setattr(daemon, "run_cycle", boom)
        with pytest.raises(KeyboardInterrupt):
            daemon.run()
        assert store.closed
