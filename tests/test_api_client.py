from __future__ import annotations

import json

import httpx
import pytest

from litetracker_mcp.api_client import TrackerApiClient
from litetracker_mcp.errors import ApiStatusError, DecodeError, TransportError

BASE_URL = "https://tracker.example/services/v5"


def _client(handler) -> TrackerApiClient:
    return TrackerApiClient(BASE_URL, "secret-token", transport=httpx.MockTransport(handler))


def test_requests_carry_token_header():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 7, "username": "alice"})

    me = _client(handler).get_me()

    assert me["username"] == "alice"
    assert seen[0].headers["X-TrackerToken"] == "secret-token"
    assert seen[0].url.path == "/services/v5/me"


def test_list_stories_defaults_limit_and_maps_state():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    client = _client(handler)
    client.list_stories(42)
    client.list_stories(42, state="started", limit=200, owned_by=568)

    first, second = seen
    assert first.url.path == "/services/v5/projects/42/stories"
    assert dict(first.url.params) == {"limit": "20"}
    assert dict(second.url.params) == {"with_state": "started", "limit": "200", "owned_by": "568"}


def test_activity_uses_cursor_and_limit():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"guid": "a"}])

    activities = _client(handler).get_project_activity(9, "2026-02-01T00:00:00Z")

    assert activities == [{"guid": "a"}]
    assert seen[0].url.params["occurred_after"] == "2026-02-01T00:00:00Z"
    assert seen[0].url.params["limit"] == "100"


def test_create_story_posts_json():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 1, "title": "New"})

    _client(handler).create_story(3, {"name": "New", "labels": [{"name": "bug"}]})

    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"name": "New", "labels": [{"name": "bug"}]}


def test_error_status_raises_with_body_excerpt():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="story not found")

    with pytest.raises(ApiStatusError) as exc_info:
        _client(handler).get_story(1, 2)

    assert exc_info.value.status == 404
    assert "story not found" in exc_info.value.message


def test_invalid_json_raises_decode_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(DecodeError):
        _client(handler).list_projects()


def test_transport_failure_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        _client(handler).list_projects()
