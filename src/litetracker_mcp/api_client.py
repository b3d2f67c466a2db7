"""
Token-authenticated client for the public LiteTracker v5 API.

Stateless apart from the pooled HTTP connection. No retries: transport and
status failures are raised to the caller as typed errors.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import Settings
from .errors import ApiStatusError, DecodeError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_STORY_LIMIT = 20
ACTIVITY_LIMIT = 100


class TrackerApiClient:
    """Read (and token-side write) access to projects, stories and activity."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "X-TrackerToken": token,
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TrackerApiClient":
        return cls(settings.base_url, settings.token, **kwargs)

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        try:
            response = self._client.request(method, path, params=params, json=json_body)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise ApiStatusError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as exc:
            raise DecodeError(f"decode response for {method} {path}: {exc}") from exc

    def get_me(self) -> dict[str, Any]:
        return self._request("GET", "/me")

    def list_projects(self) -> list[dict[str, Any]]:
        return self._request("GET", "/projects")

    def list_stories(
        self,
        project_id: int,
        *,
        filter: str | None = None,
        query: int | None = None,
        owners: int | None = None,
        section_type: str | None = None,
        owned_by: int | None = None,
        state: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List stories in a project.

        Only non-empty filters are sent. ``state`` maps to the API's
        ``with_state`` parameter. ``limit`` defaults to 20.
        """
        params: dict[str, Any] = {}
        if filter:
            params["filter"] = filter
        if query:
            params["query"] = query
        if owners:
            params["owners"] = owners
        if section_type:
            params["section_type"] = section_type
        if owned_by:
            params["owned_by"] = owned_by
        if state:
            params["with_state"] = state
        params["limit"] = limit or DEFAULT_STORY_LIMIT
        return self._request("GET", f"/projects/{project_id}/stories", params=params)

    def get_story(self, project_id: int, story_id: int) -> dict[str, Any]:
        return self._request("GET", f"/projects/{project_id}/stories/{story_id}")

    def get_story_comments(self, project_id: int, story_id: int) -> list[dict[str, Any]]:
        return self._request("GET", f"/projects/{project_id}/stories/{story_id}/comments")

    def create_story(self, project_id: int, params: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"/projects/{project_id}/stories", json_body=params)

    def get_project_activity(self, project_id: int, occurred_after: str) -> list[dict[str, Any]]:
        return self._request(
            "GET",
            f"/projects/{project_id}/activity",
            params={"occurred_after": occurred_after, "limit": ACTIVITY_LIMIT},
        )

    def close(self) -> None:
        self._client.close()
