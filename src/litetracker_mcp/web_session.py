"""
Cookie-session client for LiteTracker's internal web API.

The public token API cannot create comments, labels or owners, so writes go
through the same endpoints the browser app uses. That requires a form login
(CSRF token scraped from the login page) and a session cookie.

One instance is shared by every write tool call. Logins and writes are
serialized by a single lock, and a write that fails because the session
expired is retried exactly once after a fresh login.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any, Callable, TypeVar

import httpx

from .api_client import DEFAULT_TIMEOUT_SECONDS, TrackerApiClient
from .config import Settings
from .errors import AuthError, ConfigError, TransportError, WriteError

logger = logging.getLogger(__name__)

CSRF_TOKEN_RE = re.compile(r'csrf-token[^>]*content="([^"]*)"')

T = TypeVar("T")


class WebSessionClient:
    """Thread-safe session-authenticated writer."""

    def __init__(
        self,
        web_url: str,
        email: str,
        password: str,
        user_id: int,
        api: TrackerApiClient,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self._web_url = web_url.rstrip("/")
        self._email = email
        self._password = password
        self._user_id = user_id
        self._api = api
        self._client = httpx.Client(
            timeout=timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )
        self._lock = threading.RLock()
        self._logged_in = False

        self._login_count = 0
        self._failure_count = 0
        self._last_error: str | None = None
        self._last_login_at: float | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, api: TrackerApiClient, **kwargs: Any
    ) -> "WebSessionClient":
        return cls(
            settings.web_url,
            settings.email,
            settings.password,
            settings.user_id,
            api,
            **kwargs,
        )

    @property
    def logged_in(self) -> bool:
        return self._logged_in

    def ensure_authenticated(self) -> None:
        with self._lock:
            self._ensure_authenticated_locked()

    def _ensure_authenticated_locked(self) -> None:
        if self._logged_in:
            return
        if not self._email or not self._password:
            raise ConfigError(
                "LITETRACKER_EMAIL and LITETRACKER_PASSWORD must be set for write "
                "operations (the LiteTracker API does not support them with a token)"
            )

        login_url = f"{self._web_url}/login"
        try:
            page = self._client.get(login_url)
        except httpx.HTTPError as exc:
            raise AuthError("unreachable", f"fetch login page: {exc}") from exc

        match = CSRF_TOKEN_RE.search(page.text)
        if not match:
            raise AuthError("csrf_missing", "could not find CSRF token on login page")

        form = {
            "authenticity_token": match.group(1),
            "user[login]": self._email,
            "user[password]": self._password,
            "user[remember_me]": "1",
        }
        try:
            response = self._client.post(
                login_url,
                data=form,
                headers={"Accept": "text/html"},
            )
        except httpx.HTTPError as exc:
            raise AuthError("unreachable", f"login request: {exc}") from exc

        if response.status_code in (401, 422):
            raise AuthError(
                "invalid_credentials",
                f"login failed (status {response.status_code}): check "
                "LITETRACKER_EMAIL and LITETRACKER_PASSWORD",
            )

        self._logged_in = True
        self._login_count += 1
        self._last_login_at = time.time()
        logger.info("LiteTracker web session established")

    def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{operation}: {exc}") from exc
        if response.status_code >= 400:
            raise WriteError(operation, response.status_code, response.text)
        return response

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("LiteTracker write failed (%s): %s", exc.__class__.__name__, exc)

    def _call_with_relogin(self, operation: Callable[[], T]) -> T:
        with self._lock:
            for attempt in range(2):
                self._ensure_authenticated_locked()
                try:
                    result = operation()
                except WriteError as exc:
                    self._record_failure(exc)
                    if attempt == 0 and exc.session_expired:
                        logger.info("Web session expired, logging in again")
                        self._logged_in = False
                        continue
                    raise
                self._failure_count = 0
                self._last_error = None
                return result
        raise AssertionError("unreachable")

    def post_comment(self, story_id: int, text: str) -> dict[str, Any]:
        return self._call_with_relogin(lambda: self._post_comment(story_id, text))

    def _post_comment(self, story_id: int, text: str) -> dict[str, Any]:
        # Multipart fields, matching the browser app's FormData upload.
        fields = {
            "comment[content]": (None, text),
            "comment[user_id]": (None, str(self._user_id)),
            "comment[commentable_type]": (None, "Story"),
            "comment[commentable_id]": (None, str(story_id)),
        }
        response = self._send(
            "post comment",
            "POST",
            f"{self._web_url}/api/v1/stories/{story_id}/comments",
            files=fields,
        )
        try:
            data = response.json()["data"]
            attributes = data.get("attributes", {})
            return {
                "id": int(data.get("id") or 0),
                "text": attributes.get("content", text),
                "person_id": attributes.get("user-id", 0),
                "created_at": attributes.get("created-at", ""),
            }
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("Unexpected comment response for story %s", story_id)
            return {"id": 0, "text": text, "person_id": 0, "created_at": ""}

    def add_label(self, story_id: int, project_id: int, name: str) -> dict[str, Any]:
        return self._call_with_relogin(lambda: self._add_label(story_id, project_id, name))

    def _add_label(self, story_id: int, project_id: int, name: str) -> dict[str, Any]:
        response = self._send(
            "add label",
            "POST",
            f"{self._web_url}/api/v1/stories/{story_id}/labels",
            json={"label": {"name": name, "project_id": project_id}},
        )
        try:
            data = response.json()["data"]
            return {
                "id": int(data.get("id") or 0),
                "name": data.get("attributes", {}).get("name", name),
            }
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("Unexpected label response for story %s", story_id)
            return {"id": 0, "name": name}

    def add_owner(self, story_id: int, project_id: int, user_id: int) -> list[dict[str, Any]]:
        return self._call_with_relogin(lambda: self._add_owner(story_id, project_id, user_id))

    def _add_owner(self, story_id: int, project_id: int, user_id: int) -> list[dict[str, Any]]:
        # Current owners always come from the token API, never the local cache.
        story = self._api.get_story(project_id, story_id)
        owners = story.get("owners") or []
        owner_ids: list[int] = []
        for owner in owners:
            if owner.get("user_id") == user_id:
                return owners
            owner_ids.append(owner.get("user_id"))
        owner_ids.append(user_id)

        response = self._send(
            "add owner",
            "PUT",
            f"{self._web_url}/api/v1/stories/{story_id}",
            json={"story": {"owner_ids": owner_ids}},
            headers={"Accept": "application/json"},
        )
        try:
            return response.json().get("owners") or []
        except (ValueError, AttributeError):
            logger.warning("Unexpected owner response for story %s", story_id)
            return []

    def get_health(self) -> dict[str, Any]:
        with self._lock:
            return {
                "webUrl": self._web_url,
                "loggedIn": self._logged_in,
                "hasCredentials": bool(self._email and self._password),
                "loginCount": self._login_count,
                "failureCount": self._failure_count,
                "lastError": self._last_error,
                "lastLoginAt": self._last_login_at,
            }

    def close(self) -> None:
        with self._lock:
            self._client.close()
            self._logged_in = False
