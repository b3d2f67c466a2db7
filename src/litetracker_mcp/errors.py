"""
Error taxonomy shared by the LiteTracker clients, the cache and the loop.
"""

from __future__ import annotations

SESSION_EXPIRED_MARKER = "sign in"
BODY_EXCERPT_LIMIT = 500


class TrackerError(RuntimeError):
    """Base error with a machine-readable code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class ConfigError(TrackerError):
    """Missing or invalid settings. Raised at startup only."""

    def __init__(self, message: str):
        super().__init__("config_error", message)


class TransportError(TrackerError):
    """Network failure or timeout talking to LiteTracker."""

    def __init__(self, message: str):
        super().__init__("transport_error", message)


class DecodeError(TrackerError):
    """Response body could not be decoded as the expected JSON."""

    def __init__(self, message: str):
        super().__init__("decode_error", message)


class ApiStatusError(TrackerError):
    """The API answered with an HTTP error status."""

    def __init__(self, status: int, body: str, message: str | None = None):
        self.status = status
        self.body = body[:BODY_EXCERPT_LIMIT]
        super().__init__(
            "api_status",
            message or f"LiteTracker API {status}: {self.body}",
        )


class WriteError(ApiStatusError):
    """A session-authenticated mutation was rejected."""

    def __init__(self, operation: str, status: int, body: str):
        super().__init__(status, body, f"{operation} failed (status {status}): {body[:BODY_EXCERPT_LIMIT]}")
        self.code = "write_error"
        self.operation = operation

    @property
    def session_expired(self) -> bool:
        return self.status == 401 or SESSION_EXPIRED_MARKER in self.body.lower()


class AuthError(TrackerError):
    """Session login failed.

    Codes: ``invalid_credentials``, ``unreachable``, ``csrf_missing``.
    """


class SnapshotError(TrackerError):
    """Publishing the cache snapshot failed."""

    def __init__(self, message: str):
        super().__init__("snapshot_error", message)
