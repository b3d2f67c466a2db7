"""
Settings for the LiteTracker clients, cache and daemon.

Values come from the process environment, optionally seeded from a `.env`
file. Variables already present in the environment always win over file
values.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://app.litetracker.com/services/v5"
DEFAULT_WEB_URL = "https://app.litetracker.com"
DEFAULT_POLL_INTERVAL_MS = 300_000
TOKEN_PLACEHOLDER = "your_api_token_here"

DB_FILENAME = "litetracker.db"
SNAPSHOT_FILENAME = "litetracker-snapshot.db"
POLL_STATE_FILENAME = "poll-state.json"
DAEMON_LOG_FILENAME = "daemon.log"


@dataclass
class Settings:
    token: str
    base_url: str = DEFAULT_BASE_URL
    web_url: str = DEFAULT_WEB_URL
    username: str = ""
    email: str = ""
    password: str = ""
    user_id: int = 0
    project_ids: list[int] = field(default_factory=list)
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    data_dir: Path | None = None
    project_dir: Path | None = None

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def db_path(self) -> Path:
        return self._require_data_dir() / DB_FILENAME

    @property
    def snapshot_path(self) -> Path:
        return self._require_data_dir() / SNAPSHOT_FILENAME

    @property
    def poll_state_path(self) -> Path:
        return self._require_data_dir() / POLL_STATE_FILENAME

    def _require_data_dir(self) -> Path:
        if self.data_dir is None:
            raise ConfigError("data directory not initialized; call ensure_data_dir()")
        return self.data_dir


def _load_env_files() -> None:
    env_file = os.getenv("LITETRACKER_ENV_FILE")
    if env_file:
        load_dotenv(env_file, override=False)
        return
    load_dotenv(Path(".env"), override=False)
    load_dotenv(Path.home() / "litetracker-go" / ".env", override=False)


def _parse_int_env(var_name: str, default: int = 0) -> int:
    raw = os.getenv(var_name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r", var_name, raw)
        return default


def _parse_id_list_env(var_name: str) -> list[int]:
    ids: list[int] = []
    for item in os.getenv(var_name, "").split(","):
        item = item.strip()
        if not item:
            continue
        try:
            ids.append(int(item))
        except ValueError:
            logger.warning("Skipping invalid project id %r in %s", item, var_name)
    return ids


def load_settings(load_env_files: bool = True) -> Settings:
    """Build settings from the environment. Fails fast without a token."""
    if load_env_files:
        _load_env_files()

    token = os.getenv("LITETRACKER_TOKEN", "").strip()
    if not token or token == TOKEN_PLACEHOLDER:
        raise ConfigError(
            "LITETRACKER_TOKEN is required. Set it via environment variable or .env file"
        )

    return Settings(
        token=token,
        base_url=os.getenv("LITETRACKER_BASE_URL") or DEFAULT_BASE_URL,
        web_url=os.getenv("LITETRACKER_WEB_URL") or DEFAULT_WEB_URL,
        username=os.getenv("LITETRACKER_USERNAME", ""),
        email=os.getenv("LITETRACKER_EMAIL", ""),
        password=os.getenv("LITETRACKER_PASSWORD", ""),
        user_id=_parse_int_env("LITETRACKER_USER_ID"),
        project_ids=_parse_id_list_env("LITETRACKER_PROJECT_IDS"),
        poll_interval_ms=_parse_int_env("POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS),
    )


def ensure_data_dir(settings: Settings) -> Path:
    """Resolve and create the data directory used by daemon and sync modes."""
    override = os.getenv("LITETRACKER_DATA_DIR")
    if override:
        data_dir = Path(override).expanduser()
        settings.project_dir = data_dir
    else:
        settings.project_dir = Path.home() / "litetracker-go"
        data_dir = settings.project_dir / "data"

    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"cannot create data directory {data_dir}: {exc}") from exc

    settings.data_dir = data_dir
    return data_dir
