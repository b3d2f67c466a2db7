"""
LiteTracker MCP server, cache sync and notification daemon.
"""

from __future__ import annotations

import argparse
import logging
import sys

from .config import DAEMON_LOG_FILENAME, ensure_data_dir, load_settings
from .errors import ConfigError

__all__ = ["main"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)


def _run_serve() -> None:
    from .server import get_settings, run

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT, stream=sys.stderr)
    get_settings()
    run()


def _run_sync() -> None:
    from .api_client import TrackerApiClient
    from .snapshot import SnapshotManager
    from .store import CacheStore
    from .sync import SyncEngine

    settings = load_settings()
    ensure_data_dir(settings)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT, stream=sys.stderr)

    store = CacheStore(settings.db_path).initialize()
    api = TrackerApiClient.from_settings(settings)
    try:
        engine = SyncEngine(
            api,
            store,
            settings.user_id,
            settings.username,
            snapshots=SnapshotManager(store, settings.snapshot_path),
        )
        engine.sync_all(settings.project_ids)
    finally:
        api.close()
        store.close()


def _run_daemon() -> None:
    from .api_client import TrackerApiClient
    from .poller import ActivityPoller, Daemon, PollState
    from .snapshot import SnapshotManager
    from .store import CacheStore
    from .sync import SyncEngine

    settings = load_settings()
    data_dir = ensure_data_dir(settings)
    log_dir = settings.project_dir or data_dir
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        filename=str(log_dir / DAEMON_LOG_FILENAME),
    )
    logger.info("=== LiteTracker daemon starting ===")

    if not settings.project_ids:
        raise ConfigError("no LITETRACKER_PROJECT_IDS configured")

    store = CacheStore(settings.db_path).initialize()
    api = TrackerApiClient.from_settings(settings)
    state = PollState.load(settings.poll_state_path)
    logger.info("Loaded poll state, lastPoll=%s", state.last_poll)

    daemon = Daemon(
        ActivityPoller(api, settings.project_ids, settings.username, state),
        SyncEngine(
            api,
            store,
            settings.user_id,
            settings.username,
            snapshots=SnapshotManager(store, settings.snapshot_path),
        ),
        store,
        settings.project_ids,
        settings.poll_interval_seconds,
    )
    daemon.install_signal_handlers()
    try:
        daemon.run()
    finally:
        api.close()


COMMANDS = {
    "serve": _run_serve,
    "daemon": _run_daemon,
    "sync": _run_sync,
}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="litetracker",
        description="LiteTracker MCP server, cache sync and notification daemon",
    )
    parser.add_argument("command", choices=sorted(COMMANDS), help="mode to run")
    args = parser.parse_args(argv)

    try:
        COMMANDS[args.command]()
    except ConfigError as exc:
        print(f"config error: {exc.message}", file=sys.stderr)
        return 1
    return 0
