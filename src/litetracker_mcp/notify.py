"""
Best-effort desktop notifications. Delivery failures are ignored.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import sys

logger = logging.getLogger(__name__)


def _applescript_string(value: str) -> str:
    # JSON string escaping is valid AppleScript string literal escaping.
    return json.dumps(value.replace("\n", " "))


def _command(title: str, body: str) -> list[str] | None:
    if sys.platform == "darwin":
        script = (
            f"display notification {_applescript_string(body)} "
            f"with title {_applescript_string(title)}"
        )
        return ["osascript", "-e", script]
    if shutil.which("notify-send"):
        return ["notify-send", title.replace("\n", " "), body.replace("\n", " ")]
    return None


def send_notification(title: str, body: str) -> None:
    command = _command(title, body)
    if command is None:
        logger.debug("No notification backend available; dropping %r", title)
        return
    try:
        subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.debug("Notification delivery failed: %s", exc)
