"""
Locations of the per-user application directory and the backend endpoint.
"""

from __future__ import annotations

import os
from pathlib import Path

APP_DIR = Path(
    os.environ.get(
        "CHAT_TRAY_HOME",
        str(Path.home() / ".chat-tray-companion"),
    )
)
CONFIG_PATH = APP_DIR / "config.json"
LAST_SEEN_PATH = APP_DIR / "last-seen.json"
AVATAR_DIR = APP_DIR / "avatars"
LOG_DIR = APP_DIR / "logs"
LOCK_PATH = APP_DIR / "instance.lock"

DEFAULT_BASE_URL = os.environ.get("CHAT_TRAY_BACKEND_URL", "http://localhost:7777")


def push_url_for(base_url: str) -> str:
    """Derive the push-event WebSocket URL from an HTTP base URL."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        return "wss://" + base[len("https://"):] + "/events"
    if base.startswith("http://"):
        return "ws://" + base[len("http://"):] + "/events"
    return base + "/events"
