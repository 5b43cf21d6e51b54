"""
Persistence of per-dialog read watermarks as a flat JSON mapping.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Optional

from core.errors import PersistenceError
from shared.app_paths import LAST_SEEN_PATH
from tray_companion import logger as app_logger

_LOGGER = app_logger.get_logger()


class WatermarkStore:
    """
    Keeps ``dialog_id -> last seen message id`` in memory and mirrors it to disk.

    Watermarks only move forward; a lower id never replaces a higher one.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else LAST_SEEN_PATH
        self._last_seen: Dict[str, int] = {}

    def load(self) -> None:
        self._last_seen = {}
        try:
            contents = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as exc:
            _LOGGER.warning("Unable to read watermarks from {}: {}", self.path, exc)
            return

        try:
            data = json.loads(contents)
        except json.JSONDecodeError as exc:
            _LOGGER.warning("Ignoring corrupt watermark file {}: {}", self.path, exc)
            return
        if not isinstance(data, dict):
            _LOGGER.warning("Watermark file {} is not a JSON object.", self.path)
            return

        for dialog_id, value in data.items():
            if isinstance(value, bool):
                continue
            try:
                self._last_seen[str(dialog_id)] = int(value)
            except (TypeError, ValueError):
                _LOGGER.warning("Skipping watermark {}={!r}", dialog_id, value)

    def get(self, dialog_id: str) -> Optional[int]:
        return self._last_seen.get(str(dialog_id))

    def advance(self, dialog_id: str, message_id: int) -> bool:
        """Raise the watermark for ``dialog_id``; return whether it moved."""
        key = str(dialog_id)
        current = self._last_seen.get(key)
        if current is not None and message_id <= current:
            return False
        self._last_seen[key] = int(message_id)
        return True

    def snapshot(self) -> Dict[str, int]:
        return dict(self._last_seen)

    def save(self) -> bool:
        """
        Write the mapping to disk. Failures are logged; the in-memory state
        stays authoritative and the next save rewrites the whole file.
        """
        try:
            self._write(self._last_seen)
        except PersistenceError as exc:
            _LOGGER.error("Failed to persist watermarks: {}", exc)
            return False
        return True

    def _write(self, data: Dict[str, int]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data), encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Unable to write {self.path}: {exc}") from exc
