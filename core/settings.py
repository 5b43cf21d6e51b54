"""
JSON-backed contact allow-list and tunables for the tray companion.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.errors import PersistenceError
from core.events import CONTACT_ADDED, CONTACT_REMOVED, SETTINGS_CHANGED, EventHub
from shared.app_paths import CONFIG_PATH
from tray_companion import logger as app_logger

_LOGGER = app_logger.get_logger()

BUBBLE_POSITIONS = ("left", "right")
_INT_BOUNDS = {
    "bubble_size": (32, 128),
    "max_bubbles": (1, 10),
    "poll_interval_ms": (500, 60000),
}


@dataclass(eq=True)
class AppSettings:
    always_on_top: bool = True
    bubble_position: str = "right"
    bubble_size: int = 64
    max_bubbles: int = 5
    poll_interval_ms: int = 3000
    show_notifications: bool = True


@dataclass(eq=True)
class ContactEntry:
    user_id: str
    display_name: str
    username: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["ContactEntry"]:
        if not isinstance(payload, dict):
            return None
        user_id = payload.get("user_id")
        if user_id is None or str(user_id).strip() == "":
            return None
        user_id = str(user_id).strip()
        username = str(payload.get("username") or "")
        display_name = str(payload.get("display_name") or username or user_id)
        return cls(user_id=user_id, display_name=display_name, username=username)


class SettingsStore:
    """Loads the config file, clamps invalid data and persists every change."""

    def __init__(self, path: Optional[Path] = None, *, events: Optional[EventHub] = None) -> None:
        self.path = Path(path) if path is not None else CONFIG_PATH
        self.events = events or EventHub()
        self._settings = AppSettings()
        self._contacts: List[ContactEntry] = []

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def load(self) -> None:
        try:
            contents = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._settings = AppSettings()
            self._contacts = []
            self.save()
            return
        except OSError as exc:
            _LOGGER.error("Failed to read config {}: {}", self.path, exc)
            self._reset_to_defaults()
            return

        try:
            raw = json.loads(contents)
        except json.JSONDecodeError as exc:
            _LOGGER.error("Config {} is not valid JSON ({}); restoring defaults.", self.path, exc)
            self._reset_to_defaults()
            return
        if not isinstance(raw, dict):
            _LOGGER.error("Config {} root is not an object; restoring defaults.", self.path)
            self._reset_to_defaults()
            return

        self._settings = _read_settings(raw.get("settings"))
        self._contacts = _read_contacts(raw.get("whitelist"))

    def save(self) -> bool:
        payload = {
            "whitelist": [asdict(entry) for entry in self._contacts],
            "settings": asdict(self._settings),
        }
        try:
            self._write(payload)
        except PersistenceError as exc:
            _LOGGER.error("Failed to save config: {}", exc)
            return False
        return True

    def is_whitelisted(self, user_id: Any) -> bool:
        return self.contact_info(user_id) is not None

    def contacts(self) -> List[ContactEntry]:
        return list(self._contacts)

    def contact_info(self, user_id: Any) -> Optional[ContactEntry]:
        key = str(user_id)
        for entry in self._contacts:
            if entry.user_id == key:
                return entry
        return None

    def add_contact(self, user_id: Any, username: str = "", display_name: str = "") -> bool:
        key = str(user_id).strip()
        if not key or self.is_whitelisted(key):
            return False
        entry = ContactEntry(
            user_id=key,
            display_name=display_name or username or key,
            username=username or "",
        )
        self._contacts.append(entry)
        self.save()
        _LOGGER.info("Contact {} ({}) added to whitelist.", entry.display_name, key)
        self.events.emit(CONTACT_ADDED, entry)
        return True

    def remove_contact(self, user_id: Any) -> bool:
        key = str(user_id)
        before = len(self._contacts)
        self._contacts = [entry for entry in self._contacts if entry.user_id != key]
        if len(self._contacts) == before:
            return False
        self.save()
        _LOGGER.info("Contact {} removed from whitelist.", key)
        self.events.emit(CONTACT_REMOVED, key)
        return True

    def update_settings(self, **changes: Any) -> AppSettings:
        known = {f.name for f in fields(AppSettings)}
        unknown = set(changes) - known
        if unknown:
            _LOGGER.warning("Ignoring unknown settings: {}", ", ".join(sorted(unknown)))
        merged = asdict(self._settings)
        merged.update({key: value for key, value in changes.items() if key in known})
        updated = _read_settings(merged)
        changed = {f.name for f in fields(AppSettings) if getattr(updated, f.name) != getattr(self._settings, f.name)}
        if not changed:
            return self._settings
        self._settings = updated
        self.save()
        self.events.emit(SETTINGS_CHANGED, replace(updated), frozenset(changed))
        return self._settings

    def _reset_to_defaults(self) -> None:
        self._settings = AppSettings()
        self._contacts = []
        self.save()

    def _write(self, payload: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Unable to write {self.path}: {exc}") from exc


def _read_settings(raw: Any) -> AppSettings:
    defaults = AppSettings()
    if not isinstance(raw, dict):
        return defaults
    return AppSettings(
        always_on_top=_read_bool(raw, "always_on_top", defaults.always_on_top),
        bubble_position=_read_position(raw, defaults.bubble_position),
        bubble_size=_read_int(raw, "bubble_size", defaults.bubble_size),
        max_bubbles=_read_int(raw, "max_bubbles", defaults.max_bubbles),
        poll_interval_ms=_read_int(raw, "poll_interval_ms", defaults.poll_interval_ms),
        show_notifications=_read_bool(raw, "show_notifications", defaults.show_notifications),
    )


def _read_contacts(raw: Any) -> List[ContactEntry]:
    if not isinstance(raw, list):
        return []
    contacts: List[ContactEntry] = []
    seen: set[str] = set()
    for item in raw:
        entry = ContactEntry.from_payload(item)
        if entry is None:
            _LOGGER.warning("Skipping malformed whitelist entry {!r}", item)
            continue
        if entry.user_id in seen:
            continue
        seen.add(entry.user_id)
        contacts.append(entry)
    return contacts


def _read_bool(raw: Dict[str, Any], name: str, default: bool) -> bool:
    value = raw.get(name)
    if value is None:
        return default
    if not isinstance(value, bool):
        _LOGGER.warning("Setting {} has unexpected type {}.", name, type(value).__name__)
        return default
    return value


def _read_int(raw: Dict[str, Any], name: str, default: int) -> int:
    value = raw.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _LOGGER.warning("Setting {} has unexpected type {}.", name, type(value).__name__)
        return default
    low, high = _INT_BOUNDS[name]
    if value < low or value > high:
        _LOGGER.warning(
            "Invalid {} value {} found in config. Clamping to safe bounds.",
            name,
            value,
        )
    return int(max(low, min(high, value)))


def _read_position(raw: Dict[str, Any], default: str) -> str:
    value = raw.get("bubble_position")
    if value is None:
        return default
    if value not in BUBBLE_POSITIONS:
        _LOGGER.warning("Unsupported bubble position {!r}; using {}.", value, default)
        return default
    return value
