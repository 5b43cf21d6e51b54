"""
Explicit publish/subscribe dispatch table shared by the core components.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

from tray_companion import logger as app_logger

_LOGGER = app_logger.get_logger()

Listener = Callable[..., Any]

# Connection supervisor
CONNECTION_CHANGED = "connection-changed"
WS_CONNECTED = "ws-connected"
WS_DISCONNECTED = "ws-disconnected"
ANY_EVENT = "event"
NEW_MESSAGE_EVENT = "newMessage"

# Unread tracker
NEW_MESSAGE = "new-message"
CONTACT_UNREAD_CHANGED = "contact-unread-changed"
MESSAGES_READ = "messages-read"

# Settings store
SETTINGS_CHANGED = "settings-changed"
CONTACT_ADDED = "contact-added"
CONTACT_REMOVED = "contact-removed"

# Backend events are also dispatched under their own type; these names stay reserved.
INTERNAL_KINDS = frozenset(
    {
        CONNECTION_CHANGED,
        WS_CONNECTED,
        WS_DISCONNECTED,
        ANY_EVENT,
        NEW_MESSAGE,
        CONTACT_UNREAD_CHANGED,
        MESSAGES_READ,
        SETTINGS_CHANGED,
        CONTACT_ADDED,
        CONTACT_REMOVED,
    }
)


class EventHub:
    """
    Maps an event kind to the listeners subscribed to it.

    Kinds are plain strings so that backend event types can be dispatched
    under their own name without being declared up front.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)

    def on(self, kind: str, listener: Listener) -> None:
        self._listeners[kind].append(listener)

    def off(self, kind: str, listener: Listener) -> None:
        listeners = self._listeners.get(kind)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[kind]

    def listener_count(self, kind: str) -> int:
        return len(self._listeners.get(kind, ()))

    def emit(self, kind: str, *args: Any) -> int:
        """Deliver ``args`` to every listener of ``kind``; return how many ran."""
        listeners = list(self._listeners.get(kind, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                _LOGGER.exception("Listener for '{}' failed", kind)
        return len(listeners)
