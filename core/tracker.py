"""
Unread accounting for whitelisted contacts.

Two overlapping sources feed the ledger: push events from the supervisor and
a periodic poll of recent messages. Both go through ``_accept`` which is the
only place a message enters the ledger, so a message seen by both sources
is counted once.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, List, Optional, Set

from core.connection import ConnectionSupervisor
from core.events import (
    CONTACT_REMOVED,
    CONTACT_UNREAD_CHANGED,
    MESSAGES_READ,
    NEW_MESSAGE,
    NEW_MESSAGE_EVENT,
    SETTINGS_CHANGED,
    WS_CONNECTED,
    WS_DISCONNECTED,
    EventHub,
)
from core.settings import AppSettings, SettingsStore
from core.watermark_store import WatermarkStore
from shared.chat_models import ChatMessage
from tray_companion import logger as app_logger

_LOGGER = app_logger.get_logger()

POLL_MESSAGE_LIMIT = 10
INITIAL_POLL_DELAY_SECONDS = 1.0


@dataclass
class UnreadEntry:
    dialog_id: Optional[str] = None
    messages: List[ChatMessage] = field(default_factory=list)
    _ids: Set[int] = field(default_factory=set, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._ids = {message.message_id for message in self.messages}

    @property
    def count(self) -> int:
        return len(self.messages)

    def contains(self, message_id: int) -> bool:
        return message_id in self._ids

    def append(self, message: ChatMessage) -> bool:
        if message.message_id in self._ids:
            return False
        self._ids.add(message.message_id)
        self.messages.append(message)
        return True

    def latest(self) -> Optional[ChatMessage]:
        """The most recent buffered message; ids grow monotonically per dialog."""
        if not self.messages:
            return None
        return max(self.messages, key=lambda message: message.message_id)

    def highest_per_dialog(self) -> Dict[str, int]:
        highest: Dict[str, int] = {}
        for message in self.messages:
            dialog_id = message.dialog_id or self.dialog_id
            if not dialog_id:
                continue
            if dialog_id not in highest or message.message_id > highest[dialog_id]:
                highest[dialog_id] = message.message_id
        return highest


@dataclass(slots=True, frozen=True)
class NewMessageEvent:
    user_id: str
    dialog_id: str
    message: ChatMessage


@dataclass(slots=True, frozen=True)
class UnreadChange:
    user_id: str
    count: int


class UnreadTracker:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        store: SettingsStore,
        watermarks: WatermarkStore,
        *,
        events: Optional[EventHub] = None,
        initial_poll_delay_seconds: float = INITIAL_POLL_DELAY_SECONDS,
    ) -> None:
        self.events = events or EventHub()
        self._supervisor = supervisor
        self._store = store
        self._watermarks = watermarks
        self._initial_poll_delay = initial_poll_delay_seconds
        self._unreads: Dict[str, UnreadEntry] = {}
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._poll_interval_ms = store.settings.poll_interval_ms
        self._pending: Set[asyncio.Task[Any]] = set()
        self._subscribed = False
        self.ws_active = False

    # Lifecycle

    def start(self) -> None:
        if not self._subscribed:
            self._supervisor.events.on(NEW_MESSAGE_EVENT, self._handle_push_event)
            self._supervisor.events.on(WS_CONNECTED, self._on_ws_connected)
            self._supervisor.events.on(WS_DISCONNECTED, self._on_ws_disconnected)
            self._store.events.on(SETTINGS_CHANGED, self._on_settings_changed)
            self._store.events.on(CONTACT_REMOVED, self._on_contact_removed)
            self._subscribed = True
        self._poll_interval_ms = self._store.settings.poll_interval_ms
        self._restart_polling(self._initial_poll_delay)

    def stop(self) -> None:
        if self._subscribed:
            self._supervisor.events.off(NEW_MESSAGE_EVENT, self._handle_push_event)
            self._supervisor.events.off(WS_CONNECTED, self._on_ws_connected)
            self._supervisor.events.off(WS_DISCONNECTED, self._on_ws_disconnected)
            self._store.events.off(SETTINGS_CHANGED, self._on_settings_changed)
            self._store.events.off(CONTACT_REMOVED, self._on_contact_removed)
            self._subscribed = False
        self._cancel_polling()
        for task in list(self._pending):
            task.cancel()
        self._watermarks.save()

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # Poll path

    async def poll_once(self) -> int:
        """Run one poll tick; return the number of newly accepted messages."""
        if not self._supervisor.connected:
            _LOGGER.debug("Skipping poll; backend disconnected.")
            return 0

        accepted = 0
        dialogs = await self._supervisor.get_dialogs()
        for dialog in dialogs:
            if not self._store.is_whitelisted(dialog.user_id):
                continue
            messages = await self._supervisor.get_messages(dialog.dialog_id, POLL_MESSAGE_LIMIT)
            if not messages:
                continue
            # Without a watermark the history is unknown; wait for push or a mark-read.
            last_seen = self._watermarks.get(dialog.dialog_id)
            if last_seen is None:
                continue
            for message in messages:
                if message.message_id > last_seen and message.sender_id == dialog.user_id:
                    if self._accept(dialog.user_id, dialog.dialog_id, message):
                        accepted += 1
        return accepted

    async def _poll_loop(self, initial_delay: float) -> None:
        await asyncio.sleep(initial_delay)
        while True:
            try:
                await self.poll_once()
            except Exception:
                _LOGGER.exception("Poll tick failed")
            await asyncio.sleep(self._poll_interval_ms / 1000)

    def _restart_polling(self, initial_delay: float) -> None:
        self._cancel_polling()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(initial_delay))

    def _cancel_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    # Push path

    def _handle_push_event(self, event: Dict[str, Any]) -> None:
        message = ChatMessage.from_event(event)
        if message is None:
            _LOGGER.debug("Ignoring push event without a message id: {}", event.get("type"))
            return
        if not message.sender_id or not self._store.is_whitelisted(message.sender_id):
            return
        if message.dialog_id:
            last_seen = self._watermarks.get(message.dialog_id)
            if last_seen is not None and message.message_id <= last_seen:
                _LOGGER.debug(
                    "Ignoring already-read message {} in dialog {}",
                    message.message_id,
                    message.dialog_id,
                )
                return
        self._accept(message.sender_id, message.dialog_id, message)

    def _on_ws_connected(self) -> None:
        self.ws_active = True
        _LOGGER.info("Push events active; polling continues as catch-up.")

    def _on_ws_disconnected(self) -> None:
        self.ws_active = False
        _LOGGER.info("Push events lost; relying on polling.")

    # Ledger

    def _accept(self, user_id: str, dialog_id: str, message: ChatMessage) -> bool:
        entry = self._unreads.get(user_id)
        if entry is not None and entry.contains(message.message_id):
            return False
        if entry is None:
            entry = UnreadEntry(dialog_id=dialog_id or None)
            self._unreads[user_id] = entry
        elif dialog_id:
            entry.dialog_id = dialog_id
        entry.append(message)

        self.events.emit(NEW_MESSAGE, NewMessageEvent(user_id=user_id, dialog_id=entry.dialog_id or "", message=message))
        self.events.emit(CONTACT_UNREAD_CHANGED, UnreadChange(user_id=user_id, count=entry.count))
        return True

    def mark_read(self, user_id: str) -> None:
        entry = self._unreads.get(str(user_id))
        if entry is None:
            return
        user_id = str(user_id)

        latest = entry.latest()
        if latest is not None:
            for dialog_id, message_id in entry.highest_per_dialog().items():
                self._watermarks.advance(dialog_id, message_id)
            self._watermarks.save()
            self._spawn(self._supervisor.mark_read(latest.message_id))

        del self._unreads[user_id]
        _LOGGER.debug("Marked {} message(s) from {} as read.", entry.count, user_id)
        self.events.emit(MESSAGES_READ, user_id)
        self.events.emit(CONTACT_UNREAD_CHANGED, UnreadChange(user_id=user_id, count=0))

    def get_unreads(self, user_id: str) -> UnreadEntry:
        return self._unreads.get(str(user_id)) or UnreadEntry()

    def all_unreads(self) -> Dict[str, UnreadEntry]:
        return dict(self._unreads)

    def total_unread_count(self) -> int:
        return sum(entry.count for entry in self._unreads.values())

    # Settings

    def _on_settings_changed(self, settings: AppSettings, changed: frozenset) -> None:
        if "poll_interval_ms" not in changed:
            return
        self._poll_interval_ms = settings.poll_interval_ms
        _LOGGER.info("Polling interval updated to {} ms.", settings.poll_interval_ms)
        if self.polling:
            self._restart_polling(self._poll_interval_ms / 1000)

    def _on_contact_removed(self, user_id: str) -> None:
        if self._unreads.pop(user_id, None) is None:
            return
        self.events.emit(CONTACT_UNREAD_CHANGED, UnreadChange(user_id=user_id, count=0))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> Optional[asyncio.Task[Any]]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task
