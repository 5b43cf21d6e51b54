"""
Capped pool of floating contact bubbles driven by unread counts.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, Optional, Protocol, Set

from core.connection import ConnectionSupervisor
from core.events import CONTACT_UNREAD_CHANGED, SETTINGS_CHANGED, EventHub
from core.settings import AppSettings, SettingsStore
from tray_companion import logger as app_logger

_LOGGER = app_logger.get_logger()

BUBBLE_GAP = 12
EDGE_MARGIN = 20
BASE_OFFSET = 100
_LAYOUT_SETTINGS = frozenset({"bubble_position", "bubble_size", "max_bubbles"})


@dataclass(slots=True, frozen=True)
class BubbleInit:
    user_id: str
    display_name: str
    count: int
    avatar: Optional[bytes] = None
    always_on_top: bool = True


@dataclass(slots=True, frozen=True)
class ScreenArea:
    left: int
    top: int
    width: int
    height: int


class BubbleView(Protocol):
    def update_count(self, count: int) -> None: ...

    def set_avatar(self, data: bytes) -> None: ...

    def set_always_on_top(self, enabled: bool) -> None: ...

    def move_to(self, x: int, y: int) -> None: ...

    def show(self) -> None: ...

    def hide(self) -> None: ...

    def close(self) -> Any: ...


WindowFactory = Callable[[BubbleInit, int, Callable[[str], None]], BubbleView]


def bubble_slot(index: int, *, position: str, size: int, screen: ScreenArea) -> tuple[int, int]:
    """Top-left corner of the ``index``-th bubble along the configured edge."""
    if position == "left":
        x = screen.left + EDGE_MARGIN
    else:
        x = screen.left + screen.width - size - EDGE_MARGIN
    y = screen.top + BASE_OFFSET + index * (size + BUBBLE_GAP)
    return x, y


def _qt_window_factory(init: BubbleInit, size: int, on_clicked: Callable[[str], None]) -> BubbleView:
    from core.bubble_window import BubbleWindow

    window = BubbleWindow(init, size)
    window.clicked.connect(on_clicked)
    return window


def _primary_screen_area() -> ScreenArea:
    from PySide6.QtWidgets import QApplication

    screen = QApplication.primaryScreen()
    if screen is None:
        return ScreenArea(0, 0, 1280, 800)
    geometry = screen.availableGeometry()
    return ScreenArea(geometry.x(), geometry.y(), geometry.width(), geometry.height())


class BubblePool:
    def __init__(
        self,
        store: SettingsStore,
        supervisor: ConnectionSupervisor,
        *,
        open_conversation: Optional[Callable[[str], None]] = None,
        window_factory: Optional[WindowFactory] = None,
        screen_area: Optional[Callable[[], ScreenArea]] = None,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._open_conversation = open_conversation
        self._window_factory = window_factory or _qt_window_factory
        self._screen_area = screen_area or _primary_screen_area
        self._windows: Dict[str, BubbleView] = {}
        self._avatar_cache: Dict[str, bytes] = {}
        self._avatar_loading: Set[str] = set()
        self._pending: Set[asyncio.Task[Any]] = set()
        self._attached: list[tuple[EventHub, str, Callable[..., Any]]] = []
        self.visible = True

    def attach(self, tracker_events: EventHub) -> None:
        """Subscribe to unread changes and layout-affecting settings."""
        self._subscribe(tracker_events, CONTACT_UNREAD_CHANGED, self._on_unread_change)
        self._subscribe(self._store.events, SETTINGS_CHANGED, self._on_settings_changed)

    def detach(self) -> None:
        for hub, kind, listener in self._attached:
            hub.off(kind, listener)
        self._attached = []

    def set_open_conversation(self, callback: Optional[Callable[[str], None]]) -> None:
        self._open_conversation = callback

    @property
    def live_count(self) -> int:
        return len(self._windows)

    def has_bubble(self, user_id: str) -> bool:
        return str(user_id) in self._windows

    def on_unread_changed(self, user_id: str, count: int) -> None:
        user_id = str(user_id)
        if count <= 0:
            self.remove_bubble(user_id)
            return

        window = self._windows.get(user_id)
        if window is not None:
            window.update_count(count)
            return

        settings = self._store.settings
        if len(self._windows) >= settings.max_bubbles:
            _LOGGER.debug("Bubble pool full ({}); no bubble for {}.", settings.max_bubbles, user_id)
            return

        contact = self._store.contact_info(user_id)
        init = BubbleInit(
            user_id=user_id,
            display_name=contact.display_name if contact else user_id,
            count=count,
            avatar=self._avatar_cache.get(user_id),
            always_on_top=settings.always_on_top,
        )
        window = self._window_factory(init, settings.bubble_size, self.handle_bubble_clicked)
        index = len(self._windows)
        self._windows[user_id] = window
        window.move_to(*self._slot(index, settings))
        if self.visible:
            window.show()
        _LOGGER.debug("Bubble created for {} in slot {}.", user_id, index)

        if init.avatar is None and user_id not in self._avatar_loading:
            task = self._spawn(self._load_avatar(user_id))
            if task is not None:
                self._avatar_loading.add(user_id)
                task.add_done_callback(lambda _task: self._avatar_loading.discard(user_id))

    def remove_bubble(self, user_id: str) -> None:
        window = self._windows.pop(str(user_id), None)
        if window is None:
            return
        window.close()
        self.reposition_all()

    def reposition_all(self) -> None:
        settings = self._store.settings
        for index, window in enumerate(self._windows.values()):
            window.move_to(*self._slot(index, settings))

    def show_all(self) -> None:
        self.visible = True
        for window in self._windows.values():
            window.show()

    def hide_all(self) -> None:
        self.visible = False
        for window in self._windows.values():
            window.hide()

    def toggle_visibility(self) -> bool:
        if self.visible:
            self.hide_all()
        else:
            self.show_all()
        return self.visible

    def destroy_all(self) -> None:
        windows, self._windows = self._windows, {}
        for window in windows.values():
            window.close()
        for task in list(self._pending):
            task.cancel()
        self._avatar_loading.clear()

    def handle_bubble_clicked(self, user_id: str) -> None:
        if self._open_conversation is None:
            _LOGGER.debug("Bubble for {} clicked but no conversation handler is set.", user_id)
            return
        self._open_conversation(str(user_id))

    async def _load_avatar(self, user_id: str) -> None:
        data = await self._supervisor.get_profile_photo_bytes(user_id)
        if not data:
            return
        self._avatar_cache[user_id] = data
        window = self._windows.get(user_id)
        if window is not None:
            window.set_avatar(data)

    def _slot(self, index: int, settings: AppSettings) -> tuple[int, int]:
        return bubble_slot(
            index,
            position=settings.bubble_position,
            size=settings.bubble_size,
            screen=self._screen_area(),
        )

    def _on_unread_change(self, change: Any) -> None:
        self.on_unread_changed(change.user_id, change.count)

    def _on_settings_changed(self, settings: AppSettings, changed: frozenset) -> None:
        if "always_on_top" in changed:
            for window in self._windows.values():
                window.set_always_on_top(settings.always_on_top)
        if not changed & _LAYOUT_SETTINGS:
            return
        excess = list(self._windows)[settings.max_bubbles:]
        for user_id in excess:
            self._windows.pop(user_id).close()
        self.reposition_all()

    def _subscribe(self, hub: EventHub, kind: str, listener: Callable[..., Any]) -> None:
        hub.on(kind, listener)
        self._attached.append((hub, kind, listener))

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
