"""In-memory stand-ins for the backend connection and bubble windows."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from core.bubble_pool import BubbleInit
from core.events import EventHub
from shared.chat_models import ChatMessage, Dialog


class FakeSupervisor:
    def __init__(self) -> None:
        self.events = EventHub()
        self.connected = True
        self.dialogs: List[Dialog] = []
        self.messages: Dict[str, List[ChatMessage]] = {}
        self.read_calls: List[int] = []
        self.photo_calls: List[str] = []
        self.photos: Dict[str, bytes] = {}

    def add_dialog(self, dialog_id: str, user_id: str, title: str = "") -> None:
        self.dialogs.append(Dialog(dialog_id=dialog_id, user_id=user_id, title=title or user_id))

    def set_messages(self, dialog_id: str, payloads: List[Dict[str, Any]]) -> None:
        messages = [ChatMessage.from_payload(item, dialog_id=dialog_id) for item in payloads]
        self.messages[dialog_id] = [message for message in messages if message is not None]

    def push(self, event: Dict[str, Any]) -> None:
        self.events.emit("event", event)
        if event.get("type"):
            self.events.emit(event["type"], event)

    async def get_dialogs(self) -> List[Dialog]:
        return list(self.dialogs)

    async def get_messages(self, dialog_id: str, limit: int = 30) -> List[ChatMessage]:
        return list(self.messages.get(dialog_id, []))[-limit:]

    async def mark_read(self, message_id: int) -> Any:
        self.read_calls.append(message_id)
        return {"ok": True}

    async def get_profile_photo_bytes(self, user_id: str) -> Optional[bytes]:
        self.photo_calls.append(user_id)
        return self.photos.get(user_id)


class FakeWindow:
    def __init__(self, init: BubbleInit, size: int, on_clicked: Callable[[str], None]) -> None:
        self.init = init
        self.size = size
        self.count = init.count
        self.avatar = init.avatar
        self.always_on_top = init.always_on_top
        self.position: Optional[tuple] = None
        self.visible = False
        self.closed = False
        self._on_clicked = on_clicked

    def update_count(self, count: int) -> None:
        self.count = count

    def set_avatar(self, data: bytes) -> None:
        self.avatar = data

    def set_always_on_top(self, enabled: bool) -> None:
        self.always_on_top = enabled

    def move_to(self, x: int, y: int) -> None:
        self.position = (x, y)

    def show(self) -> None:
        self.visible = True

    def hide(self) -> None:
        self.visible = False

    def close(self) -> bool:
        self.closed = True
        self.visible = False
        return True

    def click(self) -> None:
        self._on_clicked(self.init.user_id)


class WindowRecorder:
    """Window factory that remembers every window it created."""

    def __init__(self) -> None:
        self.created: List[FakeWindow] = []

    def __call__(self, init: BubbleInit, size: int, on_clicked: Callable[[str], None]) -> FakeWindow:
        window = FakeWindow(init, size, on_clicked)
        self.created.append(window)
        return window

    def live(self) -> List[FakeWindow]:
        return [window for window in self.created if not window.closed]
