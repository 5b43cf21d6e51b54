"""
Normalized backend payloads.

The backend is loose about field names (``fromId`` or ``senderId``,
``dialogId`` or ``chatId``, ``text`` or ``message``). Every payload is
resolved into one of the types below as soon as it enters the process so
the rest of the code never inspects raw JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass(slots=True, frozen=True)
class ChatMessage:
    message_id: int
    sender_id: str
    dialog_id: str
    text: str = ""
    timestamp: Optional[int] = None
    is_outgoing: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Any, *, dialog_id: str = "") -> Optional["ChatMessage"]:
        """
        Build a message from a backend record, or return ``None`` when the
        record carries no usable message id.

        ``dialog_id`` is used when the record itself does not name its dialog
        (messages fetched from ``/dialogs/:id/messages`` usually don't).
        """
        if not isinstance(payload, Mapping):
            return None
        message_id = _coerce_int(payload.get("id"))
        if message_id is None:
            return None
        text = _first_text(payload, "text", "message")
        return cls(
            message_id=message_id,
            sender_id=_first_id(payload, "fromId", "senderId"),
            dialog_id=_first_id(payload, "dialogId", "chatId") or str(dialog_id or ""),
            text=text,
            timestamp=_coerce_int(payload.get("date", payload.get("timestamp"))),
            is_outgoing=bool(payload.get("isOutgoing", False)),
            raw=dict(payload),
        )

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> Optional["ChatMessage"]:
        """Resolve the message carried by a push event (nested or inline)."""
        nested = event.get("message")
        if isinstance(nested, Mapping):
            fallback_dialog = _first_id(event, "dialogId", "chatId")
            return cls.from_payload(nested, dialog_id=fallback_dialog)
        return cls.from_payload(event)


@dataclass(slots=True, frozen=True)
class Dialog:
    dialog_id: str
    user_id: str
    title: str
    username: str = ""
    unread_count: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["Dialog"]:
        if not isinstance(payload, Mapping):
            return None
        dialog_id = _first_id(payload, "id")
        if not dialog_id:
            return None
        user_id = _first_id(payload, "userId") or dialog_id
        username = payload.get("username") or ""
        title = _first_text(payload, "title", "name", "firstName") or username or dialog_id
        return cls(
            dialog_id=dialog_id,
            user_id=user_id,
            title=str(title),
            username=str(username),
            unread_count=_coerce_int(payload.get("unreadCount")) or 0,
        )


def _first_id(payload: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def _first_text(payload: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
