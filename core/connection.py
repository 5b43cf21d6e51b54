"""
Best-effort transport to the chat backend.

Owns one HTTP session, the health-check loop and a single push-event
WebSocket that reconnects with exponential backoff for as long as the
process lives. Backend-facing helpers never raise: an unreachable backend
is an expected state and is reported through ``connection-changed``.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from core.errors import MalformedEvent, TransportError
from core.events import (
    ANY_EVENT,
    CONNECTION_CHANGED,
    INTERNAL_KINDS,
    WS_CONNECTED,
    WS_DISCONNECTED,
    EventHub,
)
from shared.app_paths import AVATAR_DIR, DEFAULT_BASE_URL, push_url_for
from shared.chat_models import ChatMessage, Dialog
from tray_companion import logger as app_logger

_LOGGER = app_logger.get_logger()

REQUEST_TIMEOUT_SECONDS = 5.0
HEALTH_INTERVAL_SECONDS = 10.0
RECONNECT_BASE_DELAY_MS = 1000
RECONNECT_MAX_DELAY_MS = 30000
AVATAR_MAX_AGE_SECONDS = 24 * 60 * 60
MIN_AVATAR_BYTES = 100
DEFAULT_MESSAGE_LIMIT = 30

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9_.-]")


def reconnect_delay_ms(attempts: int) -> int:
    """Backoff before reconnect number ``attempts + 1``."""
    return min(RECONNECT_BASE_DELAY_MS * 2 ** max(0, attempts), RECONNECT_MAX_DELAY_MS)


def parse_event(data: Any) -> Dict[str, Any]:
    """Decode one push frame into an event record."""
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEvent(f"Frame is not UTF-8: {exc}") from exc
    try:
        event = json.loads(data)
    except (TypeError, ValueError) as exc:
        raise MalformedEvent(f"Frame is not JSON: {exc}") from exc
    if not isinstance(event, dict):
        raise MalformedEvent(f"Frame root is {type(event).__name__}, expected object")
    kind = event.get("type")
    if kind is not None and not isinstance(kind, str):
        raise MalformedEvent(f"Frame type must be a string, got {kind!r}")
    return event


class ConnectionSupervisor:
    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        avatar_dir: Optional[Path] = None,
        events: Optional[EventHub] = None,
        health_interval_seconds: float = HEALTH_INTERVAL_SECONDS,
        heartbeat_seconds: float = HEALTH_INTERVAL_SECONDS,
        request_timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.push_url = push_url_for(self.base_url)
        self.avatar_dir = Path(avatar_dir) if avatar_dir is not None else AVATAR_DIR
        self.events = events or EventHub()
        self.connected = False
        self.reconnect_attempts = 0
        self._health_interval = health_interval_seconds
        self._heartbeat = heartbeat_seconds
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None
        self._health_task: Optional[asyncio.Task[None]] = None
        self._push_task: Optional[asyncio.Task[None]] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._stopping = False

    # HTTP

    async def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """
        Issue one request and decode the reply.

        JSON replies are decoded; anything else comes back as raw bytes.
        Raises ``TransportError`` on connection failure or timeout. No retries.
        """
        session = self._ensure_session()
        url = self.base_url + path
        try:
            async with session.request(method, url, json=body, timeout=self._timeout) as response:
                raw = await response.read()
                content_type = response.headers.get("Content-Type", "")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise TransportError(f"{method} {path} failed: {str(exc) or type(exc).__name__}") from exc

        if "application/json" in content_type:
            try:
                return json.loads(raw)
            except ValueError:
                return raw.decode("utf-8", errors="replace")
        return raw

    async def get_health(self) -> Optional[Dict[str, Any]]:
        try:
            result = await self.request("GET", "/health")
        except TransportError as exc:
            _LOGGER.debug("Health check failed: {}", exc)
            self._set_connected(False)
            return None
        self._set_connected(True)
        return result if isinstance(result, dict) else {}

    async def get_me(self) -> Optional[Dict[str, Any]]:
        try:
            result = await self.request("GET", "/me")
        except TransportError:
            return None
        return result if isinstance(result, dict) else None

    async def get_dialogs(self) -> List[Dialog]:
        try:
            result = await self.request("GET", "/dialogs")
        except TransportError:
            return []
        if not isinstance(result, list):
            return []
        dialogs = (Dialog.from_payload(item) for item in result)
        return [dialog for dialog in dialogs if dialog is not None]

    async def get_messages(self, dialog_id: str, limit: int = DEFAULT_MESSAGE_LIMIT) -> List[ChatMessage]:
        try:
            result = await self.request("GET", f"/dialogs/{dialog_id}/messages?limit={int(limit)}")
        except TransportError:
            return []
        if not isinstance(result, list):
            return []
        messages = (ChatMessage.from_payload(item, dialog_id=str(dialog_id)) for item in result)
        return [message for message in messages if message is not None]

    async def send_message(self, dialog_id: str, text: str) -> Any:
        try:
            return await self.request("POST", f"/dialogs/{dialog_id}/messages", {"text": text})
        except TransportError:
            return None

    async def mark_read(self, message_id: int) -> Any:
        try:
            return await self.request("POST", f"/messages/{int(message_id)}/read")
        except TransportError:
            return None

    async def get_profile_photo(self, user_id: str) -> Optional[Path]:
        """Return the path of a cached avatar, fetching it when stale or absent."""
        cache_path = self.avatar_path(user_id)
        try:
            age = time.time() - cache_path.stat().st_mtime
        except OSError:
            age = None
        if age is not None and age < AVATAR_MAX_AGE_SECONDS:
            return cache_path

        try:
            data = await self.request("GET", f"/profile/{user_id}/photo")
        except TransportError:
            return None
        if not isinstance(data, (bytes, bytearray)) or len(data) <= MIN_AVATAR_BYTES:
            return None

        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            cache_path.write_bytes(bytes(data))
        except OSError as exc:
            _LOGGER.warning("Unable to cache avatar for {}: {}", user_id, exc)
            return None
        return cache_path

    async def get_profile_photo_bytes(self, user_id: str) -> Optional[bytes]:
        path = await self.get_profile_photo(user_id)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except OSError:
            return None

    def avatar_path(self, user_id: str) -> Path:
        return self.avatar_dir / f"{_UNSAFE_FILENAME.sub('_', str(user_id))}.jpg"

    # Push connection

    def connect(self) -> None:
        """Open the push connection, replacing any connection already running."""
        if self._stopping:
            return
        if self._push_task is not None and not self._push_task.done():
            self._push_task.cancel()
        self._push_task = asyncio.get_running_loop().create_task(self._run_push_connection())

    async def _run_push_connection(self) -> None:
        session = self._ensure_session()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(self.push_url, heartbeat=self._heartbeat),
                self._timeout.total,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            _LOGGER.warning("Push connection to {} failed: {}", self.push_url, str(exc) or type(exc).__name__)
            self._on_push_closed()
            return

        self._on_push_open()
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self._handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    # Recovery happens once the socket reports closed.
                    _LOGGER.error("Push connection error: {}", ws.exception())
        finally:
            await ws.close()
        self._on_push_closed()

    def _on_push_open(self) -> None:
        _LOGGER.info("Push connection established.")
        self.reconnect_attempts = 0
        self._set_connected(True)
        self.events.emit(WS_CONNECTED)

    def _on_push_closed(self) -> None:
        _LOGGER.info("Push connection closed.")
        self._set_connected(False)
        self.events.emit(WS_DISCONNECTED)
        self._schedule_reconnect()

    def _handle_frame(self, data: Any) -> None:
        try:
            event = parse_event(data)
        except MalformedEvent as exc:
            _LOGGER.warning("Dropping malformed push frame: {}", exc)
            return
        self.events.emit(ANY_EVENT, event)
        kind = event.get("type")
        if not kind:
            return
        if kind in INTERNAL_KINDS:
            _LOGGER.warning("Backend event type {!r} collides with an internal event; not dispatched by type.", kind)
            return
        self.events.emit(kind, event)

    def _schedule_reconnect(self) -> None:
        if self._stopping:
            return
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
        delay_ms = reconnect_delay_ms(self.reconnect_attempts)
        self.reconnect_attempts += 1
        _LOGGER.info(
            "Reconnecting in {}ms (attempt {})",
            delay_ms,
            self.reconnect_attempts,
        )
        self._reconnect_handle = self._call_later(delay_ms / 1000, self._reconnect_due)

    def _call_later(self, delay: float, callback) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    def _reconnect_due(self) -> None:
        self._reconnect_handle = None
        self.connect()

    # Health loop

    def start_health_check(self) -> None:
        self.stop_health_check()
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop())

    def stop_health_check(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

    async def _health_loop(self) -> None:
        while True:
            await self.get_health()
            await asyncio.sleep(self._health_interval)

    # Lifecycle

    def start(self) -> None:
        self._stopping = False
        self.start_health_check()
        self.connect()

    async def stop(self) -> None:
        self._stopping = True
        self.stop_health_check()
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        push_task, self._push_task = self._push_task, None
        if push_task is not None and not push_task.done():
            push_task.cancel()
            try:
                await push_task
            except asyncio.CancelledError:
                pass
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _set_connected(self, value: bool) -> None:
        if self.connected == value:
            return
        self.connected = value
        _LOGGER.info("Backend {}.", "connected" if value else "disconnected")
        self.events.emit(CONNECTION_CHANGED, value)

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session
