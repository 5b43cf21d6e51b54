import asyncio
import json
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from core.connection import (
    ConnectionSupervisor,
    parse_event,
    reconnect_delay_ms,
)
from core.errors import MalformedEvent, TransportError
from core.events import ANY_EVENT, CONNECTION_CHANGED, NEW_MESSAGE, WS_CONNECTED, WS_DISCONNECTED

PHOTO_BYTES = b"\xff\xd8" + b"x" * 400


def create_backend(state):
    async def health(request):
        return web.json_response({"status": "ok", "connected": True, "uptime": 12})

    async def me(request):
        return web.json_response({"id": "1", "firstName": "Me"})

    async def dialogs(request):
        return web.json_response(
            [
                {"id": "d1", "userId": 42, "title": "Ann"},
                {"id": 77, "firstName": "Bob"},
                {"title": "broken"},
            ]
        )

    async def messages(request):
        state["message_queries"].append((request.match_info["dialog_id"], request.query.get("limit")))
        return web.json_response([{"id": 5, "fromId": 42}, {"id": 6, "senderId": 42}, {"text": "no id"}])

    async def send(request):
        body = await request.json()
        state["sent"].append((request.match_info["dialog_id"], body))
        return web.json_response({"ok": True})

    async def read(request):
        state["read"].append(request.match_info["message_id"])
        return web.json_response({"ok": True})

    async def photo(request):
        state["photo_requests"] += 1
        return web.Response(body=state["photo"], content_type="image/jpeg")

    async def slow(request):
        await asyncio.sleep(2)
        return web.json_response({})

    async def events(request):
        ws = web.WebSocketResponse(autoping=state["answer_pings"])
        await ws.prepare(request)
        state["sockets"] += 1
        for frame in state["frames"]:
            await ws.send_str(frame)
        if state["close_after_frames"]:
            await ws.close()
            return ws
        async for _msg in ws:
            pass
        return ws

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_get("/me", me)
    app.router.add_get("/dialogs", dialogs)
    app.router.add_get("/dialogs/{dialog_id}/messages", messages)
    app.router.add_post("/dialogs/{dialog_id}/messages", send)
    app.router.add_post("/messages/{message_id}/read", read)
    app.router.add_get("/profile/{user_id}/photo", photo)
    app.router.add_get("/slow", slow)
    app.router.add_get("/events", events)
    return app


def new_state():
    return {
        "message_queries": [],
        "sent": [],
        "read": [],
        "photo": PHOTO_BYTES,
        "photo_requests": 0,
        "frames": [],
        "sockets": 0,
        "close_after_frames": False,
        "answer_pings": True,
    }


class BackoffTests(unittest.TestCase):
    def test_delay_doubles_and_caps(self):
        delays = [reconnect_delay_ms(attempt) for attempt in range(7)]
        self.assertEqual(delays, [1000, 2000, 4000, 8000, 16000, 30000, 30000])


class ParseEventTests(unittest.TestCase):
    def test_valid_frames(self):
        self.assertEqual(parse_event('{"type": "newMessage", "id": 1}')["type"], "newMessage")
        self.assertEqual(parse_event(b'{"id": 1}'), {"id": 1})

    def test_malformed_frames(self):
        for frame in ("not json", "[1, 2]", '{"type": 5}', b"\xff\xfe"):
            with self.subTest(frame=frame):
                with self.assertRaises(MalformedEvent):
                    parse_event(frame)


class FrameDispatchTests(unittest.TestCase):
    def setUp(self):
        self.supervisor = ConnectionSupervisor(base_url="http://127.0.0.1:1", avatar_dir=Path(tempfile.gettempdir()))

    def test_backend_type_matching_internal_kind_is_not_dispatched_by_type(self):
        changes = []
        generic = []
        self.supervisor.events.on(CONNECTION_CHANGED, changes.append)
        self.supervisor.events.on(NEW_MESSAGE, changes.append)
        self.supervisor.events.on(ANY_EVENT, generic.append)

        self.supervisor._handle_frame(json.dumps({"type": "connection-changed", "x": 1}))
        self.supervisor._handle_frame(json.dumps({"type": "new-message"}))

        self.assertEqual(changes, [])
        self.assertEqual([event["type"] for event in generic], ["connection-changed", "new-message"])

    def test_internal_listener_never_receives_backend_frames(self):
        calls = []
        self.supervisor.events.on(WS_CONNECTED, lambda: calls.append("connected"))

        self.supervisor._handle_frame(json.dumps({"type": "ws-connected"}))

        self.assertEqual(calls, [])


class SupervisorTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.state = new_state()
        self.server = TestServer(create_backend(self.state))
        await self.server.start_server()
        self._tmp = tempfile.TemporaryDirectory()
        self.avatar_dir = Path(self._tmp.name) / "avatars"
        self.supervisor = ConnectionSupervisor(
            base_url=str(self.server.make_url("")),
            avatar_dir=self.avatar_dir,
            request_timeout_seconds=1.0,
        )

    async def asyncTearDown(self):
        await self.supervisor.stop()
        await self.server.close()
        self._tmp.cleanup()

    def _record(self, kind):
        seen = []
        self.supervisor.events.on(kind, lambda *args: seen.append(args))
        return seen

    async def _wait_for(self, kind, timeout=5.0):
        fired = asyncio.Event()
        self.supervisor.events.on(kind, lambda *args: fired.set())
        await asyncio.wait_for(fired.wait(), timeout)


class RequestTests(SupervisorTestCase):
    async def test_json_reply_is_decoded(self):
        result = await self.supervisor.request("GET", "/health")
        self.assertEqual(result["status"], "ok")

    async def test_binary_reply_is_returned_raw(self):
        result = await self.supervisor.request("GET", "/profile/42/photo")
        self.assertEqual(result, PHOTO_BYTES)

    async def test_timeout_raises_transport_error(self):
        with self.assertRaises(TransportError):
            await self.supervisor.request("GET", "/slow")

    async def test_unreachable_backend_raises_transport_error(self):
        offline = ConnectionSupervisor(base_url=f"http://127.0.0.1:{unused_port()}", avatar_dir=self.avatar_dir)
        try:
            with self.assertRaises(TransportError):
                await offline.request("GET", "/health")
        finally:
            await offline.stop()

    async def test_wrappers_normalize_payloads(self):
        dialogs = await self.supervisor.get_dialogs()
        self.assertEqual([(d.dialog_id, d.user_id) for d in dialogs], [("d1", "42"), ("77", "77")])

        messages = await self.supervisor.get_messages("d1", 10)
        self.assertEqual([(m.message_id, m.sender_id, m.dialog_id) for m in messages], [(5, "42", "d1"), (6, "42", "d1")])
        self.assertEqual(self.state["message_queries"], [("d1", "10")])

        self.assertEqual((await self.supervisor.get_me())["id"], "1")
        await self.supervisor.send_message("d1", "hello")
        await self.supervisor.mark_read(7)
        self.assertEqual(self.state["sent"], [("d1", {"text": "hello"})])
        self.assertEqual(self.state["read"], ["7"])

    async def test_wrappers_return_sentinels_when_backend_down(self):
        offline = ConnectionSupervisor(base_url=f"http://127.0.0.1:{unused_port()}", avatar_dir=self.avatar_dir)
        try:
            self.assertIsNone(await offline.get_health())
            self.assertIsNone(await offline.get_me())
            self.assertEqual(await offline.get_dialogs(), [])
            self.assertEqual(await offline.get_messages("d1"), [])
            self.assertIsNone(await offline.send_message("d1", "hi"))
            self.assertIsNone(await offline.mark_read(1))
            self.assertIsNone(await offline.get_profile_photo("42"))
        finally:
            await offline.stop()


class HealthTests(SupervisorTestCase):
    async def test_health_sets_connected_once(self):
        changes = self._record(CONNECTION_CHANGED)

        self.assertIsNotNone(await self.supervisor.get_health())
        await self.supervisor.get_health()

        self.assertTrue(self.supervisor.connected)
        self.assertEqual(changes, [(True,)])

    async def test_health_failure_clears_connected(self):
        await self.supervisor.get_health()
        changes = self._record(CONNECTION_CHANGED)
        await self.server.close()

        self.assertIsNone(await self.supervisor.get_health())

        self.assertFalse(self.supervisor.connected)
        self.assertEqual(changes, [(False,)])


class ProfilePhotoTests(SupervisorTestCase):
    async def test_photo_is_cached_for_a_day(self):
        first = await self.supervisor.get_profile_photo("42")
        second = await self.supervisor.get_profile_photo("42")

        self.assertEqual(first, second)
        self.assertEqual(first.read_bytes(), PHOTO_BYTES)
        self.assertEqual(self.state["photo_requests"], 1)
        self.assertEqual(await self.supervisor.get_profile_photo_bytes("42"), PHOTO_BYTES)
        self.assertEqual(self.state["photo_requests"], 1)

    async def test_stale_cache_is_refetched(self):
        path = await self.supervisor.get_profile_photo("42")
        old = time.time() - 25 * 60 * 60
        os.utime(path, (old, old))

        await self.supervisor.get_profile_photo("42")

        self.assertEqual(self.state["photo_requests"], 2)

    async def test_tiny_photo_means_no_photo(self):
        self.state["photo"] = b"x" * 50

        self.assertIsNone(await self.supervisor.get_profile_photo("42"))
        self.assertFalse(self.supervisor.avatar_path("42").exists())

    async def test_user_id_cannot_escape_avatar_dir(self):
        path = self.supervisor.avatar_path("../../etc/passwd")
        self.assertEqual(path.parent, self.avatar_dir)


class PushConnectionTests(SupervisorTestCase):
    async def test_frames_are_dispatched_generically_and_by_type(self):
        self.state["frames"] = [
            json.dumps({"type": "newMessage", "message": {"id": 7, "fromId": 42}}),
            "garbage",
            json.dumps({"hello": "untyped"}),
        ]
        generic = self._record(ANY_EVENT)
        typed = self._record("newMessage")
        got_untyped = asyncio.Event()
        self.supervisor.events.on(ANY_EVENT, lambda event: event.get("hello") and got_untyped.set())
        connected = asyncio.Event()
        self.supervisor.events.on(WS_CONNECTED, connected.set)

        self.supervisor.connect()
        await asyncio.wait_for(connected.wait(), 5)
        await asyncio.wait_for(got_untyped.wait(), 5)

        self.assertTrue(self.supervisor.connected)
        self.assertEqual(len(generic), 2)
        self.assertEqual(len(typed), 1)
        self.assertEqual(typed[0][0]["message"]["id"], 7)

    async def test_close_schedules_reconnect_and_open_resets_attempts(self):
        self.state["close_after_frames"] = True
        scheduled = []
        self.supervisor._call_later = lambda delay, callback: scheduled.append((delay, callback)) or mock.Mock()
        disconnected = asyncio.Event()
        self.supervisor.events.on(WS_DISCONNECTED, disconnected.set)
        self.supervisor.reconnect_attempts = 3

        self.supervisor.connect()
        await asyncio.wait_for(disconnected.wait(), 5)

        self.assertFalse(self.supervisor.connected)
        self.assertEqual(self.supervisor.reconnect_attempts, 1)
        self.assertEqual([delay for delay, _ in scheduled], [1.0])

    async def test_silent_peer_is_detected_by_heartbeat(self):
        self.state["answer_pings"] = False
        await self.supervisor.stop()
        self.supervisor = ConnectionSupervisor(
            base_url=str(self.server.make_url("")),
            avatar_dir=self.avatar_dir,
            heartbeat_seconds=0.2,
        )
        scheduled = []
        self.supervisor._call_later = lambda delay, callback: scheduled.append(delay) or mock.Mock()
        connected = asyncio.Event()
        disconnected = asyncio.Event()
        self.supervisor.events.on(WS_CONNECTED, connected.set)
        self.supervisor.events.on(WS_DISCONNECTED, disconnected.set)

        self.supervisor.connect()
        await asyncio.wait_for(connected.wait(), 5)
        await asyncio.wait_for(disconnected.wait(), 5)

        self.assertFalse(self.supervisor.connected)
        self.assertEqual(scheduled, [1.0])

    async def test_failed_connects_back_off_exponentially(self):
        offline = ConnectionSupervisor(base_url=f"http://127.0.0.1:{unused_port()}", avatar_dir=self.avatar_dir)
        scheduled = []
        offline._call_later = lambda delay, callback: scheduled.append((delay, callback)) or mock.Mock()
        disconnects = []
        offline.events.on(WS_DISCONNECTED, lambda: disconnects.append(True))
        try:
            for expected in range(1, 5):
                if scheduled:
                    scheduled[-1][1]()
                else:
                    offline.connect()
                while len(disconnects) < expected:
                    await asyncio.sleep(0.01)
            self.assertEqual([delay for delay, _ in scheduled], [1.0, 2.0, 4.0, 8.0])
            self.assertEqual(offline.reconnect_attempts, 4)
        finally:
            await offline.stop()

    async def test_reconnect_replaces_pending_timer(self):
        handles = []

        def fake_call_later(delay, callback):
            handle = mock.Mock()
            handles.append(handle)
            return handle

        self.supervisor._call_later = fake_call_later
        self.supervisor._schedule_reconnect()
        self.supervisor._schedule_reconnect()

        handles[0].cancel.assert_called_once_with()
        handles[1].cancel.assert_not_called()

    async def test_stop_prevents_further_reconnects(self):
        scheduled = []
        self.supervisor._call_later = lambda delay, callback: scheduled.append(delay) or mock.Mock()
        await self.supervisor.stop()

        self.supervisor._schedule_reconnect()
        self.supervisor.connect()

        self.assertEqual(scheduled, [])


class LifecycleTests(SupervisorTestCase):
    async def test_start_runs_health_and_push_together(self):
        connected = asyncio.Event()
        self.supervisor.events.on(WS_CONNECTED, connected.set)

        self.supervisor.start()
        await asyncio.wait_for(connected.wait(), 5)
        await asyncio.sleep(0.05)

        self.assertTrue(self.supervisor.connected)
        self.assertEqual(self.state["sockets"], 1)

        await self.supervisor.stop()
        self.assertIsNone(self.supervisor._health_task)


if __name__ == "__main__":
    unittest.main()
