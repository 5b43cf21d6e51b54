import unittest

from shared.app_paths import push_url_for
from shared.chat_models import ChatMessage, Dialog


class ChatMessageTests(unittest.TestCase):
    def test_sender_resolves_from_either_field(self):
        first = ChatMessage.from_payload({"id": 1, "fromId": 42, "dialogId": "d1"})
        second = ChatMessage.from_payload({"id": 2, "senderId": "42", "chatId": "d1"})

        self.assertEqual(first.sender_id, "42")
        self.assertEqual(second.sender_id, "42")
        self.assertEqual(second.dialog_id, "d1")

    def test_dialog_fallback_used_when_record_has_none(self):
        message = ChatMessage.from_payload({"id": 5, "fromId": 42}, dialog_id="d9")
        self.assertEqual(message.dialog_id, "d9")

    def test_text_prefers_text_then_message(self):
        self.assertEqual(ChatMessage.from_payload({"id": 1, "message": "hey"}).text, "hey")
        self.assertEqual(ChatMessage.from_payload({"id": 1, "text": "a", "message": "b"}).text, "a")

    def test_record_without_usable_id_is_rejected(self):
        self.assertIsNone(ChatMessage.from_payload({"fromId": 42}))
        self.assertIsNone(ChatMessage.from_payload({"id": "abc"}))
        self.assertIsNone(ChatMessage.from_payload({"id": True}))
        self.assertIsNone(ChatMessage.from_payload(["not", "a", "dict"]))

    def test_from_event_reads_nested_message(self):
        event = {"type": "newMessage", "dialogId": "d1", "message": {"id": 7, "fromId": 42}}
        message = ChatMessage.from_event(event)

        self.assertEqual(message.message_id, 7)
        self.assertEqual(message.dialog_id, "d1")

    def test_from_event_reads_inline_message(self):
        message = ChatMessage.from_event({"type": "newMessage", "id": 7, "senderId": 42, "chatId": "d1"})

        self.assertEqual((message.message_id, message.sender_id, message.dialog_id), (7, "42", "d1"))

    def test_equality_ignores_raw_payload(self):
        first = ChatMessage.from_payload({"id": 1, "fromId": 2, "dialogId": "d", "extra": 1})
        second = ChatMessage.from_payload({"id": 1, "fromId": 2, "dialogId": "d"})
        self.assertEqual(first, second)


class DialogTests(unittest.TestCase):
    def test_user_id_falls_back_to_dialog_id(self):
        dialog = Dialog.from_payload({"id": 42, "firstName": "Ann"})

        self.assertEqual(dialog.user_id, "42")
        self.assertEqual(dialog.title, "Ann")

    def test_explicit_user_id_wins(self):
        dialog = Dialog.from_payload({"id": "d1", "userId": 42, "title": "Ann", "username": "ann"})

        self.assertEqual((dialog.dialog_id, dialog.user_id, dialog.username), ("d1", "42", "ann"))

    def test_dialog_without_id_is_rejected(self):
        self.assertIsNone(Dialog.from_payload({"title": "nobody"}))


class PushUrlTests(unittest.TestCase):
    def test_scheme_is_switched(self):
        self.assertEqual(push_url_for("http://localhost:7777"), "ws://localhost:7777/events")
        self.assertEqual(push_url_for("https://example.test/"), "wss://example.test/events")


if __name__ == "__main__":
    unittest.main()
