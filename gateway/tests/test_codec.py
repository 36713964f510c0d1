import unittest

from alumni_gateway.codec import (
    content_from_body,
    error_frame,
    message_from_wire,
    message_to_wire,
    online_set_frame,
    parse_timestamp_ms,
    send_ack_frame,
)
from alumni_gateway.messages import InvalidMessage, Message


class CodecTests(unittest.TestCase):
    def test_outbound_payload_carries_both_content_names(self):
        message = Message(id="m_1", sender_id="a", receiver_id="b", content="hey", created_at_ms=12)

        wire = message_to_wire(message)

        self.assertEqual(wire["text"], "hey")
        self.assertEqual(wire["message"], "hey")
        self.assertEqual(wire["created_at"], 12)
        self.assertNotIn("content", wire)

    def test_legacy_history_record_is_normalized(self):
        record = {
            "_id": "64f0c2",
            "senderId": "a",
            "receiverId": "b",
            "message": "old style",
            "createdAt": "2024-01-02T03:04:05.500Z",
        }

        message = message_from_wire(record)

        self.assertEqual(message.id, "64f0c2")
        self.assertEqual((message.sender_id, message.receiver_id), ("a", "b"))
        self.assertEqual(message.content, "old style")
        self.assertEqual(message.created_at_ms, 1704164645500)

    def test_text_wins_over_legacy_alias(self):
        message = message_from_wire(
            {"sender_id": "a", "receiver_id": "b", "text": "new", "message": "old", "created_at": 1}
        )
        self.assertEqual(message.content, "new")

    def test_missing_timestamp_requires_default(self):
        payload = {"sender_id": "a", "receiver_id": "b", "text": "x"}
        with self.assertRaises(InvalidMessage):
            message_from_wire(payload)
        self.assertEqual(message_from_wire(payload, default_created_at_ms=99).created_at_ms, 99)

    def test_rejects_non_object_and_bad_timestamp(self):
        with self.assertRaises(InvalidMessage):
            message_from_wire(["not", "a", "dict"])
        with self.assertRaises(InvalidMessage):
            message_from_wire({"sender_id": "a", "receiver_id": "b", "text": "x", "created_at": "yesterday"})

    def test_parse_timestamp_variants(self):
        self.assertIsNone(parse_timestamp_ms(None))
        self.assertIsNone(parse_timestamp_ms(True))
        self.assertEqual(parse_timestamp_ms(1500.9), 1500)
        self.assertEqual(parse_timestamp_ms("2500"), 2500)
        self.assertEqual(parse_timestamp_ms("1970-01-01T00:00:01"), 1000)

    def test_content_from_body(self):
        self.assertEqual(content_from_body({"content": "a"}), "a")
        self.assertEqual(content_from_body({"message": "b"}), "b")
        self.assertIsNone(content_from_body({"content": 5}))
        self.assertIsNone(content_from_body("plain"))

    def test_frames(self):
        online = online_set_frame({"b", "a"})
        self.assertEqual(online, {"v": 1, "t": "online-set-changed", "body": {"user_ids": ["a", "b"]}})

        message = Message(id="m_1", sender_id="a", receiver_id="b", content="x", created_at_ms=1)
        ack = send_ack_frame(False, message, request_id="r9")
        self.assertEqual(ack["id"], "r9")
        self.assertEqual(ack["body"]["success"], False)
        self.assertEqual(ack["body"]["message"]["id"], "m_1")

        error = error_frame("invalid_message", "content required")
        self.assertEqual(error["t"], "error")
        self.assertEqual(error["body"], {"code": "invalid_message", "message": "content required"})


if __name__ == "__main__":
    unittest.main()
