import unittest

from itemchat.body import (
    ELLIPSIS,
    MEDIA_PREVIEW,
    REPLY_TAG,
    PlainText,
    ReplyAnnotation,
    WithReply,
    build_reply,
    decode,
    decode_body,
    display_text,
    encode_body,
    encode_reply,
    quoted_preview,
    truncate_preview,
)
from itemchat.models import Message, PendingMessage


def _message(message_id=7, sender_id="bob", body="Yes, still available", attachment_url=None):
    return Message(
        id=message_id,
        item_id="item1",
        sender_id=sender_id,
        receiver_id="alice" if sender_id == "bob" else "bob",
        body=body,
        created_at_ms=1_000,
        attachment_url=attachment_url,
    )


class ReplyCodecTests(unittest.TestCase):
    def test_plain_text_passes_through(self):
        self.assertEqual(decode("hello"), (None, "hello"))
        self.assertEqual(decode_body("hello"), PlainText("hello"))
        self.assertEqual(encode_body(PlainText("hello")), "hello")

    def test_reply_round_trip_keeps_typed_text(self):
        raw = encode_reply(_message(), "Great, I'll take it", "alice", counterparty_label="Bob")

        self.assertTrue(raw.startswith(REPLY_TAG))
        annotation, text = decode(raw)
        self.assertEqual(text, "Great, I'll take it")
        self.assertEqual(
            annotation,
            ReplyAnnotation(
                original_message_id=7,
                original_sender_label="Bob",
                truncated_preview="Yes, still available",
                is_media=False,
            ),
        )
        self.assertEqual(display_text(raw), "Great, I'll take it")

    def test_label_is_you_for_own_message(self):
        raw = encode_reply(_message(sender_id="alice", body="mine"), "follow up", "alice", counterparty_label="Bob")
        annotation, _ = decode(raw)
        self.assertEqual(annotation.original_sender_label, "You")

    def test_label_falls_back_without_partner_name(self):
        annotation, _ = decode(encode_reply(_message(), "ok", "alice"))
        self.assertEqual(annotation.original_sender_label, "User")

    def test_preview_truncates_long_text(self):
        original = _message(body="x" * 100)
        annotation, _ = decode(encode_reply(original, "ok", "alice", preview_chars=60))
        self.assertEqual(annotation.truncated_preview, "x" * 60 + ELLIPSIS)
        self.assertEqual(truncate_preview("short", 60), "short")

    def test_reply_to_reply_quotes_typed_text_only(self):
        first = encode_reply(_message(), "inner reply", "alice", counterparty_label="Bob")
        nested = _message(message_id=8, sender_id="alice", body=first)

        annotation, text = decode(encode_reply(nested, "outer", "bob", counterparty_label="Alice"))

        self.assertEqual(annotation.truncated_preview, "inner reply")
        self.assertEqual(annotation.original_sender_label, "Alice")
        self.assertEqual(text, "outer")

    def test_media_original_sets_flag(self):
        original = _message(body="Sent an image", attachment_url="memory://blobs/a.png")
        annotation, _ = decode(encode_reply(original, "nice", "alice"))
        self.assertTrue(annotation.is_media)
        self.assertEqual(quoted_preview(annotation), MEDIA_PREVIEW)

        plain, _ = decode(encode_reply(_message(), "ok", "alice"))
        self.assertEqual(quoted_preview(plain), "Yes, still available")

    def test_pending_original_uses_temp_id(self):
        pending = PendingMessage(
            temp_id="local-5-1",
            item_id="item1",
            sender_id="alice",
            receiver_id="bob",
            body="draft",
            created_at_ms=5,
        )
        reply = build_reply(pending, "again", "alice")
        self.assertIsInstance(reply, WithReply)
        self.assertEqual(reply.annotation.original_message_id, "local-5-1")

    def test_delimiters_inside_text_survive(self):
        original = _message(body="price ::: negotiable")
        annotation, text = decode(encode_reply(original, "a ::: b", "alice"))
        self.assertEqual(annotation.truncated_preview, "price ::: negotiable")
        self.assertEqual(text, "a ::: b")

    def test_malformed_bodies_decode_unchanged(self):
        samples = [
            ":::REPLY",
            ":::REPLY{bad json",
            ':::REPLY{"id": 1, "name": "Bob", "text": "x", "isMedia": false}no terminator',
            ':::REPLY{"id": 1}:::missing fields',
            ':::REPLY[1, 2]:::not an object',
            ':::REPLY{"id": true, "name": "Bob", "text": "x"}:::bool id',
            ':::REPLY{"id": 1, "name": "Bob", "text": "x", "isMedia": "yes"}:::bad flag',
        ]
        for raw in samples:
            with self.subTest(raw=raw):
                self.assertEqual(decode(raw), (None, raw))

    def test_deeply_nested_annotation_decodes_unchanged(self):
        for depth in (5_000, 200_000):
            raw = REPLY_TAG + "[" * depth
            with self.subTest(depth=depth):
                self.assertEqual(decode(raw), (None, raw))
                self.assertEqual(display_text(raw), raw)

    def test_non_string_bodies_never_raise(self):
        self.assertEqual(decode(None), (None, ""))
        self.assertEqual(decode(42), (None, "42"))


if __name__ == "__main__":
    unittest.main()
