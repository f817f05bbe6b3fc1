import random
import unittest

from itemchat.aggregator import (
    aggregate_conversations,
    is_suppressed,
    total_unread,
    with_unread_cleared,
    without_conversation,
)
from itemchat.body import encode_reply
from itemchat.directory import Directory
from itemchat.models import ConversationKey, Message


def _msg(message_id, item_id, sender_id, receiver_id, created_at_ms, body=None, **flags):
    return Message(
        id=message_id,
        item_id=item_id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        body=body if body is not None else f"m{message_id}",
        created_at_ms=created_at_ms,
        **flags,
    )


class AggregatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.messages = [
            _msg(1, "bike", "b", "a", 100),
            _msg(2, "bike", "a", "b", 110),
            _msg(3, "bike", "b", "a", 120),
            _msg(4, "lamp", "c", "a", 105, read=True),
            _msg(5, "lamp", "a", "c", 130),
            _msg(6, "bike", "c", "a", 90),
            _msg(7, "desk", "b", "c", 200),
        ]

    def test_groups_by_item_and_counterparty(self):
        summaries = aggregate_conversations(self.messages, "a")

        keys = [s.key for s in summaries]
        self.assertEqual(
            keys,
            [
                ConversationKey("lamp", "c"),
                ConversationKey("bike", "b"),
                ConversationKey("bike", "c"),
            ],
        )
        by_key = {s.key: s for s in summaries}
        self.assertEqual(by_key[ConversationKey("bike", "b")].last_message_id, 3)
        self.assertEqual(by_key[ConversationKey("bike", "b")].unread_count, 2)
        self.assertEqual(by_key[ConversationKey("lamp", "c")].unread_count, 0)
        self.assertEqual(by_key[ConversationKey("bike", "c")].unread_count, 1)
        self.assertEqual(total_unread(summaries), 3)

    def test_order_independent(self):
        expected = aggregate_conversations(self.messages, "a")
        rng = random.Random(7)
        for _ in range(20):
            shuffled = list(self.messages)
            rng.shuffle(shuffled)
            self.assertEqual(aggregate_conversations(shuffled, "a"), expected)

    def test_ties_on_timestamp_break_by_id(self):
        messages = [_msg(10, "bike", "b", "a", 100), _msg(11, "bike", "a", "b", 100)]
        for ordering in (messages, list(reversed(messages))):
            summary = aggregate_conversations(ordering, "a")[0]
            self.assertEqual(summary.last_message_id, 11)

    def test_hidden_rows_do_not_count(self):
        messages = [
            _msg(1, "bike", "b", "a", 100, deleted_by_receiver=True),
            _msg(2, "bike", "a", "b", 110, deleted_by_sender=True),
        ]
        self.assertEqual(aggregate_conversations(messages, "a"), [])
        for_b = aggregate_conversations(messages, "b")
        self.assertEqual(len(for_b), 1)
        self.assertEqual(for_b[0].last_message_id, 2)
        self.assertEqual(for_b[0].unread_count, 1)

    def test_suppression_marker_hides_older_rows(self):
        key = ConversationKey("bike", "b")
        markers = {key: 115}

        self.assertTrue(is_suppressed(self.messages[0], "a", markers))
        self.assertFalse(is_suppressed(self.messages[2], "a", markers))
        summaries = {s.key: s for s in aggregate_conversations(self.messages, "a", markers=markers)}
        self.assertEqual(summaries[key].last_message_id, 3)
        self.assertEqual(summaries[key].unread_count, 1)

        summaries = aggregate_conversations(self.messages, "a", markers={key: 500})
        self.assertNotIn(key, [s.key for s in summaries])

    def test_names_items_and_previews(self):
        directory = Directory()
        directory.add_user("b", "Bob")
        directory.add_item("bike", "Road bike", "http://img/bike.png")
        original = self.messages[1]
        reply = _msg(8, "bike", "b", "a", 300, body=encode_reply(original, "sure", "b", counterparty_label="Ann"))

        summaries = aggregate_conversations(self.messages + [reply], "a", directory=directory)
        by_key = {s.key: s for s in summaries}

        bike = by_key[ConversationKey("bike", "b")]
        self.assertEqual(bike.partner_name, "Bob")
        self.assertEqual(bike.item_title, "Road bike")
        self.assertEqual(bike.item_thumbnail, "http://img/bike.png")
        self.assertEqual(bike.last_message, "sure")
        self.assertEqual(by_key[ConversationKey("lamp", "c")].partner_name, "User")
        self.assertIsNone(by_key[ConversationKey("lamp", "c")].item_title)

    def test_optimistic_helpers(self):
        summaries = aggregate_conversations(self.messages, "a")
        key = ConversationKey("bike", "b")

        cleared = with_unread_cleared(summaries, key)
        self.assertEqual(total_unread(cleared), 1)
        removed = without_conversation(summaries, key)
        self.assertEqual(len(removed), 2)
        self.assertEqual(len(summaries), 3)


if __name__ == "__main__":
    unittest.main()
