import unittest

from itemchat.models import ConversationKey, Message, PendingMessage
from itemchat.timeline import MessageTimeline


def _row(message_id, sender_id="a", body="hi", created_at_ms=100, **flags):
    return Message(
        id=message_id,
        item_id="bike",
        sender_id=sender_id,
        receiver_id="b" if sender_id == "a" else "a",
        body=body,
        created_at_ms=created_at_ms,
        **flags,
    )


def _pending(temp_id, body="hi", created_at_ms=100):
    return PendingMessage(
        temp_id=temp_id,
        item_id="bike",
        sender_id="a",
        receiver_id="b",
        body=body,
        created_at_ms=created_at_ms,
    )


class MessageTimelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.timeline = MessageTimeline("a", ConversationKey("bike", "b"))

    def test_confirmation_replaces_pending_entry(self):
        self.timeline.add_pending(_pending("local-1"))

        result = self.timeline.apply_confirmed(_row(5), "local-1")

        self.assertTrue(result.changed)
        self.assertEqual(result.replaced_temp_id, "local-1")
        self.assertEqual(self.timeline.ids(), [5])

    def test_same_insert_twice_is_idempotent(self):
        row = _row(5, sender_id="b")
        self.assertTrue(self.timeline.apply_confirmed(row).changed)
        self.assertFalse(self.timeline.apply_confirmed(row).changed)
        self.assertEqual(self.timeline.ids(), [5])

    def test_own_row_claims_first_matching_pending(self):
        self.timeline.add_pending(_pending("local-1", body="ok"))
        self.timeline.add_pending(_pending("local-2", body="ok"))

        result = self.timeline.apply_confirmed(_row(9, body="ok"))

        self.assertEqual(result.replaced_temp_id, "local-1")
        self.assertEqual([p.temp_id for p in self.timeline.pending()], ["local-2"])

    def test_inbound_row_never_claims_pending(self):
        self.timeline.add_pending(_pending("local-1", body="ok"))
        result = self.timeline.apply_confirmed(_row(9, sender_id="b", body="ok"))
        self.assertIsNone(result.replaced_temp_id)
        self.assertEqual(len(self.timeline), 2)

    def test_duplicate_row_drops_leftover_pending(self):
        self.timeline.apply_confirmed(_row(5))
        self.timeline.add_pending(_pending("local-1"))

        result = self.timeline.apply_confirmed(_row(5), "local-1")

        self.assertEqual(result.replaced_temp_id, "local-1")
        self.assertEqual(self.timeline.ids(), [5])

    def test_entries_sorted_by_time_then_id(self):
        self.timeline.apply_confirmed(_row(3, sender_id="b", created_at_ms=300))
        self.timeline.apply_confirmed(_row(2, sender_id="b", created_at_ms=100))
        self.timeline.add_pending(_pending("local-1", body="new", created_at_ms=100))
        self.timeline.apply_confirmed(_row(1, sender_id="b", created_at_ms=100))

        self.assertEqual(self.timeline.ids(), [1, 2, "local-1", 3])

    def test_foreign_and_hidden_rows_are_ignored(self):
        foreign = Message(id=1, item_id="lamp", sender_id="b", receiver_id="a", body="x", created_at_ms=1)
        hidden = _row(2, sender_id="b", deleted_by_receiver=True)

        self.assertFalse(self.timeline.apply_confirmed(foreign).changed)
        self.assertFalse(self.timeline.apply_confirmed(hidden).changed)
        self.assertEqual(len(self.timeline), 0)

    def test_update_refreshes_flags_and_drops_hidden(self):
        self.timeline.apply_confirmed(_row(1))
        self.timeline.apply_confirmed(_row(2))

        self.assertTrue(self.timeline.apply_update(_row(1, read=True)))
        self.assertTrue(self.timeline.find(1).read)
        self.assertFalse(self.timeline.apply_update(_row(1, read=True)))

        self.assertTrue(self.timeline.apply_update(_row(2, deleted_by_receiver=True)))
        self.assertIsNotNone(self.timeline.find(2))
        self.assertTrue(self.timeline.apply_update(_row(2, deleted_by_sender=True)))
        self.assertIsNone(self.timeline.find(2))

        self.assertFalse(self.timeline.apply_update(_row(99)))

    def test_merge_keeps_flag_union_and_reports_claims(self):
        self.timeline.apply_confirmed(_row(1, sender_id="b", read=True))
        self.timeline.add_pending(_pending("local-1", body="later", created_at_ms=200))

        claimed = self.timeline.merge([
            _row(1, sender_id="b"),
            _row(2, body="later", created_at_ms=200),
        ])

        self.assertEqual(claimed, [("local-1", _row(2, body="later", created_at_ms=200))])
        self.assertTrue(self.timeline.find(1).read)
        self.assertEqual(self.timeline.ids(), [1, 2])

    def test_restore_and_mark_read_locally(self):
        row = _row(4, sender_id="b")
        self.timeline.apply_confirmed(row)
        self.assertTrue(self.timeline.remove(4))
        self.assertTrue(self.timeline.restore(row))
        self.assertFalse(self.timeline.restore(row))

        self.timeline.mark_read_locally([4])
        self.assertTrue(self.timeline.find(4).read)


if __name__ == "__main__":
    unittest.main()
