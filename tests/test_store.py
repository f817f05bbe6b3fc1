import itertools
import unittest

from itemchat.errors import WriteError
from itemchat.feed import ChangeFeed, ChangeFilter
from itemchat.models import ChangeOperation, DeleteDirection, Message
from itemchat.store import DeleteScope, InMemoryMessageStore, MessageFilter
from tests.sync_util import FakeClock


class VisibilityTests(unittest.TestCase):
    def test_visibility_depends_only_on_own_flag(self):
        for read, by_sender, by_receiver in itertools.product([False, True], repeat=3):
            message = Message(
                id=1,
                item_id="i",
                sender_id="a",
                receiver_id="b",
                body="x",
                created_at_ms=1,
                read=read,
                deleted_by_sender=by_sender,
                deleted_by_receiver=by_receiver,
            )
            with self.subTest(read=read, by_sender=by_sender, by_receiver=by_receiver):
                self.assertEqual(message.is_visible_to("a"), not by_sender)
                self.assertEqual(message.is_visible_to("b"), not by_receiver)
                self.assertFalse(message.is_visible_to("c"))

    def test_flags_never_clear(self):
        message = Message(id=1, item_id="i", sender_id="a", receiver_id="b", body="x", created_at_ms=1, read=True)
        self.assertTrue(message.with_flags(read=False).read)
        self.assertTrue(message.with_flags(deleted_by_sender=True).deleted_by_sender)


class InMemoryMessageStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.feed = ChangeFeed()
        self.events = []
        await self.feed.subscribe(ChangeFilter(), self.events.append)
        self.store = InMemoryMessageStore(self.feed, now_func=FakeClock())

    async def test_append_assigns_ids_and_emits_insert(self):
        first = await self.store.append(item_id="i1", sender_id="a", receiver_id="b", body="hi")
        second = await self.store.append(item_id="i1", sender_id="b", receiver_id="a", body="hey")

        self.assertLess(first.id, second.id)
        self.assertLess(first.created_at_ms, second.created_at_ms)
        self.assertFalse(first.read)
        self.assertEqual([e.operation for e in self.events], [ChangeOperation.INSERT, ChangeOperation.INSERT])
        self.assertEqual(self.events[0].row, first)

    async def test_append_rejects_self_messages_and_missing_fields(self):
        with self.assertRaises(WriteError) as ctx:
            await self.store.append(item_id="i1", sender_id="a", receiver_id="a", body="me")
        self.assertEqual(ctx.exception.operation, "append")
        with self.assertRaises(WriteError):
            await self.store.append(item_id="", sender_id="a", receiver_id="b", body="x")
        self.assertEqual(self.events, [])

    async def test_policy_can_veto_append(self):
        store = InMemoryMessageStore(policy=lambda operation, actor, _row: actor != "blocked")
        with self.assertRaises(WriteError):
            await store.append(item_id="i1", sender_id="blocked", receiver_id="b", body="x")
        message = await store.append(item_id="i1", sender_id="a", receiver_id="b", body="x")
        self.assertEqual(message.id, 1)

    async def test_mark_read_only_applies_to_receiver(self):
        inbound = await self.store.append(item_id="i1", sender_id="a", receiver_id="b", body="1")
        outbound = await self.store.append(item_id="i1", sender_id="b", receiver_id="a", body="2")
        self.events.clear()

        with self.assertRaises(WriteError) as ctx:
            await self.store.mark_read([inbound.id, outbound.id], actor_id="b")

        self.assertEqual(ctx.exception.failed_ids, (outbound.id,))
        self.assertTrue(self.store.get(inbound.id).read)
        self.assertFalse(self.store.get(outbound.id).read)
        self.assertEqual([(e.operation, e.row.id) for e in self.events], [(ChangeOperation.UPDATE, inbound.id)])

    async def test_mark_read_is_idempotent(self):
        message = await self.store.append(item_id="i1", sender_id="a", receiver_id="b", body="1")
        self.assertEqual(await self.store.mark_read([message.id], actor_id="b"), [message.id])
        self.assertEqual(await self.store.mark_read([message.id, 999], actor_id="b"), [])

    async def test_soft_delete_touches_one_direction(self):
        a_to_b = await self.store.append(item_id="i1", sender_id="a", receiver_id="b", body="1")
        b_to_a = await self.store.append(item_id="i1", sender_id="b", receiver_id="a", body="2")
        other_item = await self.store.append(item_id="i2", sender_id="a", receiver_id="b", body="3")

        changed = await self.store.soft_delete(DeleteDirection.SENDER, DeleteScope("i1", "a", "b"))

        self.assertEqual(changed, [a_to_b.id])
        self.assertTrue(self.store.get(a_to_b.id).deleted_by_sender)
        self.assertFalse(self.store.get(b_to_a.id).deleted_by_receiver)
        self.assertFalse(self.store.get(other_item.id).deleted_by_sender)
        self.assertFalse(self.store.get(a_to_b.id).is_visible_to("a"))
        self.assertTrue(self.store.get(a_to_b.id).is_visible_to("b"))

        changed = await self.store.soft_delete(DeleteDirection.RECEIVER, DeleteScope("i1", "a", "b"))
        self.assertEqual(changed, [b_to_a.id])
        again = await self.store.soft_delete(DeleteDirection.RECEIVER, DeleteScope("i1", "a", "b"))
        self.assertEqual(again, [])

    async def test_soft_delete_message_sets_actor_flag(self):
        message = await self.store.append(item_id="i1", sender_id="a", receiver_id="b", body="1")

        self.assertTrue(await self.store.soft_delete_message(message.id, actor_id="b"))
        self.assertFalse(await self.store.soft_delete_message(message.id, actor_id="b"))
        self.assertTrue(self.store.get(message.id).deleted_by_receiver)
        self.assertFalse(self.store.get(message.id).deleted_by_sender)
        with self.assertRaises(WriteError):
            await self.store.soft_delete_message(message.id, actor_id="c")
        self.assertFalse(await self.store.soft_delete_message(404, actor_id="a"))

    async def test_query_filters_and_orders(self):
        m1 = await self.store.append(item_id="i1", sender_id="a", receiver_id="b", body="1")
        m2 = await self.store.append(item_id="i1", sender_id="b", receiver_id="a", body="2")
        m3 = await self.store.append(item_id="i1", sender_id="a", receiver_id="c", body="3")
        m4 = await self.store.append(item_id="i2", sender_id="c", receiver_id="a", body="4")

        conversation = await self.store.query(MessageFilter.for_conversation("i1", "a", "b"))
        self.assertEqual([m.id for m in conversation], [m1.id, m2.id])

        newest = await self.store.query(MessageFilter.for_user("a"))
        self.assertEqual([m.id for m in newest], [m4.id, m3.id, m2.id, m1.id])

        limited = await self.store.query(MessageFilter(involving="a", limit=2))
        self.assertEqual([m.id for m in limited], [m1.id, m2.id])

        unread = await self.store.query(MessageFilter(receiver_id="a", unread_only=True))
        self.assertEqual([m.id for m in unread], [m2.id, m4.id])

    async def test_count_unread_ignores_hidden_rows(self):
        m1 = await self.store.append(item_id="i1", sender_id="a", receiver_id="b", body="1")
        await self.store.append(item_id="i1", sender_id="a", receiver_id="b", body="2")
        self.assertEqual(await self.store.count_unread("b"), 2)

        await self.store.soft_delete_message(m1.id, actor_id="b")
        self.assertEqual(await self.store.count_unread("b"), 1)
        self.assertEqual(await self.store.count_unread("a"), 0)


if __name__ == "__main__":
    unittest.main()
