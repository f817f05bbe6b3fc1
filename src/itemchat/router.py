from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Hashable, Optional, Tuple

from .errors import SubscriptionError
from .feed import ChangeFilter, Subscription
from .models import ChangeEvent, ChangeOperation, ConversationKey

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], None]
AsyncHandler = Callable[[], Awaitable[None]]

INBOX = "inbox"
UNREAD = "unread"
CONVERSATION = "conversation"

DEDUP_WINDOW = 1000


class Debouncer:
    """Runs ``action`` once after ``delay_s`` of quiet following the last trigger."""

    def __init__(self, delay_s: float, action: AsyncHandler) -> None:
        self.delay_s = delay_s
        self._action = action
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self.fired = 0

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_s, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.fired += 1
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            await self._action()
        except Exception:
            logger.exception("debounced refresh failed")

    async def close(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)


class SeenWindow:
    """Remembers the most recent ``limit`` keys; older ones are forgotten."""

    def __init__(self, limit: int = DEDUP_WINDOW) -> None:
        self.limit = limit
        self._keys: OrderedDict[Hashable, None] = OrderedDict()

    def add(self, key: Hashable) -> bool:
        """Record ``key``; False when it is already in the window."""

        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = None
        while len(self._keys) > self.limit:
            self._keys.popitem(last=False)
        return True

    def clear(self) -> None:
        self._keys.clear()

    def __len__(self) -> int:
        return len(self._keys)


def _dedupe_key(event: ChangeEvent) -> Tuple[Any, ...]:
    row = event.row
    if event.operation is ChangeOperation.INSERT:
        return (ChangeOperation.INSERT, row.id)
    return (ChangeOperation.UPDATE, row.id, row.read, row.deleted_by_sender, row.deleted_by_receiver)


class RealtimeRouter:
    """Owns the realtime subscriptions of one session and routes their events.

    Three overlapping subscriptions deliver row changes at least once:

    * conversation: rows of the open conversation, applied immediately;
    * inbox: any row the user takes part in, coalesced into one debounced
      conversation-list refresh;
    * unread: rows addressed to the user, driving the badge; read-flag
      updates made elsewhere reach it too.

    Duplicates are dropped per stream by message id (inserts) or by id plus
    flags (updates); each stream remembers only its most recent
    :data:`DEDUP_WINDOW` keys. A dropped channel is resubscribed after a delay
    and the session is asked to resync from the store.
    """

    def __init__(
        self,
        transport: Any,
        user_id: str,
        *,
        debounce_s: float,
        resubscribe_delay_s: float,
        on_conversation_event: EventHandler,
        on_inbox_refresh: AsyncHandler,
        on_unread_event: EventHandler,
        on_resync: AsyncHandler,
    ) -> None:
        self._transport = transport
        self.user_id = user_id
        self._resubscribe_delay_s = resubscribe_delay_s
        self._on_conversation_event = on_conversation_event
        self._on_unread_event = on_unread_event
        self._on_resync = on_resync
        self._inbox_debounce = Debouncer(debounce_s, on_inbox_refresh)
        self._subscriptions: dict[str, Subscription] = {}
        self.active_key: Optional[ConversationKey] = None
        self._seen: dict[str, SeenWindow] = {CONVERSATION: SeenWindow(), UNREAD: SeenWindow()}
        self._resubscribe_tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def inbox_debounce(self) -> Debouncer:
        return self._inbox_debounce

    def subscribed(self, name: str) -> bool:
        subscription = self._subscriptions.get(name)
        return subscription is not None and not subscription.closed

    async def start(self) -> None:
        await self._subscribe(INBOX)
        await self._subscribe(UNREAD)

    async def watch_conversation(self, key: ConversationKey) -> None:
        """Switch the conversation subscription; the previous one is released first."""

        await self.unwatch_conversation()
        self.active_key = key
        self._seen[CONVERSATION].clear()
        await self._subscribe(CONVERSATION)

    async def unwatch_conversation(self) -> None:
        self.active_key = None
        subscription = self._subscriptions.pop(CONVERSATION, None)
        if subscription is not None:
            await subscription.close()

    async def close(self) -> None:
        self._closed = True
        for task in list(self._resubscribe_tasks):
            task.cancel()
        await asyncio.gather(*self._resubscribe_tasks, return_exceptions=True)
        await self._inbox_debounce.close()
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        self.active_key = None
        for subscription in subscriptions:
            await subscription.close()

    def _filter_for(self, name: str) -> ChangeFilter:
        if name == INBOX:
            return ChangeFilter(participant_id=self.user_id)
        if name == UNREAD:
            return ChangeFilter(receiver_id=self.user_id)
        if self.active_key is None:
            raise ValueError("no active conversation")
        return ChangeFilter(item_id=self.active_key.item_id, participant_id=self.user_id)

    def _callback_for(self, name: str) -> Callable[[ChangeEvent], None]:
        if name == INBOX:
            return self._handle_inbox
        if name == UNREAD:
            return self._handle_unread
        return self._handle_conversation

    async def _subscribe(self, name: str) -> None:
        change_filter = self._filter_for(name)

        def on_error(error: SubscriptionError, stream: str = name) -> None:
            self._handle_drop(stream, error)

        try:
            subscription = await self._transport.subscribe(change_filter, self._callback_for(name), on_error)
        except SubscriptionError as exc:
            self._handle_drop(name, exc)
            return
        self._subscriptions[name] = subscription

    def _handle_conversation(self, event: ChangeEvent) -> None:
        key = self.active_key
        if key is None:
            return
        row = event.row
        if {row.sender_id, row.receiver_id} != {self.user_id, key.counterparty_id}:
            return
        if not self._seen[CONVERSATION].add(_dedupe_key(event)):
            return
        self._dispatch(self._on_conversation_event, event)

    def _handle_inbox(self, _event: ChangeEvent) -> None:
        self._inbox_debounce.trigger()

    def _handle_unread(self, event: ChangeEvent) -> None:
        if not self._seen[UNREAD].add(_dedupe_key(event)):
            return
        self._dispatch(self._on_unread_event, event)

    @staticmethod
    def _dispatch(handler: EventHandler, event: ChangeEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception("realtime handler failed for message %s", event.row.id)

    def _handle_drop(self, name: str, error: SubscriptionError) -> None:
        logger.warning("%s subscription dropped: %s", name, error)
        self._subscriptions.pop(name, None)
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._resubscribe(name))
        self._resubscribe_tasks.add(task)
        task.add_done_callback(self._resubscribe_tasks.discard)

    async def _resubscribe(self, name: str) -> None:
        await asyncio.sleep(self._resubscribe_delay_s)
        if self._closed or self.subscribed(name):
            return
        if name == CONVERSATION and self.active_key is None:
            return
        await self._subscribe(name)
        if self.subscribed(name):
            logger.info("%s subscription restored", name)
            try:
                await self._on_resync()
            except Exception:
                logger.exception("resync after %s resubscribe failed", name)
