from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from .bus import BusEvent, BusMessage, NotificationBus
from .errors import WriteError
from .models import Message

logger = logging.getLogger(__name__)


@dataclass
class ReadResult:
    requested: List[int] = field(default_factory=list)
    marked: List[int] = field(default_factory=list)
    error: Optional[WriteError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def unread_for(messages: Iterable[Message], user_id: str) -> List[int]:
    return [m.id for m in messages if m.receiver_id == user_id and not m.read and m.is_visible_to(user_id)]


class UnreadTracker:
    """Marks inbound messages read and announces it on the bus."""

    def __init__(self, store: Any, user_id: str, bus: NotificationBus) -> None:
        self._store = store
        self.user_id = user_id
        self._bus = bus

    async def mark_conversation_read(self, messages: Iterable[Message]) -> ReadResult:
        """Issue one batched read-mark for the unread subset of ``messages``.

        Failure is reported in the result and nothing is broadcast, so observers
        keep the store's true counts.
        """

        result = ReadResult(requested=unread_for(messages, self.user_id))
        if not result.requested:
            return result
        try:
            result.marked = await self._store.mark_read(result.requested, actor_id=self.user_id)
        except WriteError as exc:
            logger.warning("mark_read failed for %d message(s): %s", len(exc.failed_ids) or len(result.requested), exc)
            result.error = exc
            return result
        self._bus.publish(BusEvent.MESSAGES_READ)
        return result

    async def mark_one_read(self, message: Message) -> bool:
        """Background read-mark for a row that arrived on the open conversation."""

        if message.receiver_id != self.user_id or message.read:
            return False
        try:
            await self._store.mark_read([message.id], actor_id=self.user_id)
        except WriteError as exc:
            logger.warning("background mark_read for %s failed: %s", message.id, exc)
            return False
        self._bus.publish(BusEvent.MESSAGES_READ)
        return True


BadgeListener = Callable[[int], None]


class UnreadBadge:
    """Global unread count for the user, recomputed from the store.

    Refreshes are requested by the unread-scoped subscription and by every
    ``MESSAGES_READ`` bus event; overlapping requests collapse into one
    follow-up recomputation.
    """

    def __init__(self, store: Any, user_id: str, bus: NotificationBus) -> None:
        self._store = store
        self.user_id = user_id
        self.count = 0
        self._listeners: List[BadgeListener] = []
        self._task: Optional[asyncio.Task] = None
        self._dirty = False
        self._bus_subscription = bus.subscribe(BusEvent.MESSAGES_READ, self._on_bus)

    def add_listener(self, listener: BadgeListener) -> None:
        self._listeners.append(listener)

    async def refresh(self) -> int:
        try:
            count = await self._store.count_unread(self.user_id)
        except Exception:
            logger.exception("unread badge refresh failed")
            return self.count
        if count != self.count:
            self.count = count
            for listener in list(self._listeners):
                listener(count)
        return count

    def request_refresh(self) -> None:
        if self._task is not None and not self._task.done():
            self._dirty = True
            return
        self._task = asyncio.create_task(self._run())

    async def settle(self) -> int:
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)
        return self.count

    async def _run(self) -> None:
        while True:
            self._dirty = False
            await self.refresh()
            if not self._dirty:
                return

    def _on_bus(self, _message: BusMessage) -> None:
        self.request_refresh()

    async def close(self) -> None:
        self._bus_subscription.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
