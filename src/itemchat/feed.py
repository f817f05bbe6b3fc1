from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Optional

from .errors import SubscriptionError
from .models import ChangeEvent, ChangeOperation

logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], None]
ErrorCallback = Callable[[SubscriptionError], None]

ALL_OPERATIONS: FrozenSet[ChangeOperation] = frozenset(ChangeOperation)


@dataclass(frozen=True)
class ChangeFilter:
    """Predicate over message rows, evaluated against the row after the change.

    ``participant_id`` matches rows where the user is either sender or
    receiver; every other field narrows the match further.
    """

    item_id: Optional[str] = None
    sender_id: Optional[str] = None
    receiver_id: Optional[str] = None
    participant_id: Optional[str] = None
    unread_only: bool = False
    operations: FrozenSet[ChangeOperation] = ALL_OPERATIONS

    def matches(self, event: ChangeEvent) -> bool:
        row = event.row
        if event.operation not in self.operations:
            return False
        if self.item_id is not None and row.item_id != self.item_id:
            return False
        if self.sender_id is not None and row.sender_id != self.sender_id:
            return False
        if self.receiver_id is not None and row.receiver_id != self.receiver_id:
            return False
        if self.participant_id is not None and not row.involves(self.participant_id):
            return False
        if self.unread_only and row.read:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "participant_id": self.participant_id,
            "unread_only": self.unread_only,
            "operations": sorted(op.value for op in self.operations),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeFilter":
        operations = data.get("operations")
        ops = ALL_OPERATIONS if operations is None else frozenset(ChangeOperation(op) for op in operations)

        def _opt(name: str) -> Optional[str]:
            value = data.get(name)
            if value is None:
                return None
            if not isinstance(value, str):
                raise ValueError(f"{name} must be a string")
            return value

        return cls(
            item_id=_opt("item_id"),
            sender_id=_opt("sender_id"),
            receiver_id=_opt("receiver_id"),
            participant_id=_opt("participant_id"),
            unread_only=bool(data.get("unread_only", False)),
            operations=ops,
        )


@dataclass(eq=False)
class Subscription:
    """An owned handle on one realtime subscription.

    Closing is idempotent. Use ``async with`` for scoped acquisition.
    """

    change_filter: ChangeFilter
    callback: Callback
    on_error: Optional[ErrorCallback] = None
    sub_id: str = field(default_factory=lambda: f"sub_{secrets.token_urlsafe(8)}")
    transport: Any = field(default=None, repr=False)
    closed: bool = False

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        self.callback(event)

    def fail(self, error: SubscriptionError) -> None:
        if self.closed:
            return
        self.closed = True
        if self.on_error is not None:
            self.on_error(error)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.transport is not None:
            await self.transport.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class ChangeFeed:
    """In-process realtime transport: registers filtered subscriptions and
    broadcasts row changes published by a message store."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Subscription] = {}

    async def subscribe(
        self,
        change_filter: ChangeFilter,
        callback: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(
            change_filter=change_filter,
            callback=callback,
            on_error=on_error,
            transport=self,
        )
        self._subscriptions[subscription.sub_id] = subscription
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        self._subscriptions.pop(subscription.sub_id, None)

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.change_filter.matches(event):
                continue
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("subscriber %s failed on message %s", subscription.sub_id, event.row.id)

    def drop(self, reason: str = "channel dropped") -> None:
        """Fail every live subscription, as a transport disconnect would."""

        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.fail(SubscriptionError(reason))

    def subscription_count(self) -> int:
        return len(self._subscriptions)
