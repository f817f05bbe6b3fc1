from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class BusEvent(str, enum.Enum):
    """Cross-component signals published inside one client process."""

    MESSAGES_READ = "messages-read"
    MESSAGE_RECEIVED = "message-received"
    SEND_FAILED = "send-failed"


@dataclass(frozen=True)
class BusMessage:
    kind: BusEvent
    payload: Optional[Dict[str, Any]] = None


Listener = Callable[[BusMessage], None]


@dataclass(eq=False)
class BusSubscription:
    kind: BusEvent
    listener: Listener
    bus: "NotificationBus"

    def close(self) -> None:
        self.bus.unsubscribe(self)

    def __enter__(self) -> "BusSubscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class NotificationBus:
    """Publish/subscribe channel keyed by :class:`BusEvent`.

    Listener failures are logged and do not stop delivery to other listeners.
    """

    def __init__(self) -> None:
        self._listeners: Dict[BusEvent, List[BusSubscription]] = {}

    def subscribe(self, kind: BusEvent, listener: Listener) -> BusSubscription:
        subscription = BusSubscription(kind=kind, listener=listener, bus=self)
        self._listeners.setdefault(kind, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: BusSubscription) -> None:
        subs = self._listeners.get(subscription.kind)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._listeners.pop(subscription.kind, None)

    def publish(self, kind: BusEvent, payload: Optional[Dict[str, Any]] = None) -> None:
        message = BusMessage(kind=kind, payload=payload)
        for subscription in list(self._listeners.get(kind, [])):
            try:
                subscription.listener(message)
            except Exception:
                logger.exception("bus listener failed for %s", kind.value)

    def listener_count(self, kind: BusEvent) -> int:
        return len(self._listeners.get(kind, []))
