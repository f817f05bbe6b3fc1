from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import SendTimeoutError, WriteError
from .models import ConversationKey, Message, PendingMessage, _now_ms, new_pending_id

logger = logging.getLogger(__name__)


class SendState(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Composer:
    """Compose input and active reply target for the open conversation."""

    text: str = ""
    reply_target: Optional[Union[Message, PendingMessage]] = None

    def typed(self, text: str | None = None) -> str:
        """The text a send would carry: ``text`` if given, else the input, stripped."""

        return (self.text if text is None else text).strip()

    def ready(self, text: str | None = None) -> bool:
        return bool(self.typed(text))

    def clear(self) -> None:
        self.text = ""
        self.reply_target = None


@dataclass(eq=False)
class OutgoingSend:
    pending: PendingMessage
    key: ConversationKey
    state: SendState = SendState.PENDING
    confirmed: Optional[Message] = None
    error: Optional[WriteError] = None
    _settled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def temp_id(self) -> str:
        return self.pending.temp_id

    @property
    def settled(self) -> bool:
        return self.state in (SendState.CONFIRMED, SendState.ROLLED_BACK)

    async def wait(self) -> SendState:
        await self._settled.wait()
        return self.state


ConfirmedHook = Callable[[OutgoingSend, Message], None]
RolledBackHook = Callable[[OutgoingSend], None]


class SendReconciler:
    """Drives outgoing messages from pending to confirmed or rolled back.

    ``submit`` returns immediately; the store round trip runs as a task bounded
    by ``timeout_s``. Confirmation comes from whichever arrives first: the
    store's insert response or a matching realtime row.
    """

    def __init__(
        self,
        store: Any,
        *,
        timeout_s: float,
        on_confirmed: ConfirmedHook,
        on_rolled_back: RolledBackHook,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._timeout_s = timeout_s
        self._on_confirmed = on_confirmed
        self._on_rolled_back = on_rolled_back
        self._now = now_func
        self._sends: Dict[str, OutgoingSend] = {}
        self._tasks: set[asyncio.Task] = set()

    def build_pending(
        self,
        *,
        key: ConversationKey,
        sender_id: str,
        body: str,
        attachment_url: str | None = None,
    ) -> PendingMessage:
        now_ms = self._now()
        return PendingMessage(
            temp_id=new_pending_id(now_ms),
            item_id=key.item_id,
            sender_id=sender_id,
            receiver_id=key.counterparty_id,
            body=body,
            created_at_ms=now_ms,
            attachment_url=attachment_url,
        )

    def submit(self, pending: PendingMessage, key: ConversationKey) -> OutgoingSend:
        send = OutgoingSend(pending=pending, key=key)
        self._sends[send.temp_id] = send
        task = asyncio.create_task(self._deliver(send))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return send

    def in_flight(self) -> List[OutgoingSend]:
        return [send for send in self._sends.values() if send.state is SendState.PENDING]

    def get(self, temp_id: str) -> Optional[OutgoingSend]:
        return self._sends.get(temp_id)

    def match_incoming(self, message: Message) -> Optional[OutgoingSend]:
        """First pending send with the same sender and body, in submit order."""

        for send in self._sends.values():
            if send.state is SendState.PENDING and send.pending.matches(message):
                if send.pending.item_id == message.item_id and send.pending.receiver_id == message.receiver_id:
                    return send
        return None

    def confirm(self, send: OutgoingSend, message: Message) -> bool:
        if send.state is not SendState.PENDING:
            return False
        send.state = SendState.CONFIRMED
        send.confirmed = message
        self._sends.pop(send.temp_id, None)
        send._settled.set()
        self._on_confirmed(send, message)
        return True

    def rollback(self, send: OutgoingSend, error: WriteError) -> bool:
        if send.state is not SendState.PENDING:
            return False
        send.state = SendState.ROLLED_BACK
        send.error = error
        self._sends.pop(send.temp_id, None)
        send._settled.set()
        self._on_rolled_back(send)
        return True

    async def _deliver(self, send: OutgoingSend) -> None:
        pending = send.pending
        try:
            message = await asyncio.wait_for(
                self._store.append(
                    item_id=pending.item_id,
                    sender_id=pending.sender_id,
                    receiver_id=pending.receiver_id,
                    body=pending.body,
                    attachment_url=pending.attachment_url,
                ),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("send %s timed out after %ss", send.temp_id, self._timeout_s)
            self.rollback(send, SendTimeoutError(self._timeout_s))
            return
        except WriteError as exc:
            logger.warning("send %s rejected: %s", send.temp_id, exc)
            self.rollback(send, exc)
            return
        except asyncio.CancelledError:
            self.rollback(send, WriteError("append", "cancelled"))
            raise
        except Exception as exc:
            logger.exception("send %s failed", send.temp_id)
            self.rollback(send, WriteError("append", str(exc)))
            return

        if not self.confirm(send, message):
            # A realtime row already settled this send; the timeline still needs
            # this exact row in case the match went to a different pending entry.
            self._on_confirmed(send, message)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
