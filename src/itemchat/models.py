from __future__ import annotations

import enum
import itertools
import time
from dataclasses import dataclass, field, replace
from typing import Optional, Union


def _now_ms() -> int:
    return int(time.time() * 1000)


class DeleteDirection(str, enum.Enum):
    """Which participant flag a soft delete sets."""

    SENDER = "sender"
    RECEIVER = "receiver"


class ChangeOperation(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class ConversationKey:
    """A conversation as seen by one user: listing plus the other participant."""

    item_id: str
    counterparty_id: str

    def marker_name(self) -> str:
        return f"{self.item_id}-{self.counterparty_id}"


@dataclass(frozen=True)
class Message:
    """An authoritative message row.

    Core fields never change after insert. ``read`` and the two deletion flags
    only move from ``False`` to ``True`` and are replaced through
    :func:`dataclasses.replace` by the store.
    """

    id: int
    item_id: str
    sender_id: str
    receiver_id: str
    body: str
    created_at_ms: int
    attachment_url: Optional[str] = None
    read: bool = False
    deleted_by_sender: bool = False
    deleted_by_receiver: bool = False

    def involves(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.receiver_id)

    def is_visible_to(self, user_id: str) -> bool:
        return (user_id == self.sender_id and not self.deleted_by_sender) or (
            user_id == self.receiver_id and not self.deleted_by_receiver
        )

    def counterparty(self, user_id: str) -> str:
        return self.receiver_id if user_id == self.sender_id else self.sender_id

    def conversation_key(self, user_id: str) -> ConversationKey:
        return ConversationKey(item_id=self.item_id, counterparty_id=self.counterparty(user_id))

    def is_unread_for(self, user_id: str) -> bool:
        return self.receiver_id == user_id and not self.read and self.is_visible_to(user_id)

    def with_flags(
        self,
        *,
        read: bool | None = None,
        deleted_by_sender: bool | None = None,
        deleted_by_receiver: bool | None = None,
    ) -> "Message":
        # Flags are monotonic: a False argument never clears a set flag.
        return replace(
            self,
            read=self.read or bool(read),
            deleted_by_sender=self.deleted_by_sender or bool(deleted_by_sender),
            deleted_by_receiver=self.deleted_by_receiver or bool(deleted_by_receiver),
        )

    def order_key(self) -> tuple:
        return (self.created_at_ms, 0, self.id)


_pending_counter = itertools.count(1)


def new_pending_id(now_ms: int) -> str:
    """Return a client-local id; never collides with integer server ids."""

    return f"local-{now_ms}-{next(_pending_counter)}"


@dataclass
class PendingMessage:
    """An outgoing message that the store has not confirmed yet."""

    temp_id: str
    item_id: str
    sender_id: str
    receiver_id: str
    body: str
    created_at_ms: int
    attachment_url: Optional[str] = None

    def matches(self, message: Message) -> bool:
        return message.sender_id == self.sender_id and message.body == self.body

    def order_key(self) -> tuple:
        return (self.created_at_ms, 1, self.temp_id)


TimelineEntry = Union[Message, PendingMessage]


def entry_id(entry: TimelineEntry) -> Union[int, str]:
    if isinstance(entry, PendingMessage):
        return entry.temp_id
    return entry.id


@dataclass(frozen=True)
class ChangeEvent:
    """A row-change notification delivered by a realtime transport."""

    operation: ChangeOperation
    row: Message
    emitted_at_ms: int = field(default_factory=_now_ms, compare=False)
