from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

from .models import ConversationKey, Message, PendingMessage, TimelineEntry, entry_id


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of folding one confirmed row into a timeline."""

    changed: bool
    replaced_temp_id: Optional[str] = None


class MessageTimeline:
    """Messages of the open conversation, confirmed and pending.

    Confirmed rows are unique by id. A pending entry is swapped for its
    confirmed row in place; :meth:`entries` always returns display order
    ``(created_at, id)`` with pending entries after confirmed ones at the same
    timestamp.
    """

    def __init__(self, user_id: str, key: ConversationKey) -> None:
        self.user_id = user_id
        self.key = key
        self._entries: List[TimelineEntry] = []

    def belongs(self, message: Message | PendingMessage) -> bool:
        if message.item_id != self.key.item_id:
            return False
        return {message.sender_id, message.receiver_id} == {self.user_id, self.key.counterparty_id}

    def entries(self) -> List[TimelineEntry]:
        return sorted(self._entries, key=lambda entry: entry.order_key())

    def confirmed(self) -> List[Message]:
        return [entry for entry in self.entries() if isinstance(entry, Message)]

    def pending(self) -> List[PendingMessage]:
        return [entry for entry in self._entries if isinstance(entry, PendingMessage)]

    def ids(self) -> List[Union[int, str]]:
        return [entry_id(entry) for entry in self.entries()]

    def find(self, message_id: Union[int, str]) -> Optional[TimelineEntry]:
        for entry in self._entries:
            if entry_id(entry) == message_id:
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def add_pending(self, pending: PendingMessage) -> None:
        self._entries.append(pending)

    def merge(self, messages: Iterable[Message]) -> List[Tuple[str, Message]]:
        """Fold a fresh fetch into the timeline.

        Rows already present keep the union of both flag sets, since flags only
        move forward and either copy may be the newer one. Returns
        ``(temp_id, row)`` for each pending entry claimed by a fetched row.
        """

        claimed: List[Tuple[str, Message]] = []
        for message in messages:
            index = self._index_of(message.id)
            if index is not None:
                known = self._entries[index]
                self.apply_update(
                    message.with_flags(
                        read=known.read,
                        deleted_by_sender=known.deleted_by_sender,
                        deleted_by_receiver=known.deleted_by_receiver,
                    )
                )
                continue
            result = self.apply_confirmed(message)
            if result.replaced_temp_id is not None:
                claimed.append((result.replaced_temp_id, message))
        return claimed

    def apply_confirmed(self, message: Message, temp_id: str | None = None) -> ApplyResult:
        """Fold a confirmed row in; applying the same row twice changes nothing.

        ``temp_id`` names the pending entry this row answers, when known. Without
        it, an own message replaces the first pending entry with the same body.
        """

        if not self.belongs(message) or not message.is_visible_to(self.user_id):
            return ApplyResult(changed=False)

        if self._index_of(message.id) is not None:
            if temp_id is not None and self._drop(temp_id):
                return ApplyResult(changed=True, replaced_temp_id=temp_id)
            return ApplyResult(changed=False)

        index = self._index_of(temp_id) if temp_id is not None else None
        if index is None and message.sender_id == self.user_id:
            index = self._first_matching_pending(message)
        if index is not None:
            replaced = self._entries[index]
            self._entries[index] = message
            return ApplyResult(changed=True, replaced_temp_id=entry_id(replaced))

        self._entries.append(message)
        return ApplyResult(changed=True)

    def apply_update(self, message: Message) -> bool:
        """Refresh the flags of a known row; drop it once it is hidden for the user."""

        index = self._index_of(message.id)
        if index is None:
            return False
        if not message.is_visible_to(self.user_id):
            del self._entries[index]
            return True
        if self._entries[index] == message:
            return False
        self._entries[index] = message
        return True

    def mark_read_locally(self, ids: Iterable[int]) -> None:
        wanted = set(ids)
        for index, entry in enumerate(self._entries):
            if isinstance(entry, Message) and entry.id in wanted:
                self._entries[index] = entry.with_flags(read=True)

    def restore(self, message: Message) -> bool:
        """Put back a row removed optimistically, without pending matching."""

        if self._index_of(message.id) is not None or not self.belongs(message):
            return False
        self._entries.append(message)
        return True

    def remove(self, message_id: Union[int, str]) -> bool:
        return self._drop(message_id)

    def _drop(self, message_id: Union[int, str]) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        del self._entries[index]
        return True

    def _index_of(self, message_id: Union[int, str, None]) -> Optional[int]:
        if message_id is None:
            return None
        for index, entry in enumerate(self._entries):
            if entry_id(entry) == message_id:
                return index
        return None

    def _first_matching_pending(self, message: Message) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if isinstance(entry, PendingMessage) and entry.matches(message):
                return index
        return None
