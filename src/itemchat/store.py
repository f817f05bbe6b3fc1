from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import WriteError
from .feed import ChangeFeed
from .models import ChangeEvent, ChangeOperation, DeleteDirection, Message, _now_ms


@dataclass(frozen=True)
class MessageFilter:
    """Row selection for :meth:`InMemoryMessageStore.query`.

    ``involving`` selects every message where the user is a participant;
    ``item_id`` plus ``pair`` selects one conversation in both directions.
    Results are ascending by ``(created_at, id)`` unless ``newest_first``.
    """

    involving: Optional[str] = None
    item_id: Optional[str] = None
    pair: Optional[Tuple[str, str]] = None
    receiver_id: Optional[str] = None
    unread_only: bool = False
    newest_first: bool = False
    limit: Optional[int] = None

    def matches(self, message: Message) -> bool:
        if self.involving is not None and not message.involves(self.involving):
            return False
        if self.item_id is not None and message.item_id != self.item_id:
            return False
        if self.pair is not None and {message.sender_id, message.receiver_id} != set(self.pair):
            return False
        if self.receiver_id is not None and message.receiver_id != self.receiver_id:
            return False
        if self.unread_only and message.read:
            return False
        return True

    @classmethod
    def for_user(cls, user_id: str, *, newest_first: bool = True) -> "MessageFilter":
        return cls(involving=user_id, newest_first=newest_first)

    @classmethod
    def for_conversation(cls, item_id: str, user_id: str, counterparty_id: str) -> "MessageFilter":
        return cls(item_id=item_id, pair=(user_id, counterparty_id))


@dataclass(frozen=True)
class DeleteScope:
    """Rows a soft delete applies to, from the deleting user's side."""

    item_id: str
    self_id: str
    counterpart_id: str

    def sender_receiver(self, direction: DeleteDirection) -> Tuple[str, str]:
        if direction is DeleteDirection.SENDER:
            return self.self_id, self.counterpart_id
        return self.counterpart_id, self.self_id


WritePolicy = Callable[[str, str, Message | None], bool]


def _allow_all(_operation: str, _actor_id: str, _row: Message | None) -> bool:
    return True


def sort_messages(messages: Iterable[Message], *, newest_first: bool = False) -> List[Message]:
    return sorted(messages, key=lambda m: (m.created_at_ms, m.id), reverse=newest_first)


class InMemoryMessageStore:
    """Authoritative append-only message log held in memory.

    Every write publishes a :class:`ChangeEvent` to the attached feed after it
    is applied. ``policy`` can veto writes, the way a backend's row-level
    security would; flag updates are additionally restricted to their single
    legitimate writer.
    """

    def __init__(
        self,
        feed: ChangeFeed | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
        policy: WritePolicy | None = None,
    ) -> None:
        self.feed = feed
        self._now = now_func
        self._policy = policy or _allow_all
        self._rows: Dict[int, Message] = {}
        self._next_id = 1

    async def append(
        self,
        *,
        item_id: str,
        sender_id: str,
        receiver_id: str,
        body: str,
        attachment_url: str | None = None,
    ) -> Message:
        if not item_id or not sender_id or not receiver_id:
            raise WriteError("append", "item_id, sender_id and receiver_id required")
        if sender_id == receiver_id:
            raise WriteError("append", "sender and receiver must differ")
        if not self._policy("append", sender_id, None):
            raise WriteError("append", "not authorized")

        message = Message(
            id=self._next_id,
            item_id=item_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            body=body,
            created_at_ms=self._now(),
            attachment_url=attachment_url,
        )
        self._next_id += 1
        self._rows[message.id] = message
        self._emit(ChangeOperation.INSERT, message)
        return message

    async def mark_read(self, ids: Iterable[int], *, actor_id: str) -> List[int]:
        """Set ``read`` on every id the actor received.

        Unknown and already-read ids are skipped. Ids the actor is not the
        receiver of are rejected; the remaining ids are still applied and a
        :class:`WriteError` listing the rejected ids is raised afterwards.
        Returns the ids whose flag changed.
        """

        changed: List[int] = []
        rejected: List[int] = []
        for message_id in sorted(set(ids)):
            row = self._rows.get(message_id)
            if row is None or row.read:
                continue
            if row.receiver_id != actor_id or not self._policy("mark_read", actor_id, row):
                rejected.append(message_id)
                continue
            updated = row.with_flags(read=True)
            self._rows[message_id] = updated
            changed.append(message_id)
            self._emit(ChangeOperation.UPDATE, updated)
        if rejected:
            raise WriteError("mark_read", "not the receiver", failed_ids=rejected)
        return changed

    async def soft_delete(self, direction: DeleteDirection, scope: DeleteScope) -> List[int]:
        """Flag every row of the scope in ``direction`` for the deleting user."""

        sender_id, receiver_id = scope.sender_receiver(direction)
        if not self._policy(f"soft_delete_{direction.value}", scope.self_id, None):
            raise WriteError(f"soft_delete_{direction.value}", "not authorized")
        changed: List[int] = []
        for row in sort_messages(self._rows.values()):
            if row.item_id != scope.item_id or row.sender_id != sender_id or row.receiver_id != receiver_id:
                continue
            updated = self._apply_delete_flag(row, direction)
            if updated is not None:
                changed.append(updated.id)
        return changed

    async def soft_delete_message(self, message_id: int, *, actor_id: str) -> bool:
        row = self._rows.get(message_id)
        if row is None:
            return False
        if actor_id == row.sender_id:
            direction = DeleteDirection.SENDER
        elif actor_id == row.receiver_id:
            direction = DeleteDirection.RECEIVER
        else:
            raise WriteError("soft_delete_message", "not a participant", failed_ids=[message_id])
        if not self._policy(f"soft_delete_{direction.value}", actor_id, row):
            raise WriteError(f"soft_delete_{direction.value}", "not authorized", failed_ids=[message_id])
        return self._apply_delete_flag(row, direction) is not None

    async def query(self, message_filter: MessageFilter) -> List[Message]:
        rows = [row for row in self._rows.values() if message_filter.matches(row)]
        ordered = sort_messages(rows, newest_first=message_filter.newest_first)
        if message_filter.limit is not None:
            ordered = ordered[: max(message_filter.limit, 0)]
        return ordered

    async def count_unread(self, user_id: str) -> int:
        return sum(1 for row in self._rows.values() if row.is_unread_for(user_id))

    def get(self, message_id: int) -> Message | None:
        return self._rows.get(message_id)

    def _apply_delete_flag(self, row: Message, direction: DeleteDirection) -> Message | None:
        if direction is DeleteDirection.SENDER:
            if row.deleted_by_sender:
                return None
            updated = row.with_flags(deleted_by_sender=True)
        else:
            if row.deleted_by_receiver:
                return None
            updated = row.with_flags(deleted_by_receiver=True)
        self._rows[row.id] = updated
        self._emit(ChangeOperation.UPDATE, updated)
        return updated

    def _emit(self, operation: ChangeOperation, row: Message) -> None:
        if self.feed is not None:
            self.feed.publish(ChangeEvent(operation=operation, row=row))
