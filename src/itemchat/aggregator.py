"""Fold the message log into per-conversation summaries for one user."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional

from .body import display_text
from .directory import FALLBACK_NAME, Directory
from .models import ConversationKey, Message


@dataclass(frozen=True)
class ConversationSummary:
    key: ConversationKey
    last_message_id: int
    last_message: str
    last_message_at_ms: int
    last_has_attachment: bool
    unread_count: int
    partner_name: str
    item_title: Optional[str] = None
    item_thumbnail: Optional[str] = None

    @property
    def item_id(self) -> str:
        return self.key.item_id

    @property
    def counterparty_id(self) -> str:
        return self.key.counterparty_id


def is_suppressed(message: Message, user_id: str, markers: Mapping[ConversationKey, int] | None) -> bool:
    """True when a local "deleted at" marker hides ``message`` for ``user_id``."""

    if not markers:
        return False
    deleted_at_ms = markers.get(message.conversation_key(user_id))
    return deleted_at_ms is not None and message.created_at_ms <= deleted_at_ms


def visible_messages(
    messages: Iterable[Message],
    user_id: str,
    markers: Mapping[ConversationKey, int] | None = None,
) -> List[Message]:
    return [
        message
        for message in messages
        if message.involves(user_id)
        and message.is_visible_to(user_id)
        and not is_suppressed(message, user_id, markers)
    ]


def aggregate_conversations(
    messages: Iterable[Message],
    user_id: str,
    *,
    directory: Directory | None = None,
    markers: Mapping[ConversationKey, int] | None = None,
) -> List[ConversationSummary]:
    """Group visible messages by ``(item_id, counterparty_id)``.

    The last message of a group is the greatest ``(created_at, id)`` regardless
    of input order, so any traversal of the same rows yields the same output.
    Groups are returned newest first.
    """

    latest: Dict[ConversationKey, Message] = {}
    unread: Dict[ConversationKey, int] = {}
    for message in visible_messages(messages, user_id, markers):
        key = message.conversation_key(user_id)
        current = latest.get(key)
        if current is None or (message.created_at_ms, message.id) > (current.created_at_ms, current.id):
            latest[key] = message
        if message.receiver_id == user_id and not message.read:
            unread[key] = unread.get(key, 0) + 1
        else:
            unread.setdefault(key, 0)

    summaries = [
        _summarize(key, message, unread.get(key, 0), directory) for key, message in latest.items()
    ]
    summaries.sort(
        key=lambda s: (s.last_message_at_ms, s.last_message_id, s.key.item_id, s.key.counterparty_id),
        reverse=True,
    )
    return summaries


def _summarize(
    key: ConversationKey,
    message: Message,
    unread_count: int,
    directory: Directory | None,
) -> ConversationSummary:
    partner_name = FALLBACK_NAME
    item_title = None
    item_thumbnail = None
    if directory is not None:
        partner_name = directory.display_name(key.counterparty_id)
        item = directory.item(key.item_id)
        if item is not None:
            item_title = item.title
            item_thumbnail = item.thumbnail_url
    return ConversationSummary(
        key=key,
        last_message_id=message.id,
        last_message=display_text(message.body),
        last_message_at_ms=message.created_at_ms,
        last_has_attachment=bool(message.attachment_url),
        unread_count=unread_count,
        partner_name=partner_name,
        item_title=item_title,
        item_thumbnail=item_thumbnail,
    )


def with_unread_cleared(summaries: Iterable[ConversationSummary], key: ConversationKey) -> List[ConversationSummary]:
    return [replace(s, unread_count=0) if s.key == key else s for s in summaries]


def without_conversation(summaries: Iterable[ConversationSummary], key: ConversationKey) -> List[ConversationSummary]:
    return [s for s in summaries if s.key != key]


def total_unread(summaries: Iterable[ConversationSummary]) -> int:
    return sum(s.unread_count for s in summaries)
