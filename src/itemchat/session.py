from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .aggregator import (
    ConversationSummary,
    aggregate_conversations,
    is_suppressed,
    with_unread_cleared,
    without_conversation,
)
from .body import encode_reply
from .bus import BusEvent, NotificationBus
from .config import SyncConfig
from .directory import Directory, Identity, InMemoryBlobStore, attachment_path
from .errors import AttachmentRejected, ItemChatError, WriteError
from .markers import InMemoryMarkerStore
from .models import ChangeEvent, ChangeOperation, ConversationKey, DeleteDirection, Message, TimelineEntry, _now_ms
from .reconciler import Composer, OutgoingSend, SendReconciler
from .router import RealtimeRouter
from .store import DeleteScope, MessageFilter
from .timeline import MessageTimeline
from .tracker import ReadResult, UnreadBadge, UnreadTracker

logger = logging.getLogger(__name__)

IMAGE = "image"
DOCUMENT = "document"
UNKNOWN_SENDER = "Someone"


@dataclass
class DeleteResult:
    key: ConversationKey
    changed: List[int] = field(default_factory=list)
    errors: List[WriteError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ChatSession:
    """All chat state of one signed-in user, mutated from a single event loop.

    User actions, realtime callbacks and debounce timers interleave freely;
    none of them waits on another. The store stays the source of truth and
    every view here can be recomputed from it.
    """

    def __init__(
        self,
        identity: Identity,
        store: Any,
        transport: Any,
        *,
        directory: Directory | None = None,
        blobs: InMemoryBlobStore | None = None,
        markers: InMemoryMarkerStore | None = None,
        bus: NotificationBus | None = None,
        config: SyncConfig | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.identity = identity
        self.user_id = identity.user_id
        self._store = store
        self.directory = directory if directory is not None else Directory()
        self.blobs = blobs if blobs is not None else InMemoryBlobStore()
        self.markers = markers if markers is not None else InMemoryMarkerStore()
        self.bus = bus if bus is not None else NotificationBus()
        self.config = config if config is not None else SyncConfig()
        self._now = now_func

        self.conversations: List[ConversationSummary] = []
        self.timeline: Optional[MessageTimeline] = None
        self.composer = Composer()
        self.last_error: Optional[ItemChatError] = None
        self._generation = 0
        self._attachments: Dict[str, str] = {}
        self._background: set[asyncio.Task] = set()

        self.tracker = UnreadTracker(store, self.user_id, self.bus)
        self.badge = UnreadBadge(store, self.user_id, self.bus)
        self.reconciler = SendReconciler(
            store,
            timeout_s=self.config.send_timeout_s,
            on_confirmed=self._on_send_confirmed,
            on_rolled_back=self._on_send_rolled_back,
            now_func=now_func,
        )
        self.router = RealtimeRouter(
            transport,
            self.user_id,
            debounce_s=self.config.inbox_debounce_s,
            resubscribe_delay_s=self.config.resubscribe_delay_s,
            on_conversation_event=self._on_conversation_event,
            on_inbox_refresh=self._refresh_from_realtime,
            on_unread_event=self._on_unread_event,
            on_resync=self.resync,
        )

    async def start(self) -> None:
        await self.router.start()
        await self.refresh_conversations()
        await self.badge.refresh()

    async def close(self) -> None:
        await self.router.close()
        await self.reconciler.close()
        await self.badge.close()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def active_key(self) -> Optional[ConversationKey]:
        return self.timeline.key if self.timeline is not None else None

    @property
    def messages(self) -> List[TimelineEntry]:
        if self.timeline is None:
            return []
        return self.timeline.entries()

    @property
    def active_partner_name(self) -> Optional[str]:
        key = self.active_key
        if key is None:
            return None
        return self.directory.display_name(key.counterparty_id)

    def conversation(self, key: ConversationKey) -> Optional[ConversationSummary]:
        for summary in self.conversations:
            if summary.key == key:
                return summary
        return None

    def _suppression(self) -> Optional[Dict[ConversationKey, int]]:
        if not self.config.local_suppression:
            return None
        return self.markers.snapshot()

    async def refresh_conversations(self) -> List[ConversationSummary]:
        """Recompute the conversation list from the store.

        A result is discarded when a local optimistic change happened while the
        query was in flight; the next refresh picks it up.
        """

        generation = self._generation
        rows = await self._store.query(MessageFilter.for_user(self.user_id))
        if generation != self._generation:
            logger.debug("discarding conversation refresh started before a local change")
            return self.conversations
        self.conversations = aggregate_conversations(
            rows,
            self.user_id,
            directory=self.directory,
            markers=self._suppression(),
        )
        return self.conversations

    async def _refresh_from_realtime(self) -> None:
        await self.refresh_conversations()

    async def resync(self) -> None:
        await self.refresh_conversations()
        if self.timeline is not None:
            await self._load_timeline(self.timeline)
        self.badge.request_refresh()

    async def open_conversation(self, item_id: str, counterparty_id: str) -> ReadResult:
        """Show a conversation and mark its inbound unread messages read.

        The unread count is zeroed in the list right away; only a successful
        read-mark makes that permanent. A failed one is returned in the result
        and the next refresh shows the store's count again.
        """

        key = ConversationKey(item_id=item_id, counterparty_id=counterparty_id)
        self._generation += 1
        self.conversations = with_unread_cleared(self.conversations, key)
        if self.timeline is None or self.timeline.key != key:
            self.timeline = MessageTimeline(self.user_id, key)
            self.composer.clear()
        timeline = self.timeline
        await self.router.watch_conversation(key)
        return await self._load_timeline(timeline)

    async def _load_timeline(self, timeline: MessageTimeline) -> ReadResult:
        key = timeline.key
        rows = await self._store.query(MessageFilter.for_conversation(key.item_id, self.user_id, key.counterparty_id))
        markers = self._suppression()
        rows = [row for row in rows if not is_suppressed(row, self.user_id, markers)]
        if self.timeline is not timeline:
            return ReadResult()

        for temp_id, row in timeline.merge(rows):
            send = self.reconciler.get(temp_id)
            if send is not None:
                self.reconciler.confirm(send, row)

        result = await self.tracker.mark_conversation_read(rows)
        if not result.ok:
            self.last_error = result.error
            return result
        if result.marked:
            timeline.mark_read_locally(result.marked)
            self._generation += 1
            self.conversations = with_unread_cleared(self.conversations, key)
        return result

    async def close_conversation(self) -> None:
        await self.router.unwatch_conversation()
        self.timeline = None
        self.composer.clear()

    def set_compose_text(self, text: str) -> None:
        self.composer.text = text

    def reply_to(self, message_id: Union[int, str]) -> bool:
        if self.timeline is None:
            return False
        target = self.timeline.find(message_id)
        if target is None:
            return False
        self.composer.reply_target = target
        return True

    def cancel_reply(self) -> None:
        self.composer.reply_target = None

    def send(self, text: str | None = None) -> Optional[OutgoingSend]:
        """Send the composed text (or ``text``) to the open conversation.

        Returns ``None`` without side effects when the text is blank or no
        conversation is open. Otherwise the pending entry is visible at once
        and the store round trip continues in the background.
        """

        timeline = self.timeline
        if timeline is None:
            return None
        if not self.composer.ready(text):
            return None

        typed = self.composer.typed(text)
        body = typed
        target = self.composer.reply_target
        if target is not None:
            body = encode_reply(
                target,
                typed,
                self.user_id,
                counterparty_label=self.directory.lookup_name(target.sender_id),
                preview_chars=self.config.reply_preview_chars,
            )

        pending = self.reconciler.build_pending(key=timeline.key, sender_id=self.user_id, body=body)
        timeline.add_pending(pending)
        self.composer.clear()
        return self.reconciler.submit(pending, timeline.key)

    def _check_attachment(self, payload: bytes, content_type: str, kind: str) -> None:
        size = len(payload)
        if kind == IMAGE:
            if not content_type.startswith("image/"):
                raise AttachmentRejected(f"{content_type or 'unknown type'} is not an image")
            if size > self.config.max_image_bytes:
                raise AttachmentRejected(f"image exceeds {self.config.max_image_bytes} bytes")
        elif kind == DOCUMENT:
            if size > self.config.max_document_bytes:
                raise AttachmentRejected(f"document exceeds {self.config.max_document_bytes} bytes")
        else:
            raise AttachmentRejected(f"unknown attachment kind {kind!r}")

    async def send_attachment(
        self,
        payload: bytes,
        filename: str,
        content_type: str,
        kind: str = IMAGE,
    ) -> OutgoingSend:
        """Upload ``payload`` and send it as a message.

        Size and type are checked before anything is uploaded. The blob is
        deleted again if the message never reaches the store.
        """

        timeline = self.timeline
        if timeline is None:
            raise ItemChatError("no open conversation")
        self._check_attachment(payload, content_type, kind)

        key = timeline.key
        path = attachment_path(self.user_id, key.item_id, filename, self._now())
        url = await self.blobs.upload(path, payload, content_type)
        body = "Sent an image" if kind == IMAGE else f"Sent a file: {filename}"
        pending = self.reconciler.build_pending(key=key, sender_id=self.user_id, body=body, attachment_url=url)
        timeline.add_pending(pending)
        self._attachments[pending.temp_id] = url
        return self.reconciler.submit(pending, key)

    async def delete_conversation(self, key: ConversationKey | None = None) -> DeleteResult:
        """Hide a conversation for this user only.

        The list entry disappears at once and a local marker suppresses the
        existing rows; then both directions are soft-deleted in the store.
        Store failures are logged and collected in the result.
        """

        key = key if key is not None else self.active_key
        if key is None:
            raise ItemChatError("no conversation to delete")

        self._generation += 1
        if self.config.local_suppression:
            self.markers.set(key, self._now())
        self.conversations = without_conversation(self.conversations, key)
        if self.active_key == key:
            await self.close_conversation()

        scope = DeleteScope(item_id=key.item_id, self_id=self.user_id, counterpart_id=key.counterparty_id)
        result = DeleteResult(key=key)
        for direction in (DeleteDirection.SENDER, DeleteDirection.RECEIVER):
            try:
                result.changed.extend(await self._store.soft_delete(direction, scope))
            except WriteError as exc:
                logger.warning("soft delete (%s) of %s failed: %s", direction.value, key.marker_name(), exc)
                result.errors.append(exc)
        if result.errors:
            self.last_error = result.errors[0]
        return result

    async def delete_message(self, message_id: int) -> bool:
        """Hide one confirmed message for this user; restored if the store refuses."""

        timeline = self.timeline
        entry = timeline.find(message_id) if timeline is not None else None
        if not isinstance(entry, Message):
            return False
        timeline.remove(message_id)
        try:
            return await self._store.soft_delete_message(message_id, actor_id=self.user_id)
        except WriteError as exc:
            logger.warning("delete of message %s failed: %s", message_id, exc)
            timeline.restore(entry)
            self.last_error = exc
            raise

    async def settle(self) -> None:
        """Wait for in-flight sends, read-marks and badge refreshes to finish."""

        while True:
            await self.reconciler.drain()
            tasks = list(self._background)
            if not tasks:
                break
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.badge.settle()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_send_confirmed(self, send: OutgoingSend, message: Message) -> None:
        self._attachments.pop(send.temp_id, None)
        timeline = self.timeline
        if timeline is not None and timeline.key == send.key:
            timeline.apply_confirmed(message, send.temp_id)

    def _on_send_rolled_back(self, send: OutgoingSend) -> None:
        timeline = self.timeline
        if timeline is not None and timeline.key == send.key:
            timeline.remove(send.temp_id)
        self.last_error = send.error
        self.bus.publish(
            BusEvent.SEND_FAILED,
            {
                "temp_id": send.temp_id,
                "item_id": send.key.item_id,
                "counterparty_id": send.key.counterparty_id,
                "error": str(send.error),
            },
        )
        url = self._attachments.pop(send.temp_id, None)
        if url is not None:
            self._spawn(self._discard_blob(url))

    async def _discard_blob(self, url: str) -> None:
        try:
            await self.blobs.delete(url)
        except Exception:
            logger.exception("could not delete orphaned attachment %s", url)

    def _on_conversation_event(self, event: ChangeEvent) -> None:
        timeline = self.timeline
        row = event.row
        if timeline is None or not timeline.belongs(row):
            return
        if event.operation is ChangeOperation.UPDATE:
            timeline.apply_update(row)
            return
        if is_suppressed(row, self.user_id, self._suppression()):
            return

        if row.sender_id == self.user_id:
            send = self.reconciler.match_incoming(row)
            if send is not None and self.reconciler.confirm(send, row):
                return
            timeline.apply_confirmed(row)
            return

        applied = timeline.apply_confirmed(row)
        if applied.changed and row.is_unread_for(self.user_id):
            self._spawn(self._mark_inbound_read(timeline, row))

    async def _mark_inbound_read(self, timeline: MessageTimeline, row: Message) -> None:
        if await self.tracker.mark_one_read(row):
            timeline.mark_read_locally([row.id])

    def _on_unread_event(self, event: ChangeEvent) -> None:
        self.badge.request_refresh()
        row = event.row
        if event.operation is not ChangeOperation.INSERT or row.receiver_id != self.user_id:
            return
        self.bus.publish(
            BusEvent.MESSAGE_RECEIVED,
            {
                "message_id": row.id,
                "item_id": row.item_id,
                "sender_id": row.sender_id,
                "sender_name": self.directory.display_name(row.sender_id, UNKNOWN_SENDER),
            },
        )
