"""Frame-driven simulation CLI for scripted reproduction of sync scenarios."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, TextIO

from .aggregator import ConversationSummary
from .body import decode, quoted_preview
from .bus import BusEvent, BusMessage, NotificationBus
from .config import load_sync_config_from_env
from .directory import Directory, InMemoryBlobStore
from .errors import ItemChatError
from .feed import ChangeFeed
from .markers import InMemoryMarkerStore, JsonMarkerStore
from .models import ConversationKey, PendingMessage, TimelineEntry, entry_id
from .reconciler import OutgoingSend
from .session import ChatSession
from .sqlite_store import SQLiteBackend, SQLiteMessageStore
from .store import InMemoryMessageStore

DEFAULT_START_MS = 1_700_000_000_000


class SimClock:
    """Deterministic millisecond clock; every reading advances it by one."""

    def __init__(self, start_ms: int = DEFAULT_START_MS) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        self.now_ms += 1
        return self.now_ms

    def advance_to(self, at_ms: int) -> None:
        self.now_ms = max(self.now_ms, int(at_ms))


def _summary_to_dict(summary: ConversationSummary) -> Dict[str, Any]:
    return {
        "item_id": summary.item_id,
        "counterparty_id": summary.counterparty_id,
        "partner_name": summary.partner_name,
        "item_title": summary.item_title,
        "last_message": summary.last_message,
        "last_message_id": summary.last_message_id,
        "last_message_at_ms": summary.last_message_at_ms,
        "unread_count": summary.unread_count,
    }


def _entry_to_dict(entry: TimelineEntry) -> Dict[str, Any]:
    annotation, text = decode(entry.body)
    data: Dict[str, Any] = {
        "id": entry_id(entry),
        "sender_id": entry.sender_id,
        "text": text,
        "created_at_ms": entry.created_at_ms,
        "attachment_url": entry.attachment_url,
        "pending": isinstance(entry, PendingMessage),
    }
    if not isinstance(entry, PendingMessage):
        data["read"] = entry.read
    if annotation is not None:
        data["reply_to"] = {
            "id": annotation.original_message_id,
            "name": annotation.original_sender_label,
            "text": quoted_preview(annotation),
            "is_media": annotation.is_media,
        }
    return data


class Simulation:
    """Sessions for several users sharing one in-memory store and feed."""

    def __init__(
        self,
        output: TextIO,
        *,
        clock: SimClock | None = None,
        db_path: str | None = None,
        markers_dir: str | None = None,
    ) -> None:
        self.output = output
        self.clock = clock or SimClock()
        self.feed = ChangeFeed()
        self.backend: SQLiteBackend | None = None
        if db_path:
            self.backend = SQLiteBackend(db_path)
            self.store: Any = SQLiteMessageStore(self.backend, self.feed, now_func=self.clock)
        else:
            self.store = InMemoryMessageStore(self.feed, now_func=self.clock)
        self.directory = Directory()
        self.blobs = InMemoryBlobStore()
        self.config = replace(load_sync_config_from_env(), inbox_debounce_ms=0)
        self.markers_dir = Path(markers_dir) if markers_dir else None
        self.sessions: Dict[str, ChatSession] = {}

    def emit(self, message: Dict[str, Any]) -> None:
        self.output.write(json.dumps(message, sort_keys=True) + "\n")

    def session(self, user_id: str) -> ChatSession:
        try:
            return self.sessions[user_id]
        except KeyError:
            raise ValueError(f"user {user_id!r} has no open session") from None

    def _marker_store(self, user_id: str) -> InMemoryMarkerStore:
        if self.markers_dir is None:
            return InMemoryMarkerStore()
        return JsonMarkerStore(self.markers_dir / f"{user_id}.json")

    async def open(self, user_id: str, name: str | None = None) -> ChatSession:
        if user_id in self.sessions:
            return self.sessions[user_id]
        identity = self.directory.add_user(user_id, name or user_id)
        bus = NotificationBus()
        for kind in (BusEvent.MESSAGE_RECEIVED, BusEvent.SEND_FAILED):
            bus.subscribe(kind, self._notifier(user_id))
        session = ChatSession(
            identity,
            self.store,
            self.feed,
            directory=self.directory,
            blobs=self.blobs,
            markers=self._marker_store(user_id),
            bus=bus,
            config=self.config,
            now_func=self.clock,
        )
        await session.start()
        self.sessions[user_id] = session
        return session

    def _notifier(self, user_id: str):
        def _notify(message: BusMessage) -> None:
            self.emit({"t": "notify", "user": user_id, "kind": message.kind.value, "payload": message.payload})

        return _notify

    async def settle(self) -> None:
        for session in self.sessions.values():
            await session.settle()
        for session in self.sessions.values():
            await session.refresh_conversations()

    async def snapshot(self, user_id: str) -> Dict[str, Any]:
        session = self.session(user_id)
        await session.refresh_conversations()
        active = session.active_key
        return {
            "t": "snapshot",
            "user": user_id,
            "unread": session.badge.count,
            "conversations": [_summary_to_dict(summary) for summary in session.conversations],
            "active": None if active is None else {"item_id": active.item_id, "counterparty_id": active.counterparty_id},
            "messages": [_entry_to_dict(entry) for entry in session.messages],
        }

    def _emit_sent(self, user_id: str, send: OutgoingSend) -> None:
        self.emit(
            {
                "t": "sent",
                "user": user_id,
                "state": send.state.value,
                "temp_id": send.temp_id,
                "message_id": send.confirmed.id if send.confirmed is not None else None,
            }
        )

    async def _ensure_conversation(self, session: ChatSession, frame: Dict[str, Any]) -> None:
        item_id = frame.get("item_id")
        counterparty_id = frame.get("with")
        if item_id is None or counterparty_id is None:
            return
        active = session.active_key
        if active is None or (active.item_id, active.counterparty_id) != (item_id, counterparty_id):
            await session.open_conversation(item_id, counterparty_id)

    async def handle(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        if "at_ms" in frame:
            self.clock.advance_to(frame["at_ms"])

        if frame_type == "open":
            await self.open(frame["user"], frame.get("name"))
        elif frame_type == "item":
            self.directory.add_item(frame["item_id"], frame["title"], frame.get("thumbnail_url"))
        elif frame_type == "open_conversation":
            session = self.session(frame["user"])
            result = await session.open_conversation(frame["item_id"], frame["with"])
            self.emit({"t": "read", "user": frame["user"], "marked": result.marked, "ok": result.ok})
        elif frame_type == "send":
            session = self.session(frame["user"])
            await self._ensure_conversation(session, frame)
            send = session.send(frame["text"])
            if send is None:
                self.emit({"t": "skipped", "user": frame["user"], "reason": "nothing to send"})
            else:
                await send.wait()
                self._emit_sent(frame["user"], send)
        elif frame_type == "reply":
            session = self.session(frame["user"])
            await self._ensure_conversation(session, frame)
            if not session.reply_to(frame["message_id"]):
                raise ValueError(f"message {frame['message_id']!r} is not in the open conversation")
            send = session.send(frame["text"])
            if send is not None:
                await send.wait()
                self._emit_sent(frame["user"], send)
        elif frame_type == "delete_conversation":
            session = self.session(frame["user"])
            result = await session.delete_conversation(ConversationKey(frame["item_id"], frame["with"]))
            self.emit({"t": "deleted", "user": frame["user"], "changed": result.changed, "ok": result.ok})
        elif frame_type == "delete_message":
            session = self.session(frame["user"])
            await self._ensure_conversation(session, frame)
            changed = await session.delete_message(frame["message_id"])
            self.emit({"t": "deleted", "user": frame["user"], "changed": [frame["message_id"]] if changed else []})
        elif frame_type == "snapshot":
            await self.settle()
            self.emit(await self.snapshot(frame["user"]))
            return
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")
        await self.settle()

    async def close(self) -> None:
        for session in self.sessions.values():
            await session.close()
        self.sessions.clear()
        if self.backend is not None:
            self.backend.close()
            self.backend = None


async def _simulate(frames: Iterable[dict], output: TextIO, db_path: str | None, markers_dir: str | None) -> None:
    simulation = Simulation(output, db_path=db_path, markers_dir=markers_dir)
    try:
        for frame in frames:
            try:
                await simulation.handle(frame)
            except ItemChatError as exc:
                simulation.emit({"t": "error", "frame": frame.get("t"), "message": str(exc)})
    finally:
        await simulation.close()


def simulate(
    frames: Iterable[dict], output: TextIO, *, db_path: str | None = None, markers_dir: str | None = None
) -> None:
    """Process JSON frames through local sessions and emit JSON lines.

    Messages live in memory unless ``db_path`` names a SQLite database. With
    ``markers_dir`` each user's deletion markers persist to ``<user_id>.json``
    in that directory.
    """

    asyncio.run(_simulate(frames, output, db_path, markers_dir))


def _load_frames(handle: TextIO) -> List[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: List[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, db_path=args.db, markers_dir=args.markers)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="itemchat", description="Item chat sync core")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Run chat frames through in-memory sessions")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--db", default=None, help="SQLite database for the message store")
    simulate_parser.add_argument(
        "--markers", default=None, metavar="DIR", help="Directory for per-user deletion marker files"
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
