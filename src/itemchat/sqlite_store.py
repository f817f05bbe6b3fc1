from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Callable, Iterable, List

from .errors import WriteError
from .feed import ChangeFeed
from .models import ChangeEvent, ChangeOperation, DeleteDirection, Message, _now_ms
from .store import DeleteScope, MessageFilter

SCHEMA_VERSION = 1

_COLUMNS = (
    "id, item_id, sender_id, receiver_id, body, attachment_url, created_at_ms, "
    "read, deleted_by_sender, deleted_by_receiver"
)


class SQLiteBackend:
    """Owns a shared SQLite connection and applies the message schema."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                body TEXT NOT NULL,
                attachment_url TEXT,
                created_at_ms INTEGER NOT NULL,
                read INTEGER NOT NULL DEFAULT 0,
                deleted_by_sender INTEGER NOT NULL DEFAULT 0,
                deleted_by_receiver INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_messages_sender ON messages (sender_id, created_at_ms)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_messages_receiver ON messages (receiver_id, read)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_messages_item ON messages (item_id, created_at_ms)"
        )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=int(row["id"]),
        item_id=row["item_id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        body=row["body"],
        attachment_url=row["attachment_url"],
        created_at_ms=int(row["created_at_ms"]),
        read=bool(row["read"]),
        deleted_by_sender=bool(row["deleted_by_sender"]),
        deleted_by_receiver=bool(row["deleted_by_receiver"]),
    )


class SQLiteMessageStore:
    """Durable message store backed by SQLite.

    Same contract as :class:`itemchat.store.InMemoryMessageStore`; change
    events are published after the transaction commits.
    """

    def __init__(
        self,
        backend: SQLiteBackend,
        feed: ChangeFeed | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self.feed = feed
        self._now = now_func

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

        created_at_ms = self._now()
        conn = self._backend.connection
        with self._backend.lock:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO messages (item_id, sender_id, receiver_id, body, attachment_url, created_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (item_id, sender_id, receiver_id, body, attachment_url, created_at_ms),
                )
            except sqlite3.Error as exc:
                raise WriteError("append", str(exc)) from exc
            message_id = int(cursor.lastrowid)
        message = Message(
            id=message_id,
            item_id=item_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            body=body,
            attachment_url=attachment_url,
            created_at_ms=created_at_ms,
        )
        self._emit(ChangeOperation.INSERT, message)
        return message

    async def mark_read(self, ids: Iterable[int], *, actor_id: str) -> List[int]:
        wanted = sorted(set(ids))
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                rows = cursor.execute(
                    f"SELECT {_COLUMNS} FROM messages WHERE id IN ({placeholders}) AND read = 0",
                    wanted,
                ).fetchall()
                allowed = [row for row in rows if row["receiver_id"] == actor_id]
                rejected = [int(row["id"]) for row in rows if row["receiver_id"] != actor_id]
                if allowed:
                    allowed_ids = [int(row["id"]) for row in allowed]
                    cursor.execute(
                        f"UPDATE messages SET read = 1 WHERE id IN ({','.join('?' for _ in allowed_ids)})",
                        allowed_ids,
                    )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise WriteError("mark_read", str(exc), failed_ids=wanted) from exc
            finally:
                cursor.close()

        changed: List[int] = []
        for row in allowed:
            updated = _row_to_message(row).with_flags(read=True)
            changed.append(updated.id)
            self._emit(ChangeOperation.UPDATE, updated)
        if rejected:
            raise WriteError("mark_read", "not the receiver", failed_ids=rejected)
        return changed

    async def soft_delete(self, direction: DeleteDirection, scope: DeleteScope) -> List[int]:
        sender_id, receiver_id = scope.sender_receiver(direction)
        column = "deleted_by_sender" if direction is DeleteDirection.SENDER else "deleted_by_receiver"
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                rows = cursor.execute(
                    f"""
                    SELECT {_COLUMNS} FROM messages
                    WHERE item_id=? AND sender_id=? AND receiver_id=? AND {column} = 0
                    ORDER BY created_at_ms ASC, id ASC
                    """,
                    (scope.item_id, sender_id, receiver_id),
                ).fetchall()
                cursor.execute(
                    f"UPDATE messages SET {column} = 1 WHERE item_id=? AND sender_id=? AND receiver_id=?",
                    (scope.item_id, sender_id, receiver_id),
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise WriteError(f"soft_delete_{direction.value}", str(exc)) from exc
            finally:
                cursor.close()

        changed: List[int] = []
        for row in rows:
            message = _row_to_message(row)
            if direction is DeleteDirection.SENDER:
                updated = message.with_flags(deleted_by_sender=True)
            else:
                updated = message.with_flags(deleted_by_receiver=True)
            changed.append(updated.id)
            self._emit(ChangeOperation.UPDATE, updated)
        return changed

    async def soft_delete_message(self, message_id: int, *, actor_id: str) -> bool:
        message = self._fetch_one(message_id)
        if message is None:
            return False
        if actor_id == message.sender_id:
            column, updated = "deleted_by_sender", message.with_flags(deleted_by_sender=True)
        elif actor_id == message.receiver_id:
            column, updated = "deleted_by_receiver", message.with_flags(deleted_by_receiver=True)
        else:
            raise WriteError("soft_delete_message", "not a participant", failed_ids=[message_id])
        if updated == message:
            return False
        with self._backend.lock:
            try:
                self._backend.connection.execute(
                    f"UPDATE messages SET {column} = 1 WHERE id=?", (message_id,)
                )
            except sqlite3.Error as exc:
                raise WriteError("soft_delete_message", str(exc), failed_ids=[message_id]) from exc
        self._emit(ChangeOperation.UPDATE, updated)
        return True

    async def query(self, message_filter: MessageFilter) -> List[Message]:
        clauses: List[str] = []
        params: List[object] = []
        if message_filter.involving is not None:
            clauses.append("(sender_id=? OR receiver_id=?)")
            params.extend([message_filter.involving, message_filter.involving])
        if message_filter.item_id is not None:
            clauses.append("item_id=?")
            params.append(message_filter.item_id)
        if message_filter.pair is not None:
            first, second = message_filter.pair
            clauses.append("((sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?))")
            params.extend([first, second, second, first])
        if message_filter.receiver_id is not None:
            clauses.append("receiver_id=?")
            params.append(message_filter.receiver_id)
        if message_filter.unread_only:
            clauses.append("read = 0")

        direction = "DESC" if message_filter.newest_first else "ASC"
        query = f"SELECT {_COLUMNS} FROM messages"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY created_at_ms {direction}, id {direction}"
        if message_filter.limit is not None:
            query += " LIMIT ?"
            params.append(max(message_filter.limit, 0))

        with self._backend.lock:
            rows = self._backend.connection.execute(query, params).fetchall()
        return [_row_to_message(row) for row in rows]

    async def count_unread(self, user_id: str) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT COUNT(*) FROM messages WHERE receiver_id=? AND read = 0 AND deleted_by_receiver = 0",
                (user_id,),
            ).fetchone()
        return int(row[0]) if row else 0

    def _fetch_one(self, message_id: int) -> Message | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE id=?", (message_id,)
            ).fetchone()
        return _row_to_message(row) if row else None

    def _emit(self, operation: ChangeOperation, row: Message) -> None:
        if self.feed is not None:
            self.feed.publish(ChangeEvent(operation=operation, row=row))
