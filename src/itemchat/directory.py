"""Narrow collaborators consumed by the chat core.

Identity, profile and listing data are owned elsewhere; the core only reads
display names and item snapshots, and forwards blob URLs as opaque strings.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Dict, Optional

FALLBACK_NAME = "User"


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str


@dataclass(frozen=True)
class ItemSnapshot:
    item_id: str
    title: str
    thumbnail_url: Optional[str] = None


class Directory:
    """In-memory profile and listing lookup."""

    def __init__(
        self,
        names: Dict[str, str] | None = None,
        items: Dict[str, ItemSnapshot] | None = None,
    ) -> None:
        self._names: Dict[str, str] = dict(names or {})
        self._items: Dict[str, ItemSnapshot] = dict(items or {})

    def add_user(self, user_id: str, display_name: str) -> Identity:
        self._names[user_id] = display_name
        return Identity(user_id=user_id, display_name=display_name)

    def add_item(self, item_id: str, title: str, thumbnail_url: str | None = None) -> ItemSnapshot:
        snapshot = ItemSnapshot(item_id=item_id, title=title, thumbnail_url=thumbnail_url)
        self._items[item_id] = snapshot
        return snapshot

    def lookup_name(self, user_id: str) -> Optional[str]:
        name = self._names.get(user_id)
        if name is None or not name.strip():
            return None
        return name

    def display_name(self, user_id: str, default: str = FALLBACK_NAME) -> str:
        return self.lookup_name(user_id) or default

    def item(self, item_id: str) -> Optional[ItemSnapshot]:
        return self._items.get(item_id)

    def identity(self, user_id: str) -> Identity:
        return Identity(user_id=user_id, display_name=self.display_name(user_id))


class InMemoryBlobStore:
    """Stores attachment payloads and hands back dereferenceable URLs."""

    def __init__(self, base_url: str = "memory://blobs") -> None:
        self.base_url = base_url.rstrip("/")
        self._objects: Dict[str, bytes] = {}

    async def upload(self, path: str, payload: bytes, content_type: str) -> str:
        url = f"{self.base_url}/{path}"
        self._objects[url] = bytes(payload)
        return url

    async def delete(self, url: str) -> bool:
        return self._objects.pop(url, None) is not None

    def fetch(self, url: str) -> Optional[bytes]:
        return self._objects.get(url)

    def __len__(self) -> int:
        return len(self._objects)


def attachment_path(user_id: str, item_id: str, filename: str, now_ms: int) -> str:
    extension = filename.rsplit(".", 1)[-1] if "." in filename else "bin"
    return f"{user_id}/{item_id}/{now_ms}-{secrets.token_hex(4)}.{extension}"
