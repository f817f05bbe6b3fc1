"""Local scratch space for per-conversation "deleted at" markers."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Optional

from .models import ConversationKey

DEFAULT_MARKERS_PATH = Path.home() / ".itemchat" / "deleted_conversations.json"


class InMemoryMarkerStore:
    def __init__(self) -> None:
        self._markers: Dict[ConversationKey, int] = {}

    def get(self, key: ConversationKey) -> Optional[int]:
        return self._markers.get(key)

    def set(self, key: ConversationKey, deleted_at_ms: int) -> int:
        current = self._markers.get(key, 0)
        value = max(current, int(deleted_at_ms))
        self._markers[key] = value
        return value

    def clear(self, key: ConversationKey) -> None:
        self._markers.pop(key, None)

    def snapshot(self) -> Dict[ConversationKey, int]:
        return dict(self._markers)


def _atomic_write_json(path: Path, payload: object) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_markers(path: Path) -> Dict[ConversationKey, int]:
    try:
        data = json.loads(path.expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, ValueError):
        return {}

    if not isinstance(data, dict) or not isinstance(data.get("markers"), list):
        return {}
    parsed: Dict[ConversationKey, int] = {}
    for entry in data["markers"]:
        if not isinstance(entry, dict):
            continue
        item_id = entry.get("item_id")
        counterparty_id = entry.get("counterparty_id")
        if not isinstance(item_id, str) or not isinstance(counterparty_id, str):
            continue
        try:
            parsed[ConversationKey(item_id, counterparty_id)] = int(entry["deleted_at_ms"])
        except (KeyError, ValueError, TypeError):
            continue
    return parsed


class JsonMarkerStore(InMemoryMarkerStore):
    """Marker store persisted to a JSON file with atomic replace on write."""

    def __init__(self, path: Path | str = DEFAULT_MARKERS_PATH) -> None:
        super().__init__()
        self.path = Path(path).expanduser()
        self._markers = _load_markers(self.path)

    def set(self, key: ConversationKey, deleted_at_ms: int) -> int:
        value = super().set(key, deleted_at_ms)
        self._save()
        return value

    def clear(self, key: ConversationKey) -> None:
        super().clear(key)
        self._save()

    def _save(self) -> None:
        records = [
            {"item_id": key.item_id, "counterparty_id": key.counterparty_id, "deleted_at_ms": value}
            for key, value in sorted(self._markers.items(), key=lambda kv: (kv[0].item_id, kv[0].counterparty_id))
        ]
        _atomic_write_json(self.path, {"markers": records})
