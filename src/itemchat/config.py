from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class SyncConfig:
    inbox_debounce_ms: int = 800
    send_timeout_s: float = 20.0
    reply_preview_chars: int = 60
    max_image_bytes: int = 5 * 1024 * 1024
    max_document_bytes: int = 10 * 1024 * 1024
    resubscribe_delay_ms: int = 1000
    local_suppression: bool = True

    @property
    def inbox_debounce_s(self) -> float:
        return max(self.inbox_debounce_ms, 0) / 1000

    @property
    def resubscribe_delay_s(self) -> float:
        return max(self.resubscribe_delay_ms, 0) / 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def load_sync_config_from_env() -> SyncConfig:
    defaults = SyncConfig()
    preview_chars = _parse_non_negative_int("ITEMCHAT_REPLY_PREVIEW_CHARS", defaults.reply_preview_chars)
    return SyncConfig(
        inbox_debounce_ms=_parse_non_negative_int("ITEMCHAT_INBOX_DEBOUNCE_MS", defaults.inbox_debounce_ms),
        send_timeout_s=_parse_positive_float("ITEMCHAT_SEND_TIMEOUT_S", defaults.send_timeout_s),
        reply_preview_chars=max(1, preview_chars),
        max_image_bytes=_parse_non_negative_int("ITEMCHAT_MAX_IMAGE_BYTES", defaults.max_image_bytes),
        max_document_bytes=_parse_non_negative_int("ITEMCHAT_MAX_DOCUMENT_BYTES", defaults.max_document_bytes),
        resubscribe_delay_ms=_parse_non_negative_int(
            "ITEMCHAT_RESUBSCRIBE_DELAY_MS", defaults.resubscribe_delay_ms
        ),
        local_suppression=_parse_bool01("ITEMCHAT_LOCAL_SUPPRESSION", defaults.local_suppression),
    )
