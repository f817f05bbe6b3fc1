from __future__ import annotations

from typing import Iterable, Tuple


class ItemChatError(Exception):
    """Base class for errors raised by the chat synchronization core."""


class WriteError(ItemChatError):
    """The message store rejected an insert or flag update."""

    def __init__(self, operation: str, message: str, *, failed_ids: Iterable[int] = ()) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message
        self.failed_ids: Tuple[int, ...] = tuple(failed_ids)


class SendTimeoutError(WriteError):
    def __init__(self, timeout_s: float) -> None:
        super().__init__("append", f"no confirmation within {timeout_s:g}s")
        self.timeout_s = timeout_s


class SubscriptionError(ItemChatError):
    """A realtime channel failed to subscribe or dropped."""


class AttachmentRejected(ItemChatError):
    pass


class DecodeError(ItemChatError):
    """Raised inside the reply codec; never escapes ``decode_body``."""
