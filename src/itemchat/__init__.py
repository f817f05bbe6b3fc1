"""Per-listing buyer/seller messaging: store, realtime routing and optimistic sync."""

from .body import PlainText, ReplyAnnotation, WithReply, decode, decode_body, encode_body, encode_reply
from .bus import BusEvent, NotificationBus
from .config import SyncConfig, load_sync_config_from_env
from .errors import AttachmentRejected, ItemChatError, SendTimeoutError, SubscriptionError, WriteError
from .feed import ChangeFeed, ChangeFilter, Subscription
from .models import ChangeEvent, ChangeOperation, ConversationKey, DeleteDirection, Message, PendingMessage
from .session import ChatSession
from .store import DeleteScope, InMemoryMessageStore, MessageFilter

__all__ = [
    "AttachmentRejected",
    "BusEvent",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeFilter",
    "ChangeOperation",
    "ChatSession",
    "ConversationKey",
    "DeleteDirection",
    "DeleteScope",
    "InMemoryMessageStore",
    "ItemChatError",
    "Message",
    "MessageFilter",
    "NotificationBus",
    "PendingMessage",
    "PlainText",
    "ReplyAnnotation",
    "SendTimeoutError",
    "SubscriptionError",
    "Subscription",
    "SyncConfig",
    "WithReply",
    "WriteError",
    "decode",
    "decode_body",
    "encode_body",
    "encode_reply",
    "load_sync_config_from_env",
]
