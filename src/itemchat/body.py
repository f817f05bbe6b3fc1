"""Reply annotations embedded in a message body.

A body is stored as a single string. A reply carries a JSON annotation in
front of the typed text::

    :::REPLY{"id": 42, "name": "You", "text": "Is it still...", "isMedia": false}:::Yes it is

Everything else is plain text. Decoding is total: a body that starts with the
reply tag but does not carry a well-formed annotation is returned unchanged
as plain text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .errors import DecodeError
from .models import Message, PendingMessage

REPLY_TAG = ":::REPLY"
REPLY_END = ":::"
DEFAULT_PREVIEW_CHARS = 60
ELLIPSIS = "..."
SELF_LABEL = "You"
MEDIA_PREVIEW = "Photo"
FALLBACK_LABEL = "User"

_decoder = json.JSONDecoder()


@dataclass(frozen=True)
class ReplyAnnotation:
    original_message_id: Union[int, str]
    original_sender_label: str
    truncated_preview: str
    is_media: bool

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.original_message_id,
                "name": self.original_sender_label,
                "text": self.truncated_preview,
                "isMedia": self.is_media,
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )


@dataclass(frozen=True)
class PlainText:
    text: str


@dataclass(frozen=True)
class WithReply:
    annotation: ReplyAnnotation
    text: str


MessageBody = Union[PlainText, WithReply]


def encode_body(body: MessageBody) -> str:
    if isinstance(body, WithReply):
        return f"{REPLY_TAG}{body.annotation.to_json()}{REPLY_END}{body.text}"
    return body.text


def _parse_annotation(raw: str) -> Tuple[ReplyAnnotation, str]:
    try:
        payload, end = _decoder.raw_decode(raw, len(REPLY_TAG))
    except (ValueError, RecursionError) as exc:
        raise DecodeError("annotation is not valid json") from exc
    if not raw.startswith(REPLY_END, end):
        raise DecodeError("annotation terminator missing")
    if not isinstance(payload, dict):
        raise DecodeError("annotation must be an object")

    message_id = payload.get("id")
    name = payload.get("name")
    text = payload.get("text")
    is_media = payload.get("isMedia", False)
    if isinstance(message_id, bool) or not isinstance(message_id, (int, str)):
        raise DecodeError("annotation id must be an int or string")
    if not isinstance(name, str) or not isinstance(text, str):
        raise DecodeError("annotation name and text must be strings")
    if not isinstance(is_media, bool):
        raise DecodeError("annotation isMedia must be a boolean")

    annotation = ReplyAnnotation(
        original_message_id=message_id,
        original_sender_label=name,
        truncated_preview=text,
        is_media=is_media,
    )
    return annotation, raw[end + len(REPLY_END) :]


def decode_body(raw: object) -> MessageBody:
    """Decode a stored body; never raises."""

    if not isinstance(raw, str):
        return PlainText("" if raw is None else str(raw))
    if not raw.startswith(REPLY_TAG):
        return PlainText(raw)
    try:
        annotation, text = _parse_annotation(raw)
    except DecodeError:
        return PlainText(raw)
    return WithReply(annotation=annotation, text=text)


def decode(raw: object) -> Tuple[Optional[ReplyAnnotation], str]:
    body = decode_body(raw)
    if isinstance(body, WithReply):
        return body.annotation, body.text
    return None, body.text


def display_text(raw: object) -> str:
    return decode(raw)[1]


def quoted_preview(annotation: ReplyAnnotation) -> str:
    if annotation.is_media:
        return MEDIA_PREVIEW
    return annotation.truncated_preview


def truncate_preview(text: str, limit: int = DEFAULT_PREVIEW_CHARS) -> str:
    if len(text) > limit:
        return text[:limit] + ELLIPSIS
    return text


def build_reply(
    original: Message | PendingMessage,
    reply_text: str,
    viewer_id: str,
    *,
    counterparty_label: str | None = None,
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
) -> WithReply:
    """Build a reply body quoting ``original`` as seen by ``viewer_id``.

    The preview is taken from the decoded text of ``original`` so a reply to a
    reply quotes the typed text, never the nested annotation.
    """

    quoted = display_text(original.body)
    if original.sender_id == viewer_id:
        label = SELF_LABEL
    else:
        label = counterparty_label or FALLBACK_LABEL
    original_id = original.temp_id if isinstance(original, PendingMessage) else original.id
    annotation = ReplyAnnotation(
        original_message_id=original_id,
        original_sender_label=label,
        truncated_preview=truncate_preview(quoted, preview_chars),
        is_media=bool(original.attachment_url),
    )
    return WithReply(annotation=annotation, text=reply_text)


def encode_reply(
    original: Message | PendingMessage,
    reply_text: str,
    viewer_id: str,
    *,
    counterparty_label: str | None = None,
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
) -> str:
    return encode_body(
        build_reply(
            original,
            reply_text,
            viewer_id,
            counterparty_label=counterparty_label,
            preview_chars=preview_chars,
        )
    )
