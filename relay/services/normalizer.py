from __future__ import annotations

from typing import Any

from relay.schemas.message import (
    MarkupButton,
    MarkupRow,
    NormalizedMessage,
    ReplyMarkup,
    SenderInfo,
)
from relay.utils.time import parse_timestamp, utc_now

PEER_ID_FIELDS = ("user_id", "chat_id", "channel_id")


def id_to_str(value: Any) -> str | None:
    """Render a protocol identifier as a decimal string.

    Every wide integer leaving the normalizer goes through here so that no
    downstream JSON consumer ever sees a number it could round.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    inner = getattr(value, "value", None)
    if isinstance(inner, int) and not isinstance(inner, bool):
        return str(inner)
    text = str(value).strip()
    return text or None


def extract_chat_id(peer: Any) -> str | None:
    if peer is None:
        return None
    if isinstance(peer, int) and not isinstance(peer, bool):
        return str(peer)
    for field in PEER_ID_FIELDS:
        value = getattr(peer, field, None)
        if value:
            return id_to_str(value)
    return None


def extract_sender(message: Any) -> SenderInfo:
    sender = getattr(message, "sender", None) or getattr(message, "_sender", None)
    if sender is None:
        return SenderInfo()
    return SenderInfo(
        first_name=getattr(sender, "first_name", None) or None,
        last_name=getattr(sender, "last_name", None) or None,
        username=getattr(sender, "username", None) or None,
        is_bot=bool(getattr(sender, "bot", False)),
    )


def _decode_callback_data(data: Any) -> str | None:
    if not data:
        return None
    if isinstance(data, str):
        return data
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8", errors="replace")
    return str(data)


def extract_reply_markup(message: Any) -> ReplyMarkup | None:
    markup = getattr(message, "reply_markup", None)
    rows = getattr(markup, "rows", None)
    if not isinstance(rows, (list, tuple)):
        return None
    return ReplyMarkup(
        rows=tuple(
            MarkupRow(
                buttons=tuple(
                    MarkupButton(
                        text=getattr(button, "text", None) or "",
                        url=getattr(button, "url", None) or None,
                        callback_data=_decode_callback_data(
                            getattr(button, "data", None)
                        ),
                    )
                    for button in (getattr(row, "buttons", None) or [])
                )
            )
            for row in rows
        )
    )


def has_media(message: Any) -> bool:
    return bool(
        getattr(message, "media", None)
        or getattr(message, "photo", None)
        or getattr(message, "document", None)
    )


def normalize(
    event: Any,
    *,
    account_id: str,
    bot_token: str | None = None,
) -> NormalizedMessage | None:
    """Turn a raw protocol event into a ``NormalizedMessage``.

    Returns ``None`` when the event has no message or no resolvable chat; the
    caller drops those without retrying.
    """
    message = getattr(event, "message", None)
    if message is None:
        return None

    chat_id = extract_chat_id(getattr(message, "peer_id", None))
    if not chat_id:
        return None

    sender = getattr(message, "sender", None) or getattr(message, "_sender", None)
    text = getattr(message, "text", None) or getattr(message, "message", None) or ""
    if not isinstance(text, str):
        text = str(text)

    return NormalizedMessage(
        account_id=account_id,
        bot_token=bot_token,
        chat_id=chat_id,
        message_id=id_to_str(getattr(message, "id", None)) or "",
        text=text,
        is_outgoing=getattr(message, "out", False) is True,
        timestamp=parse_timestamp(getattr(message, "date", None)) or utc_now(),
        sender=extract_sender(message),
        profile_photo_ref=sender
        or getattr(message, "sender_id", None)
        or chat_id,
        media_ref=message if has_media(message) else None,
        reply_markup=extract_reply_markup(message),
    )
