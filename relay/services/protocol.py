from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

import structlog
from telethon import TelegramClient, events
from telethon.sessions import StringSession
from telethon.tl.functions.photos import GetUserPhotosRequest

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]
Unsubscribe = Callable[[], None]

THUMB_PREFERENCE = ("a", "s", "m")


class ProtocolClientError(Exception):
    pass


@dataclass(frozen=True)
class GetMe:
    pass


@dataclass(frozen=True)
class GetUserPhotos:
    user: Any
    limit: int = 1


@dataclass(frozen=True)
class SendMessage:
    chat_id: str
    text: str


@dataclass(frozen=True)
class EditMessage:
    chat_id: str
    message_id: str
    text: str


@dataclass(frozen=True)
class DeleteMessages:
    chat_id: str | None
    message_ids: tuple[str, ...]
    revoke: bool = True


@runtime_checkable
class ProtocolClient(Protocol):
    """Capabilities the pipeline needs from a live messaging session."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def subscribe(self, handler: EventHandler) -> Unsubscribe: ...

    async def invoke(self, action: Any) -> Any: ...

    async def download_binary(self, ref: Any, thumb: Any = None) -> bytes | None: ...


def _peer(value: str | int) -> str | int:
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    return text


def _pick_thumb(photo: Any) -> Any:
    sizes = list(getattr(photo, "sizes", None) or [])
    for size in sizes:
        if getattr(size, "type", None) in THUMB_PREFERENCE:
            return size
    return sizes[0] if sizes else None


async def fetch_profile_photo(client: ProtocolClient, user: Any) -> str | None:
    """Return the user's latest avatar as a ``data:`` URI, or ``None``."""
    if not client.is_connected():
        return None
    try:
        photos = await client.invoke(GetUserPhotos(user=user, limit=1))
        if not photos:
            return None
        photo = photos[0]
        thumb = _pick_thumb(photo)
        if thumb is None:
            return None
        data = await client.download_binary(photo, thumb=thumb)
    except Exception as exc:
        logger.info("profile_photo_unavailable", error=str(exc) or type(exc).__name__)
        return None
    if not data:
        return None
    encoded = base64.b64encode(bytes(data)).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


class TelethonProtocolClient:
    """``ProtocolClient`` backed by a Telethon ``TelegramClient`` bot session."""

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        *,
        connection_retries: int = 5,
        retry_delay: int = 1,
    ) -> None:
        self._client = TelegramClient(
            StringSession(),
            api_id,
            api_hash,
            connection_retries=connection_retries,
            retry_delay=retry_delay,
            auto_reconnect=True,
            sequential_updates=True,
        )

    async def authenticate(self, bot_token: str) -> None:
        await self._client.start(bot_token=bot_token)

    async def connect(self) -> None:
        await self._client.connect()

    async def disconnect(self) -> None:
        await self._client.disconnect()

    def is_connected(self) -> bool:
        return bool(self._client.is_connected())

    def subscribe(self, handler: EventHandler) -> Unsubscribe:
        event_filter = events.NewMessage()

        async def _on_message(event: Any) -> None:
            try:
                await event.get_sender()
            except Exception as exc:
                logger.debug("sender_resolve_failed", error=str(exc))
            await handler(event)

        self._client.add_event_handler(_on_message, event_filter)

        def _unsubscribe() -> None:
            self._client.remove_event_handler(_on_message, event_filter)

        return _unsubscribe

    async def invoke(self, action: Any) -> Any:
        client = self._client
        if isinstance(action, GetMe):
            return await client.get_me()
        if isinstance(action, GetUserPhotos):
            user = action.user
            if not hasattr(user, "SUBCLASS_OF_ID"):
                user = await client.get_input_entity(_peer(user))
            result = await client(
                GetUserPhotosRequest(user_id=user, offset=0, max_id=0, limit=action.limit)
            )
            return list(getattr(result, "photos", None) or [])
        if isinstance(action, SendMessage):
            return await client.send_message(_peer(action.chat_id), action.text)
        if isinstance(action, EditMessage):
            return await client.edit_message(
                _peer(action.chat_id), int(action.message_id), action.text
            )
        if isinstance(action, DeleteMessages):
            return await client.delete_messages(
                _peer(action.chat_id) if action.chat_id else None,
                [int(message_id) for message_id in action.message_ids],
                revoke=action.revoke,
            )
        raise ProtocolClientError(f"Unsupported action: {type(action).__name__}")

    async def download_binary(self, ref: Any, thumb: Any = None) -> bytes | None:
        return await self._client.download_media(ref, file=bytes, thumb=thumb)
