from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

import httpx

from relay.services.protocol import (
    DeleteMessages,
    EditMessage,
    GetMe,
    GetUserPhotos,
    SendMessage,
)


class DocumentAttributeSticker(SimpleNamespace):
    pass


class DocumentAttributeAnimated(SimpleNamespace):
    pass


class DocumentAttributeVideo(SimpleNamespace):
    pass


class MessageMediaGeo(SimpleNamespace):
    pass


class FakeClient:
    def __init__(
        self,
        *,
        connected: bool = True,
        reconnect_ok: bool = True,
        username: str = "relay_bot",
        downloads: dict[int, bytes] | None = None,
        default_download: bytes | None = b"binary",
        photos: list[Any] | None = None,
    ) -> None:
        self.connected = connected
        self.reconnect_ok = reconnect_ok
        self.username = username
        self.downloads = downloads or {}
        self.default_download = default_download
        self.photos = photos or []
        self.handlers: list[Any] = []
        self.invoked: list[Any] = []
        self.downloaded: list[Any] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.download_error: Exception | None = None
        self.next_message_id = 9_007_199_254_740_993

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.reconnect_ok:
            self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def subscribe(self, handler):
        self.handlers.append(handler)

        def _unsubscribe() -> None:
            self.handlers.remove(handler)

        return _unsubscribe

    async def emit(self, event: Any) -> None:
        for handler in list(self.handlers):
            await handler(event)

    async def invoke(self, action: Any) -> Any:
        self.invoked.append(action)
        if isinstance(action, GetMe):
            return SimpleNamespace(username=self.username)
        if isinstance(action, GetUserPhotos):
            return list(self.photos)
        if isinstance(action, SendMessage):
            return SimpleNamespace(id=self.next_message_id)
        if isinstance(action, (EditMessage, DeleteMessages)):
            return True
        raise AssertionError(f"unexpected action {action!r}")

    async def download_binary(self, ref: Any, thumb: Any = None) -> bytes | None:
        self.downloaded.append((ref, thumb))
        if self.download_error is not None:
            raise self.download_error
        key = getattr(ref, "id", None)
        if key in self.downloads:
            return self.downloads[key]
        return self.default_download


def make_message(
    *,
    chat_id: int | None = 777000111222333444,
    message_id: int = 42,
    text: str = "hello",
    out: bool = False,
    sender: Any = None,
    media: Any = None,
    photo: Any = None,
    document: Any = None,
    reply_markup: Any = None,
    date: datetime | None = None,
) -> SimpleNamespace:
    peer = SimpleNamespace(user_id=chat_id) if chat_id is not None else None
    if sender is None:
        sender = SimpleNamespace(
            first_name="Ana", last_name="Souza", username="ana", bot=False
        )
    return SimpleNamespace(
        peer_id=peer,
        id=message_id,
        text=text,
        message=text,
        out=out,
        date=date or datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc),
        sender=sender,
        sender_id=getattr(sender, "id", None),
        media=media,
        photo=photo,
        document=document,
        reply_markup=reply_markup,
    )


def make_event(**kwargs: Any) -> SimpleNamespace:
    return SimpleNamespace(message=make_message(**kwargs))


def status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://backend.example.com/functions/v1/sync")
    response = httpx.Response(status_code, request=request, text="error")
    return httpx.HTTPStatusError(
        f"HTTP {status_code}", request=request, response=response
    )


async def no_sleep(delay: float) -> None:
    return None
