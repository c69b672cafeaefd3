from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from typing import Any

import structlog

from relay.services.normalizer import id_to_str
from relay.services.protocol import ProtocolClient
from relay.services.retry import RetryExecutor

logger = structlog.get_logger(__name__)

DERIVED_KEY_PREFIX = "gen_"
ANIMATED_STICKER_MIME = "application/x-tgsticker"
VIDEO_STICKER_MIME = "video/webm"
DEFAULT_MIME = "application/octet-stream"


@dataclass(frozen=True)
class MediaInfo:
    kind: str
    sub_type: str | None
    mime_type: str
    media_id: Any
    access_hash: Any
    media_object: Any
    emoji: str | None = None

    @property
    def description(self) -> str:
        return f"{self.kind}/{self.sub_type}" if self.sub_type else self.kind


@dataclass(frozen=True)
class MediaAsset:
    content_key: str
    mime_type: str
    size_bytes: int
    media_type: str
    public_url: str | None = None
    storage_path: str | None = None
    cached: bool = False


def _class_name(obj: Any) -> str:
    return type(obj).__name__


def _find_attr(attributes: list[Any], *class_names: str) -> Any:
    for attr in attributes:
        if _class_name(attr) in class_names:
            return attr
    return None


def classify_media(message: Any) -> MediaInfo | None:
    """Work out what kind of binary a message carries, if any."""
    media = getattr(message, "media", None)
    photo = getattr(message, "photo", None) or getattr(media, "photo", None)
    document = getattr(message, "document", None) or getattr(media, "document", None)

    if document is not None:
        attributes = list(getattr(document, "attributes", None) or [])
        mime_type = getattr(document, "mime_type", None)

        sticker_attr = _find_attr(attributes, "DocumentAttributeSticker")
        if sticker_attr is None:
            sticker_attr = next(
                (a for a in attributes if getattr(a, "stickerset", None) is not None),
                None,
            )
        if sticker_attr is not None:
            if mime_type == ANIMATED_STICKER_MIME:
                sub_type = "animated"
            elif mime_type == VIDEO_STICKER_MIME:
                sub_type = "video"
            else:
                sub_type = "static"
            return MediaInfo(
                kind="sticker",
                sub_type=sub_type,
                mime_type=mime_type or "image/webp",
                media_id=getattr(document, "id", None),
                access_hash=getattr(document, "access_hash", None),
                media_object=document,
                emoji=getattr(sticker_attr, "alt", None) or None,
            )

        animated = _find_attr(attributes, "DocumentAttributeAnimated") is not None
        silent_video = any(
            _class_name(a) == "DocumentAttributeVideo" and getattr(a, "nosound", False)
            for a in attributes
        )
        if animated or (mime_type == "video/mp4" and silent_video):
            return MediaInfo(
                kind="animation",
                sub_type="gif",
                mime_type=mime_type or "video/mp4",
                media_id=getattr(document, "id", None),
                access_hash=getattr(document, "access_hash", None),
                media_object=document,
            )

        mime_type = mime_type or DEFAULT_MIME
        kind = "document"
        if mime_type.startswith("video/"):
            kind = "video"
        elif mime_type.startswith("audio/"):
            kind = "audio"
        elif mime_type.startswith("image/"):
            kind = "photo"
        return MediaInfo(
            kind=kind,
            sub_type=None,
            mime_type=mime_type,
            media_id=getattr(document, "id", None),
            access_hash=getattr(document, "access_hash", None),
            media_object=document,
        )

    if photo is not None:
        return MediaInfo(
            kind="photo",
            sub_type=None,
            mime_type="image/jpeg",
            media_id=getattr(photo, "id", None),
            access_hash=getattr(photo, "access_hash", None),
            media_object=photo,
        )

    if media is not None:
        return MediaInfo(
            kind="unknown",
            sub_type=_class_name(media),
            mime_type=DEFAULT_MIME,
            media_id=None,
            access_hash=None,
            media_object=message,
        )
    return None


def storage_type(info: MediaInfo) -> tuple[str, str]:
    """Canonical ``(mime_type, media_type)`` the asset store keeps for ``info``."""
    if info.kind == "sticker":
        if info.sub_type == "video":
            return VIDEO_STICKER_MIME, "sticker"
        return "image/webp", "sticker"
    if info.kind == "animation":
        return "video/mp4", "animation"
    return info.mime_type, info.kind


def derived_content_key(data: bytes) -> str:
    digest = hashlib.md5(data, usedforsecurity=False).hexdigest()
    return f"{DERIVED_KEY_PREFIX}{digest[:16]}"


def content_key_for(info: MediaInfo, data: bytes) -> str:
    return id_to_str(info.media_id) or derived_content_key(data)


class MediaDeduplicator:
    """Downloads message media once and hands it to the backend asset store.

    The backend decides whether a content key is already stored. Locally we
    only avoid downloading the same item twice within one handler call via
    the ``memo`` mapping supplied by the caller.
    """

    def __init__(self, backend: Any, executor: RetryExecutor) -> None:
        self.backend = backend
        self.executor = executor

    async def resolve(
        self,
        media_ref: Any,
        client: ProtocolClient,
        *,
        account_id: str,
        chat_id: str | None = None,
        memo: dict[tuple[str | None, str], MediaAsset] | None = None,
    ) -> MediaAsset | None:
        try:
            return await self._resolve(
                media_ref, client, account_id=account_id, chat_id=chat_id, memo=memo
            )
        except Exception as exc:
            logger.error(
                "media_resolve_failed",
                account_id=account_id,
                chat_id=chat_id,
                error=str(exc) or type(exc).__name__,
            )
            return None

    async def _resolve(
        self,
        media_ref: Any,
        client: ProtocolClient,
        *,
        account_id: str,
        chat_id: str | None,
        memo: dict[tuple[str | None, str], MediaAsset] | None,
    ) -> MediaAsset | None:
        info = classify_media(media_ref)
        if info is None:
            return None

        logger.info(
            "media_detected",
            account_id=account_id,
            chat_id=chat_id,
            media=info.description,
            mime_type=info.mime_type,
        )

        if info.kind == "sticker" and info.sub_type == "animated":
            logger.info("media_skipped_unsupported", account_id=account_id, media=info.description)
            return None

        stable_key = id_to_str(info.media_id)
        if memo is not None and stable_key and (chat_id, stable_key) in memo:
            return memo[(chat_id, stable_key)]

        if not client.is_connected():
            logger.info("media_skipped_disconnected", account_id=account_id, chat_id=chat_id)
            return None

        try:
            data = await client.download_binary(info.media_object)
        except Exception as exc:
            logger.warning(
                "media_download_failed",
                account_id=account_id,
                chat_id=chat_id,
                error=str(exc) or type(exc).__name__,
            )
            return None
        if isinstance(data, str):
            data = data.encode("latin-1")
        if not data:
            logger.warning("media_download_empty", account_id=account_id, chat_id=chat_id)
            return None
        data = bytes(data)

        content_key = content_key_for(info, data)
        if memo is not None and (chat_id, content_key) in memo:
            return memo[(chat_id, content_key)]

        mime_type, media_type = storage_type(info)
        logger.info(
            "media_downloaded",
            account_id=account_id,
            size_kb=round(len(data) / 1024),
            mime_type=mime_type,
            content_key=content_key,
        )

        result = await self.executor.attempt(
            lambda: self.backend.upload_asset(
                base64_data=base64.b64encode(data).decode("ascii"),
                mime_type=mime_type,
                file_unique_id=content_key,
                file_id=id_to_str(info.access_hash),
                account_id=account_id,
                media_type=media_type,
            ),
            label="upload_asset",
        )
        response = result.value if result.ok else None
        if not isinstance(response, dict) or response.get("success") is not True:
            logger.warning(
                "media_upload_failed",
                account_id=account_id,
                content_key=content_key,
                outcome=result.outcome.value,
            )
            return None

        asset = MediaAsset(
            content_key=content_key,
            mime_type=mime_type,
            size_bytes=len(data),
            media_type=media_type,
            public_url=response.get("publicUrl"),
            storage_path=response.get("storagePath"),
            cached=bool(response.get("cached")),
        )
        if asset.cached:
            logger.info("media_already_stored", account_id=account_id, content_key=content_key)
        else:
            logger.info(
                "media_stored",
                account_id=account_id,
                content_key=content_key,
                storage_path=asset.storage_path,
            )
        if memo is not None:
            memo[(chat_id, content_key)] = asset
        return asset
