import asyncio
from types import SimpleNamespace

from fakes import (
    DocumentAttributeAnimated,
    DocumentAttributeSticker,
    DocumentAttributeVideo,
    FakeClient,
    MessageMediaGeo,
    make_message,
    no_sleep,
    status_error,
)
from relay.services.media import (
    MediaDeduplicator,
    classify_media,
    derived_content_key,
    storage_type,
)
from relay.services.retry import RetryExecutor, RetryPolicy


class FakeAssetStore:
    def __init__(self, *, cached: bool = False, error: Exception | None = None) -> None:
        self.cached = cached
        self.error = error
        self.uploads: list[dict] = []

    async def upload_asset(self, **kwargs) -> dict:
        self.uploads.append(kwargs)
        if self.error is not None:
            raise self.error
        return {
            "success": True,
            "cached": self.cached,
            "publicUrl": f"https://cdn.example.com/{kwargs['file_unique_id']}",
            "storagePath": f"media/{kwargs['file_unique_id']}",
        }


def _dedup(store: FakeAssetStore) -> MediaDeduplicator:
    return MediaDeduplicator(store, RetryExecutor(RetryPolicy(max_retries=1), sleep=no_sleep))


def _document(mime_type: str | None, attributes: list, doc_id: int | None = 5001) -> SimpleNamespace:
    return SimpleNamespace(id=doc_id, access_hash=-998877, mime_type=mime_type, attributes=attributes)


def test_classifies_sticker_subtypes() -> None:
    sticker = DocumentAttributeSticker(alt=":)", stickerset=object())
    static = classify_media(make_message(document=_document("image/webp", [sticker])))
    video = classify_media(make_message(document=_document("video/webm", [sticker])))
    animated = classify_media(
        make_message(document=_document("application/x-tgsticker", [sticker]))
    )
    assert (static.kind, static.sub_type, static.emoji) == ("sticker", "static", ":)")
    assert video.sub_type == "video"
    assert animated.sub_type == "animated"
    assert storage_type(static) == ("image/webp", "sticker")
    assert storage_type(video) == ("video/webm", "sticker")


def test_classifies_animation_and_documents() -> None:
    gif = classify_media(
        make_message(document=_document("video/mp4", [DocumentAttributeAnimated()]))
    )
    silent = classify_media(
        make_message(document=_document("video/mp4", [DocumentAttributeVideo(nosound=True)]))
    )
    clip = classify_media(
        make_message(document=_document("video/mp4", [DocumentAttributeVideo(nosound=False)]))
    )
    voice = classify_media(make_message(document=_document("audio/ogg", [])))
    pdf = classify_media(make_message(document=_document(None, [])))

    assert (gif.kind, gif.sub_type) == ("animation", "gif")
    assert storage_type(gif) == ("video/mp4", "animation")
    assert silent.kind == "animation"
    assert clip.kind == "video"
    assert voice.kind == "audio"
    assert (pdf.kind, pdf.mime_type) == ("document", "application/octet-stream")


def test_classifies_photos_and_unknown_media() -> None:
    photo = classify_media(make_message(photo=SimpleNamespace(id=77, access_hash=1)))
    unknown = classify_media(make_message(media=MessageMediaGeo()))
    assert (photo.kind, photo.mime_type) == ("photo", "image/jpeg")
    assert unknown.kind == "unknown"
    assert unknown.media_id is None
    assert classify_media(make_message()) is None


def test_derived_key_is_stable_and_prefixed() -> None:
    key = derived_content_key(b"same bytes")
    assert key.startswith("gen_")
    assert len(key) == len("gen_") + 16
    assert key == derived_content_key(b"same bytes")
    assert key != derived_content_key(b"other bytes")


def test_identical_bytes_get_identical_key_in_any_order() -> None:
    store = FakeAssetStore()
    dedup = _dedup(store)
    client = FakeClient(default_download=b"\x89PNG same content")
    first = make_message(message_id=1, media=MessageMediaGeo())
    second = make_message(message_id=2, media=MessageMediaGeo())

    async def scenario(order):
        keys = []
        for message in order:
            asset = await dedup.resolve(message, client, account_id="bot-1", chat_id="100")
            keys.append(asset.content_key)
        return keys

    forward = asyncio.run(scenario([first, second]))
    backward = asyncio.run(scenario([second, first]))
    assert forward[0] == forward[1] == backward[0] == backward[1]
    assert forward[0].startswith("gen_")


def test_stable_media_id_is_preferred_and_uploaded() -> None:
    store = FakeAssetStore(cached=True)
    dedup = _dedup(store)
    client = FakeClient(downloads={2**62: b"photo-bytes"})
    message = make_message(photo=SimpleNamespace(id=2**62, access_hash=-5))

    asset = asyncio.run(dedup.resolve(message, client, account_id="bot-1", chat_id="100"))

    assert asset is not None
    assert asset.content_key == "4611686018427387904"
    assert asset.cached is True
    assert asset.size_bytes == len(b"photo-bytes")
    upload = store.uploads[0]
    assert upload["file_unique_id"] == "4611686018427387904"
    assert upload["file_id"] == "-5"
    assert upload["mime_type"] == "image/jpeg"
    assert upload["media_type"] == "photo"
    assert upload["account_id"] == "bot-1"


def test_animated_stickers_are_skipped_without_download() -> None:
    store = FakeAssetStore()
    client = FakeClient()
    sticker = DocumentAttributeSticker(alt=None, stickerset=object())
    message = make_message(document=_document("application/x-tgsticker", [sticker]))

    asset = asyncio.run(_dedup(store).resolve(message, client, account_id="bot-1"))

    assert asset is None
    assert client.downloaded == []
    assert store.uploads == []


def test_failed_or_empty_download_means_no_media() -> None:
    store = FakeAssetStore()
    empty = FakeClient(default_download=b"")
    broken = FakeClient()
    broken.download_error = RuntimeError("file reference expired")
    message = make_message(photo=SimpleNamespace(id=9, access_hash=1))

    dedup = _dedup(store)
    assert asyncio.run(dedup.resolve(message, empty, account_id="bot-1")) is None
    assert asyncio.run(dedup.resolve(message, broken, account_id="bot-1")) is None
    assert store.uploads == []


def test_disconnected_session_skips_download() -> None:
    client = FakeClient(connected=False)
    message = make_message(photo=SimpleNamespace(id=9, access_hash=1))

    asset = asyncio.run(_dedup(FakeAssetStore()).resolve(message, client, account_id="bot-1"))

    assert asset is None
    assert client.downloaded == []


def test_rejected_upload_returns_none() -> None:
    store = FakeAssetStore(error=status_error(413))
    client = FakeClient()
    message = make_message(photo=SimpleNamespace(id=9, access_hash=1))

    asset = asyncio.run(_dedup(store).resolve(message, client, account_id="bot-1"))

    assert asset is None
    assert len(store.uploads) == 1


def test_memo_short_circuits_repeat_download_in_same_chat() -> None:
    store = FakeAssetStore()
    client = FakeClient()
    dedup = _dedup(store)
    message = make_message(photo=SimpleNamespace(id=31337, access_hash=1))

    async def scenario():
        memo = {}
        first = await dedup.resolve(message, client, account_id="bot-1", chat_id="100", memo=memo)
        again = await dedup.resolve(message, client, account_id="bot-1", chat_id="100", memo=memo)
        other_chat = await dedup.resolve(
            message, client, account_id="bot-1", chat_id="200", memo=memo
        )
        return first, again, other_chat

    first, again, other_chat = asyncio.run(scenario())

    assert first is again
    assert other_chat is not None
    assert len(client.downloaded) == 2
    assert len(store.uploads) == 2
