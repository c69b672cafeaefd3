from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SEC = 3600.0


@dataclass
class CacheEntry:
    value: str
    fetched_at: float


class PhotoCache:
    """Per-chat avatar cache with a freshness window.

    Only successful fetches are stored, so a chat without a photo is asked
    again on its next message instead of being pinned to ``None``.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SEC,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, chat_id: str) -> str | None:
        entry = self._entries.get(chat_id)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.ttl:
            del self._entries[chat_id]
            return None
        return entry.value

    async def get(
        self,
        chat_id: str,
        fetch: Callable[[], Awaitable[str | None]],
    ) -> str | None:
        cached = self.peek(chat_id)
        if cached is not None:
            return cached

        value = await fetch()
        if value:
            self._prune()
            self._entries[chat_id] = CacheEntry(value=value, fetched_at=self._clock())
        else:
            self._entries.pop(chat_id, None)
        return value

    def _prune(self) -> None:
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items() if now - entry.fetched_at >= self.ttl
        ]
        for key in expired:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()
