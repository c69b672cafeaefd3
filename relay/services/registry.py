from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator

import structlog

from relay.services.photo_cache import PhotoCache
from relay.services.protocol import ProtocolClient, Unsubscribe
from relay.utils.time import isoformat_utc, utc_now

logger = structlog.get_logger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"


class AccountAlreadyConnectedError(Exception):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id} already has a live session")
        self.account_id = account_id


@dataclass(frozen=True)
class AccountRecord:
    """One roster entry: the account and the credential used to log it in."""

    id: str
    name: str
    token: str | None
    active: bool = True

    @property
    def token_prefix(self) -> str | None:
        if not self.token:
            return None
        return str(self.token).split(":", 1)[0]


@dataclass
class AccountSession:
    account_id: str
    name: str
    client: ProtocolClient
    token_prefix: str | None = None
    username: str | None = None
    connected_at: datetime = field(default_factory=utc_now)
    last_health_check: datetime | None = None
    unsubscribe: Unsubscribe | None = None
    photo_cache: PhotoCache = field(default_factory=PhotoCache)
    event_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def is_live(self) -> bool:
        return self.client.is_connected()

    def to_dict(self) -> dict:
        return {
            "id": self.account_id,
            "name": self.name,
            "username": self.username,
            "connectedAt": isoformat_utc(self.connected_at),
            "lastHealthCheck": isoformat_utc(self.last_health_check)
            if self.last_health_check
            else None,
        }


class Registry:
    """Process-wide map of account id to its live session.

    Only the account manager and the supervisor write here, and never for the
    same account at the same time.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, AccountSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._sessions

    def __iter__(self) -> Iterator[AccountSession]:
        return iter(list(self._sessions.values()))

    def create(self, session: AccountSession) -> AccountSession:
        existing = self._sessions.get(session.account_id)
        if existing is not None and existing.is_live():
            raise AccountAlreadyConnectedError(session.account_id)
        if existing is not None:
            logger.info("registry_replaced_stale_session", account_id=session.account_id)
        self._sessions[session.account_id] = session
        return session

    def get(self, account_id: str) -> AccountSession | None:
        return self._sessions.get(account_id)

    def remove(self, account_id: str) -> AccountSession | None:
        return self._sessions.pop(account_id, None)

    def is_connected(self, account_id: str) -> bool:
        session = self._sessions.get(account_id)
        return session is not None and session.is_live()

    def ids(self) -> list[str]:
        return list(self._sessions)
