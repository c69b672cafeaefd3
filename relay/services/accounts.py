from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from relay.core.config import Settings
from relay.schemas.message import NormalizedMessage
from relay.services.backend import AccountNotFoundError, BackendClient
from relay.services.delivery_queue import DeliveryQueue
from relay.services.media import MediaAsset, MediaDeduplicator
from relay.services.normalizer import id_to_str, normalize
from relay.services.photo_cache import PhotoCache
from relay.services.protocol import (
    DeleteMessages,
    EditMessage,
    GetMe,
    ProtocolClient,
    SendMessage,
    TelethonProtocolClient,
    fetch_profile_photo,
)
from relay.services.registry import (
    AccountAlreadyConnectedError,
    AccountRecord,
    AccountSession,
    ConnectionState,
    Registry,
)
from relay.services.retry import RetryExecutor, RetryPolicy
from relay.services.supervisor import ConnectionSupervisor

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[AccountRecord], Awaitable[ProtocolClient]]


class SessionUnavailableError(Exception):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id} is not connected")
        self.account_id = account_id


def telethon_client_factory(settings: Settings) -> ClientFactory:
    async def _create(record: AccountRecord) -> ProtocolClient:
        client = TelethonProtocolClient(
            settings.TELEGRAM_API_ID,
            settings.TELEGRAM_API_HASH,
            connection_retries=settings.CLIENT_CONNECTION_RETRIES,
            retry_delay=settings.CLIENT_RETRY_DELAY_SEC,
        )
        await client.authenticate(record.token or "")
        return client

    return _create


class AccountManager:
    """Owns the account sessions and the path from protocol event to backend."""

    def __init__(
        self,
        settings: Settings,
        backend: BackendClient,
        *,
        client_factory: ClientFactory | None = None,
        executor: RetryExecutor | None = None,
        registry: Registry | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.client_factory = client_factory or telethon_client_factory(settings)
        self.executor = executor or RetryExecutor(
            RetryPolicy(
                max_retries=settings.RETRY_MAX_RETRIES,
                base_delay=settings.RETRY_BASE_DELAY_SEC,
                multiplier=settings.RETRY_MULTIPLIER,
                max_delay=settings.RETRY_MAX_DELAY_SEC,
                timeout=settings.REQUEST_TIMEOUT_SEC,
            )
        )
        self.registry = registry or Registry()
        self.accounts: dict[str, AccountRecord] = {}
        self.queue = DeliveryQueue(
            self._deliver,
            self.executor,
            max_size=settings.DELIVERY_MAX_QUEUE_SIZE,
            max_concurrent=settings.DELIVERY_MAX_CONCURRENT,
            dispatch_interval=settings.DELIVERY_DISPATCH_INTERVAL_SEC,
        )
        self.media = MediaDeduplicator(backend, self.executor)
        self.supervisor = ConnectionSupervisor(
            self.registry,
            self.reauthenticate,
            interval=settings.HEALTH_PROBE_INTERVAL_SEC,
        )

    def start(self) -> None:
        self.queue.start()
        self.supervisor.start()

    async def shutdown(self) -> None:
        await self.supervisor.stop()
        await self.disconnect_all()
        await self.queue.stop(drain_timeout=self.settings.SHUTDOWN_DRAIN_TIMEOUT_SEC)

    async def _deliver(self, message: NormalizedMessage) -> str:
        return await self.backend.post_message(message.to_ingestion_payload())

    async def load_and_connect(self) -> tuple[int, int]:
        logger.info("roster_loading")
        records = await self.backend.list_accounts()
        logger.info("roster_loaded", count=len(records))
        connected = 0
        for index, record in enumerate(records):
            if index and self.settings.CONNECT_PACING_SEC > 0:
                await asyncio.sleep(self.settings.CONNECT_PACING_SEC)
            if await self.connect_account(record):
                connected += 1
        logger.info("accounts_connected", connected=connected, total=len(records))
        return connected, len(records)

    async def reload(self) -> tuple[int, int]:
        await self.disconnect_all()
        return await self.load_and_connect()

    async def connect_by_id(self, account_id: str) -> tuple[bool, AccountRecord]:
        record = self.accounts.get(account_id)
        if record is None:
            record = await self.backend.get_account(account_id)
        return await self.connect_account(record), record

    async def connect_account(self, record: AccountRecord) -> bool:
        if not record.token:
            logger.warning("account_missing_token", account_id=record.id, name=record.name)
            return False
        self.accounts[record.id] = record
        async with self.supervisor.lock_for(record.id):
            return await self._connect(record)

    async def reauthenticate(self, account_id: str) -> bool:
        record = self.accounts.get(account_id)
        if record is None:
            return False
        return await self._connect(record)

    async def _connect(self, record: AccountRecord) -> bool:
        if self.registry.is_connected(record.id):
            logger.info("account_already_connected", account_id=record.id, name=record.name)
            return True

        self.supervisor.watch(record.id, ConnectionState.CONNECTING)
        logger.info("account_connecting", account_id=record.id, name=record.name)
        client: ProtocolClient | None = None
        try:
            client = await self.client_factory(record)
            me = await client.invoke(GetMe())
            session = AccountSession(
                account_id=record.id,
                name=record.name,
                client=client,
                token_prefix=record.token_prefix,
                username=getattr(me, "username", None),
                photo_cache=PhotoCache(self.settings.PHOTO_CACHE_TTL_SEC),
            )
            self.registry.create(session)
        except AccountAlreadyConnectedError:
            if client is not None:
                await self._close_client(client, record.id)
            self.supervisor.watch(record.id, ConnectionState.CONNECTED)
            return True
        except Exception as exc:
            logger.error(
                "account_connect_failed",
                account_id=record.id,
                name=record.name,
                error=str(exc) or type(exc).__name__,
            )
            if client is not None:
                await self._close_client(client, record.id)
            self.supervisor.watch(record.id, ConnectionState.DISCONNECTED)
            return False

        session.unsubscribe = client.subscribe(
            lambda event: self.handle_event(session, event)
        )
        self.supervisor.watch(record.id, ConnectionState.CONNECTED)
        logger.info(
            "account_connected",
            account_id=record.id,
            name=record.name,
            username=session.username,
        )
        return True

    async def _close_client(self, client: ProtocolClient, account_id: str) -> None:
        try:
            await client.disconnect()
        except Exception as exc:
            logger.debug("client_close_failed", account_id=account_id, error=str(exc))

    async def disconnect_account(self, account_id: str) -> bool:
        async with self.supervisor.lock_for(account_id):
            self.supervisor.forget(account_id)
            session = self.registry.remove(account_id)
            if session is None:
                return False
            if session.unsubscribe is not None:
                session.unsubscribe()
            await self._close_client(session.client, account_id)
            logger.info("account_disconnected", account_id=account_id, name=session.name)
            return True

    async def disconnect_all(self) -> None:
        for account_id in set(self.registry.ids()) | set(self.supervisor.states):
            await self.disconnect_account(account_id)

    def require_session(self, account_id: str) -> AccountSession:
        session = self.registry.get(account_id)
        if session is None:
            raise AccountNotFoundError(account_id)
        if not session.is_live():
            raise SessionUnavailableError(account_id)
        return session

    async def handle_event(self, session: AccountSession, event: Any) -> None:
        """Enrich and enqueue one event; events of one session enqueue in arrival order."""
        try:
            async with session.event_lock:
                await self._handle_event(session, event)
        except Exception:
            logger.exception("message_handler_failed", account_id=session.account_id)

    async def _handle_event(self, session: AccountSession, event: Any) -> None:
        message = normalize(
            event,
            account_id=session.account_id,
            bot_token=session.token_prefix,
        )
        if message is None:
            return

        logger.info(
            "message_received",
            account_id=message.account_id,
            direction="outgoing" if message.is_outgoing else "incoming",
            chat_id=message.chat_id,
            message_id=message.message_id,
            has_media=message.has_media,
            sender=message.sender.first_name,
            preview=message.text[:50],
        )

        updates: dict[str, Any] = {}
        if (
            self.settings.PROFILE_PHOTOS_ENABLED
            and not message.is_outgoing
            and not message.sender.is_bot
            and session.is_live()
        ):
            updates["profile_photo_url"] = await session.photo_cache.get(
                message.chat_id,
                lambda: fetch_profile_photo(session.client, message.profile_photo_ref),
            )

        if message.has_media:
            memo: dict[tuple[str | None, str], MediaAsset] = {}
            asset = await self.media.resolve(
                message.media_ref,
                session.client,
                account_id=message.account_id,
                chat_id=message.chat_id,
                memo=memo,
            )
            if asset is not None:
                updates["file_unique_id"] = asset.content_key

        if message.reply_markup is not None:
            logger.info(
                "message_has_buttons",
                account_id=message.account_id,
                buttons=message.reply_markup.button_count,
            )

        if updates:
            message = message.model_copy(update=updates)
        self.queue.enqueue(message)

    async def send_message(self, account_id: str, chat_id: str, text: str) -> str | None:
        session = self.require_session(account_id)
        result = await session.client.invoke(SendMessage(chat_id=chat_id, text=text))
        return id_to_str(getattr(result, "id", None))

    async def edit_message(
        self, account_id: str, chat_id: str, message_id: str, text: str
    ) -> None:
        session = self.require_session(account_id)
        await session.client.invoke(
            EditMessage(chat_id=chat_id, message_id=message_id, text=text)
        )
        logger.info(
            "message_edited",
            account_id=account_id,
            chat_id=chat_id,
            message_id=message_id,
        )

    async def delete_messages(
        self, account_id: str, chat_id: str | None, message_ids: list[str]
    ) -> int:
        session = self.require_session(account_id)
        ids = tuple(str(message_id) for message_id in message_ids)
        await session.client.invoke(DeleteMessages(chat_id=chat_id, message_ids=ids))
        logger.info(
            "messages_deleted",
            account_id=account_id,
            chat_id=chat_id,
            count=len(ids),
        )
        return len(ids)

    def health(self) -> dict[str, Any]:
        accounts = []
        for session in self.registry:
            entry = session.to_dict()
            entry["state"] = self.supervisor.state_of(session.account_id).value
            accounts.append(entry)
        return {
            "connectedBots": len(self.registry),
            "bots": accounts,
            "queue": self.queue.snapshot(),
        }
