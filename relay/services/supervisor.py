from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog

from relay.services.registry import AccountSession, ConnectionState, Registry
from relay.utils.time import utc_now

logger = structlog.get_logger(__name__)

Reauthenticate = Callable[[str], Awaitable[bool]]


class ConnectionSupervisor:
    """Keeps every watched account's session alive.

    Each probe cycle checks the registered handle. A handle that reports not
    connected is first reconnected in place; if that fails it is discarded and
    the account is logged in again from its stored credential. Work for one
    account is serialized through ``lock_for``.
    """

    def __init__(
        self,
        registry: Registry,
        reauthenticate: Reauthenticate,
        *,
        interval: float = 30.0,
    ) -> None:
        self.registry = registry
        self._reauthenticate = reauthenticate
        self.interval = interval
        self.states: dict[str, ConnectionState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._stop: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    def lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def state_of(self, account_id: str) -> ConnectionState:
        return self.states.get(account_id, ConnectionState.DISCONNECTED)

    def set_state(self, account_id: str, state: ConnectionState) -> None:
        previous = self.states.get(account_id)
        self.states[account_id] = state
        if previous is not state:
            logger.info(
                "connection_state_changed",
                account_id=account_id,
                previous=previous.value if previous else None,
                state=state.value,
            )

    def watch(self, account_id: str, state: ConnectionState = ConnectionState.CONNECTED) -> None:
        self.set_state(account_id, state)

    def forget(self, account_id: str) -> None:
        self.states.pop(account_id, None)
        lock = self._locks.get(account_id)
        if lock is not None and not lock.locked():
            self._locks.pop(account_id, None)

    async def probe_once(self) -> dict[str, ConnectionState]:
        for account_id in list(self.states):
            try:
                await self.probe_account(account_id)
            except Exception:
                logger.exception("connection_probe_failed", account_id=account_id)
        return dict(self.states)

    async def probe_account(self, account_id: str) -> ConnectionState:
        lock = self.lock_for(account_id)
        if lock.locked():
            return self.state_of(account_id)
        async with lock:
            if account_id not in self.states:
                return ConnectionState.DISCONNECTED
            session = self.registry.get(account_id)
            if session is None:
                return await self._login_again(account_id)
            if session.is_live():
                session.last_health_check = utc_now()
                self.set_state(account_id, ConnectionState.CONNECTED)
                return ConnectionState.CONNECTED

            self.set_state(account_id, ConnectionState.DEGRADED)
            self.set_state(account_id, ConnectionState.RECONNECTING)
            if await self._reconnect_in_place(session):
                session.last_health_check = utc_now()
                self.set_state(account_id, ConnectionState.CONNECTED)
                return ConnectionState.CONNECTED

            await self._discard(session)
            return await self._login_again(account_id)

    async def _reconnect_in_place(self, session: AccountSession) -> bool:
        try:
            await session.client.connect()
        except Exception as exc:
            logger.warning(
                "session_reconnect_failed",
                account_id=session.account_id,
                error=str(exc) or type(exc).__name__,
            )
            return False
        return session.is_live()

    async def _discard(self, session: AccountSession) -> None:
        if session.unsubscribe is not None:
            try:
                session.unsubscribe()
            except Exception as exc:
                logger.debug("session_unsubscribe_failed", error=str(exc))
        try:
            await session.client.disconnect()
        except Exception as exc:
            logger.debug("session_disconnect_failed", error=str(exc))
        self.registry.remove(session.account_id)
        logger.info("session_discarded", account_id=session.account_id)

    async def _login_again(self, account_id: str) -> ConnectionState:
        self.set_state(account_id, ConnectionState.RECONNECTING)
        try:
            ok = await self._reauthenticate(account_id)
        except Exception as exc:
            logger.error(
                "session_reauthenticate_failed",
                account_id=account_id,
                error=str(exc) or type(exc).__name__,
            )
            ok = False
        if account_id not in self.states:
            return ConnectionState.DISCONNECTED
        state = ConnectionState.CONNECTED if ok else ConnectionState.DISCONNECTED
        self.set_state(account_id, state)
        return state

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop))

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.probe_once()
