import asyncio

from fakes import FakeClient
from relay.services.registry import AccountSession, ConnectionState, Registry
from relay.services.supervisor import ConnectionSupervisor


class Reauth:
    def __init__(self, registry: Registry, *, succeed: bool = True) -> None:
        self.registry = registry
        self.succeed = succeed
        self.calls: list[str] = []
        self.clients: list[FakeClient] = []

    async def __call__(self, account_id: str) -> bool:
        self.calls.append(account_id)
        if not self.succeed:
            return False
        client = FakeClient()
        self.clients.append(client)
        self.registry.create(AccountSession(account_id=account_id, name="Bot", client=client))
        return True


def _setup(client: FakeClient, *, succeed: bool = True):
    registry = Registry()
    registry.create(AccountSession(account_id="bot-1", name="Bot", client=client))
    reauth = Reauth(registry, succeed=succeed)
    supervisor = ConnectionSupervisor(registry, reauth, interval=30)
    supervisor.watch("bot-1")
    transitions: list[ConnectionState] = []
    original = supervisor.set_state

    def _record(account_id: str, state: ConnectionState) -> None:
        transitions.append(state)
        original(account_id, state)

    supervisor.set_state = _record
    return registry, reauth, supervisor, transitions


def test_healthy_session_is_left_alone() -> None:
    client = FakeClient()
    registry, reauth, supervisor, _ = _setup(client)

    state = asyncio.run(supervisor.probe_account("bot-1"))

    assert state is ConnectionState.CONNECTED
    assert client.connect_calls == 0
    assert reauth.calls == []
    assert registry.get("bot-1").last_health_check is not None


def test_dropped_session_reconnects_in_place() -> None:
    client = FakeClient(connected=False, reconnect_ok=True)
    registry, reauth, supervisor, transitions = _setup(client)

    state = asyncio.run(supervisor.probe_account("bot-1"))

    assert state is ConnectionState.CONNECTED
    assert transitions == [
        ConnectionState.DEGRADED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTED,
    ]
    assert client.connect_calls == 1
    assert reauth.calls == []
    assert registry.get("bot-1").client is client


def test_failed_reconnect_discards_handle_and_logs_in_again() -> None:
    client = FakeClient(connected=False, reconnect_ok=False)
    registry, reauth, supervisor, transitions = _setup(client)

    state = asyncio.run(supervisor.probe_account("bot-1"))

    assert state is ConnectionState.CONNECTED
    assert client.disconnect_calls == 1
    assert reauth.calls == ["bot-1"]
    assert registry.get("bot-1").client is reauth.clients[0]
    assert ConnectionState.RECONNECTING in transitions
    assert transitions[-1] is ConnectionState.CONNECTED


def test_failed_login_leaves_account_disconnected_until_next_probe() -> None:
    client = FakeClient(connected=False, reconnect_ok=False)
    registry, reauth, supervisor, _ = _setup(client, succeed=False)

    first = asyncio.run(supervisor.probe_account("bot-1"))
    assert first is ConnectionState.DISCONNECTED
    assert registry.get("bot-1") is None

    reauth.succeed = True
    states = asyncio.run(supervisor.probe_once())

    assert states["bot-1"] is ConnectionState.CONNECTED
    assert reauth.calls == ["bot-1", "bot-1"]
    assert registry.is_connected("bot-1")


def test_reauthenticate_errors_do_not_escape() -> None:
    registry = Registry()

    async def _boom(account_id: str) -> bool:
        raise RuntimeError("auth key unregistered")

    supervisor = ConnectionSupervisor(registry, _boom)
    supervisor.watch("bot-1", ConnectionState.DISCONNECTED)

    states = asyncio.run(supervisor.probe_once())

    assert states["bot-1"] is ConnectionState.DISCONNECTED


def test_forgotten_accounts_are_not_probed() -> None:
    client = FakeClient(connected=False, reconnect_ok=False)
    registry, reauth, supervisor, _ = _setup(client)
    supervisor.forget("bot-1")

    states = asyncio.run(supervisor.probe_once())

    assert states == {}
    assert client.connect_calls == 0
    assert reauth.calls == []


def test_background_loop_probes_on_interval() -> None:
    client = FakeClient(connected=False, reconnect_ok=True)
    registry = Registry()
    registry.create(AccountSession(account_id="bot-1", name="Bot", client=client))
    supervisor = ConnectionSupervisor(registry, Reauth(registry), interval=0.01)
    supervisor.watch("bot-1")

    async def scenario() -> None:
        supervisor.start()
        await asyncio.sleep(0.05)
        await supervisor.stop()

    asyncio.run(scenario())

    assert client.connect_calls >= 1
    assert supervisor.state_of("bot-1") is ConnectionState.CONNECTED
