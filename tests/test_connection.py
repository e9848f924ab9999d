import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from tether_mcp.config import ServerDescriptor
from tether_mcp.mcp.connection import ConnectionStatus, ServerConnection, backoff_delay
from tether_mcp.mcp.errors import (
    AuthError,
    ConnectionFailure,
    DescriptorError,
    ProtocolError,
    ToolExecutionError,
    UnauthorizedError,
)
from tether_mcp.mcp.oauth import OAuthStatus
from tether_mcp.storage import token_key

from .conftest import FakeAuthorizer, FakeNegotiator, FakeOAuthHttpClient, FakeSession, make_tool


class GatedNegotiator(FakeNegotiator):
    """FakeNegotiator whose negotiate() calls wait while the gate is held."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()
        self.gate.set()

    def hold(self) -> None:
        self.gate.clear()
        self.entered.clear()

    async def negotiate(self, *args, **kwargs):
        self.entered.set()
        await self.gate.wait()
        return await super().negotiate(*args, **kwargs)


async def wait_for(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestBackoff:
    def test_doubles_and_caps(self):
        assert [backoff_delay(n) for n in range(1, 8)] == [1, 2, 4, 8, 16, 16, 16]

    def test_non_decreasing_and_bounded(self):
        delays = [backoff_delay(n, 0.5, 10) for n in range(1, 30)]
        assert delays == sorted(delays)
        assert max(delays) == 10


class TestServerConnection:
    @pytest.fixture
    def snapshots(self):
        return []

    @pytest.fixture
    def make_connection(self, store, fast_reconnect, snapshots):
        created = []

        def factory(descriptor, negotiator, **kwargs):
            conn = ServerConnection(
                "conn-1",
                descriptor,
                negotiator,
                store=store,
                reconnect_settings=fast_reconnect,
                observer=snapshots.append,
                **kwargs,
            )
            created.append(conn)
            return conn

        yield factory

    @pytest.fixture(autouse=True)
    async def _cleanup(self, make_connection):
        yield
        # Stop timers left behind by a test
        for task in asyncio.all_tasks():
            if task.get_name().startswith(("mcp-probe-", "mcp-reconnect-")):
                task.cancel()

    async def test_connect_discovers_capabilities(self, make_connection, descriptor, snapshots):
        session = FakeSession([make_tool("get_forecast", "Forecast")], resources_error=RuntimeError("nope"))
        conn = make_connection(descriptor, FakeNegotiator(session=session))

        await conn.connect()

        snapshot = conn.snapshot()
        assert snapshot.status == ConnectionStatus.CONNECTED
        assert snapshot.transport == "streamable_http"
        assert snapshot.connection_attempts == 0
        assert snapshot.last_connected is not None
        assert [t.name for t in snapshot.tools] == ["get_forecast"]
        assert snapshot.tools[0].description == "[Weather] Forecast"
        assert snapshot.resources == ()
        assert snapshot.prompts == ()
        assert [s.status for s in snapshots] == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
        await conn.disconnect()

    async def test_tool_discovery_failure_fails_attempt_and_retries(self, make_connection, descriptor):
        negotiator = FakeNegotiator([FakeSession(tools_error=RuntimeError("boom"))])
        conn = make_connection(descriptor, negotiator)

        with pytest.raises(ProtocolError):
            await conn.connect()

        assert conn.status == ConnectionStatus.FAILED
        assert conn.connection_attempts == 1
        assert "boom" in conn.error
        assert conn.reconnect_pending

        await wait_for(lambda: conn.status == ConnectionStatus.CONNECTED)
        assert conn.connection_attempts == 0
        assert negotiator.attempts == 2
        await conn.disconnect()

    async def test_previous_handle_is_closed_before_new_attempt(self, make_connection, descriptor):
        negotiator = FakeNegotiator()
        conn = make_connection(descriptor, negotiator)

        await conn.connect()
        await conn.reconnect()

        assert negotiator.handles[0].closed
        assert not negotiator.handles[1].closed
        await conn.disconnect()
        assert negotiator.handles[1].closed

    async def test_non_retryable_error_arms_no_timer(self, make_connection, descriptor):
        conn = make_connection(descriptor, FakeNegotiator([DescriptorError("bad url", retryable=False)]))

        with pytest.raises(DescriptorError):
            await conn.connect()

        assert conn.status == ConnectionStatus.FAILED
        assert not conn.reconnect_pending

    async def test_gives_up_after_max_attempts(self, make_connection):
        descriptor = ServerDescriptor(name="Flaky", url="https://flaky.example.com", max_reconnect_attempts=2)
        negotiator = FakeNegotiator([ConnectionFailure("down") for _ in range(10)])
        conn = make_connection(descriptor, negotiator)

        with pytest.raises(ConnectionFailure):
            await conn.connect()

        await wait_for(lambda: conn.connection_attempts == 3 and not conn.reconnect_pending)
        await asyncio.sleep(0.1)
        assert negotiator.attempts == 3
        assert conn.status == ConnectionStatus.FAILED

    async def test_disconnect_cancels_reconnect_timer(self, make_connection, descriptor, fast_reconnect):
        negotiator = FakeNegotiator([ConnectionFailure("down")])
        conn = make_connection(descriptor, negotiator)

        with pytest.raises(ConnectionFailure):
            await conn.connect()
        await conn.disconnect()
        await asyncio.sleep(fast_reconnect.base_delay_seconds * 5)

        assert conn.status == ConnectionStatus.DISCONNECTED
        assert negotiator.attempts == 1

    async def test_disconnect_during_failing_attempt_stays_disconnected(
        self, make_connection, descriptor, fast_reconnect
    ):
        negotiator = GatedNegotiator([ConnectionFailure("refused")])
        negotiator.hold()
        conn = make_connection(descriptor, negotiator)
        attempt = asyncio.create_task(conn.connect())
        await asyncio.wait_for(negotiator.entered.wait(), 1)

        closing = asyncio.create_task(conn.disconnect())
        await asyncio.sleep(0)
        negotiator.gate.set()
        with pytest.raises(ConnectionFailure):
            await attempt
        await closing
        await asyncio.sleep(fast_reconnect.max_delay_seconds * 5)

        assert negotiator.attempts == 1
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert not conn.reconnect_pending

    async def test_disconnect_during_probe_reconnect_stays_disconnected(
        self, make_connection, descriptor, fast_reconnect
    ):
        negotiator = GatedNegotiator()
        conn = make_connection(descriptor, negotiator)
        await conn.connect()

        negotiator.hold()
        negotiator.outcomes.append(ConnectionFailure("down"))
        negotiator.handles[0].alive = False
        await asyncio.wait_for(negotiator.entered.wait(), 1)

        closing = asyncio.create_task(conn.disconnect())
        await asyncio.sleep(0)
        negotiator.gate.set()
        await closing
        await asyncio.sleep(fast_reconnect.max_delay_seconds * 5)

        assert negotiator.attempts == 2
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert not conn.reconnect_pending

    async def test_failed_probe_reconnects(self, make_connection, descriptor):
        negotiator = FakeNegotiator()
        conn = make_connection(descriptor, negotiator)
        await conn.connect()

        negotiator.handles[0].alive = False

        await wait_for(lambda: negotiator.attempts == 2 and conn.is_connected)
        assert negotiator.handles[0].closed
        await conn.disconnect()

    async def test_unauthorized_from_plain_server_is_auth_error(self, make_connection, descriptor):
        conn = make_connection(descriptor, FakeNegotiator([UnauthorizedError("401")]))

        with pytest.raises(AuthError):
            await conn.connect()

        assert conn.status == ConnectionStatus.FAILED
        assert not conn.reconnect_pending

    async def test_call_tool_requires_connection(self, make_connection, descriptor):
        conn = make_connection(descriptor, FakeNegotiator())
        with pytest.raises(ConnectionFailure):
            await conn.call_tool("echo", {})

    async def test_call_tool_failure_is_tool_execution_error(self, make_connection, descriptor):
        session = FakeSession([make_tool("echo")])
        session.results["echo"] = RuntimeError("tool crashed")
        conn = make_connection(descriptor, FakeNegotiator(session=session))
        await conn.connect()

        with pytest.raises(ToolExecutionError) as exc_info:
            await conn.call_tool("echo", {"x": 1})
        assert exc_info.value.session_id == "conn-1"
        assert session.calls == [("echo", {"x": 1})]
        await conn.disconnect()

    async def test_rename_only_notifies(self, make_connection, descriptor, snapshots):
        negotiator = FakeNegotiator()
        conn = make_connection(descriptor, negotiator)
        await conn.connect()

        await conn.update_descriptor(descriptor.model_copy(update={"name": "Weather 2"}))

        assert negotiator.attempts == 1
        assert snapshots[-1].name == "Weather 2"
        await conn.disconnect()


class TestServerConnectionOAuth:
    @pytest.fixture
    def authorizer(self):
        return FakeAuthorizer()

    @pytest.fixture
    def http_client(self):
        return FakeOAuthHttpClient()

    @pytest.fixture
    def make_oauth_connection(self, store, fast_reconnect, authorizer, http_client):
        def factory(descriptor, negotiator):
            return ServerConnection(
                "conn-1",
                descriptor,
                negotiator,
                store=store,
                reconnect_settings=fast_reconnect,
                authorizer=authorizer,
                oauth_http_client=http_client,
            )

        return factory

    async def test_unauthorized_starts_authorization_instead_of_failing(
        self, make_oauth_connection, oauth_descriptor, authorizer
    ):
        conn = make_oauth_connection(oauth_descriptor, FakeNegotiator([UnauthorizedError("401")]))

        await conn.connect()

        snapshot = conn.snapshot()
        assert snapshot.status == ConnectionStatus.CONNECTING
        assert snapshot.awaiting_authorization
        assert snapshot.error is None
        assert snapshot.connection_attempts == 0
        assert not conn.reconnect_pending

        session_id, url = authorizer.requests[0]
        query = parse_qs(urlparse(url).query)
        assert session_id == "conn-1"
        assert query["code_challenge_method"] == ["S256"]
        assert query["state"][0].startswith("mcp:conn-1.")

    async def test_completing_authorization_connects_with_token(
        self, make_oauth_connection, oauth_descriptor, authorizer, store
    ):
        negotiator = FakeNegotiator([UnauthorizedError("401")])
        conn = make_oauth_connection(oauth_descriptor, negotiator)
        await conn.connect()
        state = parse_qs(urlparse(authorizer.requests[0][1]).query)["state"][0]

        await conn.complete_authorization(state, "auth-code")

        assert conn.status == ConnectionStatus.CONNECTED
        assert conn.oauth.status == OAuthStatus.AUTHORIZED
        assert negotiator.headers[-1] == {"Authorization": "Bearer access-1"}
        assert (await store.get(token_key("conn-1")))["access_token"] == "access-1"
        await conn.disconnect()

    async def test_rejected_new_token_is_terminal(self, make_oauth_connection, oauth_descriptor, authorizer):
        negotiator = FakeNegotiator([UnauthorizedError("401"), UnauthorizedError("401")])
        conn = make_oauth_connection(oauth_descriptor, negotiator)
        await conn.connect()
        state = parse_qs(urlparse(authorizer.requests[0][1]).query)["state"][0]

        with pytest.raises(AuthError):
            await conn.complete_authorization(state, "auth-code")

        assert conn.status == ConnectionStatus.FAILED
        assert not conn.reconnect_pending
        assert len(authorizer.requests) == 1

    async def test_failed_exchange_does_not_retry(self, store, fast_reconnect, authorizer, oauth_descriptor):
        conn = ServerConnection(
            "conn-1",
            oauth_descriptor,
            FakeNegotiator([UnauthorizedError("401")]),
            store=store,
            reconnect_settings=fast_reconnect,
            authorizer=authorizer,
            oauth_http_client=FakeOAuthHttpClient(token_status=400, token_body={"error": "invalid_grant"}),
        )
        await conn.connect()
        state = parse_qs(urlparse(authorizer.requests[0][1]).query)["state"][0]

        with pytest.raises(AuthError) as exc_info:
            await conn.complete_authorization(state, "bad-code")

        assert "invalid_grant" in exc_info.value.message
        assert conn.status == ConnectionStatus.FAILED
        assert conn.oauth.status == OAuthStatus.FAILED
        assert not conn.reconnect_pending

    async def test_stale_token_restarts_authorization(
        self, make_oauth_connection, oauth_descriptor, authorizer, store
    ):
        await store.set(token_key("conn-1"), {"access_token": "stale"})
        negotiator = FakeNegotiator([UnauthorizedError("401")])
        conn = make_oauth_connection(oauth_descriptor, negotiator)

        await conn.connect()

        assert negotiator.headers[0] == {"Authorization": "Bearer stale"}
        assert await store.get(token_key("conn-1")) is None
        assert conn.snapshot().awaiting_authorization
        assert len(authorizer.requests) == 1

    async def test_denied_authorization_fails(self, make_oauth_connection, oauth_descriptor, authorizer):
        conn = make_oauth_connection(oauth_descriptor, FakeNegotiator([UnauthorizedError("401")]))
        await conn.connect()
        state = parse_qs(urlparse(authorizer.requests[0][1]).query)["state"][0]

        with pytest.raises(AuthError):
            await conn.fail_authorization(state, "access_denied")

        assert conn.status == ConnectionStatus.FAILED
        assert "access_denied" in conn.error

    async def test_oauth_setup_failure_fails_attempt(self, store, fast_reconnect, authorizer, oauth_descriptor):
        class TimingOutHttpClient(FakeOAuthHttpClient):
            async def get_json(self, url: str):
                raise TimeoutError()

            async def post(self, url: str, *, data=None, json=None):
                raise TimeoutError()

        conn = ServerConnection(
            "conn-1",
            oauth_descriptor,
            FakeNegotiator([UnauthorizedError("401")]),
            store=store,
            reconnect_settings=fast_reconnect,
            authorizer=authorizer,
            oauth_http_client=TimingOutHttpClient(),
        )

        with pytest.raises(AuthError):
            await conn.connect()

        snapshot = conn.snapshot()
        assert snapshot.status == ConnectionStatus.FAILED
        assert snapshot.oauth_status == OAuthStatus.FAILED
        assert snapshot.error
        assert not conn.reconnect_pending
        assert authorizer.requests == []
