from urllib.parse import parse_qs, urlparse

import pytest

from tether_mcp.config import MCPSettings, ServerDescriptor
from tether_mcp.mcp.connection import ConnectionStatus
from tether_mcp.mcp.connection_manager import ConnectionManager
from tether_mcp.mcp.errors import AuthError, ConnectionFailure, UnauthorizedError
from tether_mcp.storage import CONNECTIONS_KEY, MemoryStore, token_key

from .conftest import FakeAuthorizer, FakeNegotiator, FakeOAuthHttpClient, FakeSession, make_tool


def weather_session() -> FakeSession:
    return FakeSession([make_tool("get_forecast")])


class TestConnectionManager:
    @pytest.fixture
    def negotiator(self):
        return FakeNegotiator(session=weather_session())

    @pytest.fixture
    def authorizer(self):
        return FakeAuthorizer()

    @pytest.fixture
    async def manager(self, store, negotiator, authorizer, fast_reconnect):
        manager = ConnectionManager(
            store=store,
            settings=MCPSettings(reconnect=fast_reconnect, include_local_servers=False),
            negotiator=negotiator,
            authorizer=authorizer,
            oauth_http_client=FakeOAuthHttpClient(),
        )
        yield manager
        await manager.close()

    async def test_add_server_connects_and_publishes(self, manager, descriptor, store):
        seen = []
        manager.subscribe(seen.append)

        connection_id = await manager.add_server(descriptor)

        assert manager.status_of(connection_id) == ConnectionStatus.CONNECTED
        assert [t.namespaced_tool_name for t in manager.all_tools()] == ["Weather__get_forecast"]
        assert [t.namespaced_tool_name for t in manager.tools_for(connection_id)] == ["Weather__get_forecast"]
        assert [s.id for s in manager.connected()] == [connection_id]
        assert seen[-1][0].status == ConnectionStatus.CONNECTED

        persisted = await store.get(CONNECTIONS_KEY)
        assert persisted == [{"id": connection_id, "descriptor": descriptor.model_dump(mode="json", exclude_none=True)}]

    async def test_invoke_through_registry(self, manager, descriptor, negotiator):
        connection_id = await manager.add_server(descriptor)

        result = await manager.aggregator.invoke("Weather__get_forecast", {"city": "Oslo"})

        assert result.content[0].text == "get_forecast ok"
        assert negotiator.session.calls == [("get_forecast", {"city": "Oslo"})]
        assert manager.aggregator.resolve("Weather__get_forecast") == (connection_id, "get_forecast")

    async def test_same_normalized_name_stays_addressable(self, manager):
        first = await manager.add_server(ServerDescriptor(name="weather", url="https://a.example.com/mcp"))
        second = await manager.add_server(ServerDescriptor(name="weather!", url="https://b.example.com/mcp"))

        names = sorted(t.namespaced_tool_name for t in manager.all_tools())
        assert names == ["weather__get_forecast", "weather_2__get_forecast"]
        assert manager.aggregator.resolve("weather__get_forecast")[0] == first
        assert manager.aggregator.resolve("weather_2__get_forecast")[0] == second

    async def test_failed_connect_raises_but_stays_registered(self, manager, negotiator, descriptor):
        negotiator.outcomes.append(ConnectionFailure("refused"))

        with pytest.raises(ConnectionFailure):
            await manager.add_server(descriptor, connection_id="c1")

        assert manager.get("c1").status == ConnectionStatus.FAILED
        assert [s.id for s in manager.connections()] == ["c1"]
        assert manager.all_tools() == ()

    async def test_disconnect_unpublishes_tools(self, manager, descriptor):
        connection_id = await manager.add_server(descriptor)
        await manager.disconnect_server(connection_id)

        assert manager.all_tools() == ()
        assert manager.status_of(connection_id) == ConnectionStatus.DISCONNECTED

        await manager.reconnect_server(connection_id)
        assert [t.namespaced_tool_name for t in manager.all_tools()] == ["Weather__get_forecast"]

    async def test_remove_server(self, manager, descriptor, store):
        connection_id = await manager.add_server(descriptor)
        await store.set(token_key(connection_id), {"access_token": "t"})

        await manager.remove_server(connection_id)

        assert manager.connections() == ()
        assert manager.all_tools() == ()
        assert await store.get(CONNECTIONS_KEY) == []
        with pytest.raises(ValueError):
            manager.get(connection_id)

    async def test_rename_keeps_tool_names(self, manager, descriptor, store):
        connection_id = await manager.add_server(descriptor)

        await manager.update_descriptor(connection_id, descriptor.model_copy(update={"name": "Forecasts"}))

        assert [t.namespaced_tool_name for t in manager.all_tools()] == ["Weather__get_forecast"]
        assert manager.all_tools()[0].server_name == "Forecasts"
        assert (await store.get(CONNECTIONS_KEY))[0]["descriptor"]["name"] == "Forecasts"

    async def test_oauth_server_waits_for_callback(self, manager, negotiator, authorizer, oauth_descriptor):
        negotiator.outcomes.append(UnauthorizedError("401"))

        connection_id = await manager.add_server(oauth_descriptor)

        snapshot = manager.get(connection_id).snapshot()
        assert snapshot.status == ConnectionStatus.CONNECTING
        assert snapshot.awaiting_authorization
        state = parse_qs(urlparse(authorizer.requests[0][1]).query)["state"][0]

        await manager.handle_oauth_callback(state, code="code-1")

        assert manager.status_of(connection_id) == ConnectionStatus.CONNECTED
        assert manager.all_tools()[0].namespaced_tool_name == "Notes__get_forecast"

    async def test_callback_for_unknown_connection(self, manager):
        with pytest.raises(AuthError):
            await manager.handle_oauth_callback("mcp:missing.abc", code="x")
        with pytest.raises(AuthError):
            await manager.handle_oauth_callback("garbage", code="x")

    async def test_message_callbacks(self, manager, descriptor):
        received = []
        manager.add_message_callback(lambda *args: received.append(args))
        connection_id = await manager.add_server(descriptor, connect=False)

        manager._on_message(connection_id, "msg")

        assert received == [(connection_id, "Weather", "msg")]

    async def test_unsubscribe(self, manager, descriptor):
        seen = []
        unsubscribe = manager.subscribe(seen.append)
        unsubscribe()
        await manager.add_server(descriptor)
        assert seen == []


class TestRestore:
    async def test_restores_persisted_and_configured_servers(self, fast_reconnect):
        store = MemoryStore(
            {
                CONNECTIONS_KEY: [
                    {"id": "kept", "descriptor": {"name": "Kept", "url": "https://kept.example.com/mcp"}},
                    {"name": "Legacy", "url": "https://legacy.example.com/mcp", "authType": "none"},
                ]
            }
        )
        settings = MCPSettings.model_validate(
            {
                "reconnect": fast_reconnect.model_dump(),
                "servers": {
                    "Kept": {"url": "https://kept.example.com/mcp"},
                    "Fresh": {"url": "https://fresh.example.com/mcp"},
                },
            }
        )
        negotiator = FakeNegotiator(session=weather_session())
        manager = ConnectionManager(store=store, settings=settings, negotiator=negotiator, authorizer=FakeAuthorizer())

        restored = await manager.restore()

        names = sorted(s.name for s in manager.connections())
        assert names == ["Fresh", "In-Memory Test Server", "Kept", "Legacy"]
        assert "kept" in restored
        assert len(manager.connected()) == 4

        persisted = await store.get(CONNECTIONS_KEY)
        assert sorted(r["descriptor"]["name"] for r in persisted) == ["Fresh", "Kept", "Legacy"]
        await manager.close()

    async def test_restore_logs_failures(self, fast_reconnect):
        store = MemoryStore({CONNECTIONS_KEY: [{"id": "down", "descriptor": {"name": "Down", "url": "https://down.example.com"}}]})
        negotiator = FakeNegotiator([ConnectionFailure("refused")])
        manager = ConnectionManager(
            store=store,
            settings=MCPSettings(reconnect=fast_reconnect, include_local_servers=False),
            negotiator=negotiator,
            authorizer=FakeAuthorizer(),
        )

        assert await manager.restore() == ["down"]
        assert manager.status_of("down") == ConnectionStatus.FAILED
        await manager.close()


async def test_demo_server_end_to_end():
    manager = ConnectionManager(settings=MCPSettings(), authorizer=FakeAuthorizer())
    try:
        [connection_id] = await manager.restore()

        assert manager.status_of(connection_id) == ConnectionStatus.CONNECTED
        assert manager.get(connection_id).transport == "in_memory"
        [tool] = manager.all_tools()
        assert tool.namespaced_tool_name == "In-Memory_Test_Server__add"

        result = await manager.aggregator.invoke(tool.namespaced_tool_name, {"a": 2, "b": 40})
        assert result.content[0].text == "42"
    finally:
        await manager.close()
    assert manager.status_of(connection_id) == ConnectionStatus.DISCONNECTED
