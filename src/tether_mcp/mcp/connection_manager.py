"""
Manages the set of MCP server connections.
"""

import asyncio
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from mcp.types import CallToolResult, Resource

from tether_mcp.config import MCPSettings, ServerDescriptor
from tether_mcp.mcp.aggregator import NamespacedTool, ToolAggregator
from tether_mcp.mcp.client_session import MCPMessage
from tether_mcp.mcp.connection import ConnectionSnapshot, ConnectionStatus, ServerConnection
from tether_mcp.mcp.errors import AuthError, MCPError, ToolNotFoundError
from tether_mcp.mcp.oauth import Authorizer, OAuthHttpClient, session_id_from_state
from tether_mcp.mcp.oauth_callback import BrowserAuthorizer
from tether_mcp.mcp.server_registry import PersistedServer, ServerRegistry
from tether_mcp.mcp.servers import LOCAL_SERVERS, default_local_descriptors
from tether_mcp.mcp.transport import TransportNegotiator
from tether_mcp.storage import KeyValueStore, MemoryStore
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

ConnectionsObserver = Callable[[Tuple[ConnectionSnapshot, ...]], None]
MessageCallback = Callable[[str, str, MCPMessage], None]


class ConnectionManager:
    """
    Owns every ServerConnection, keeps the tool aggregator in sync with
    them and persists the list of remote servers.

    Observers receive the full tuple of connection snapshots after any
    connection changes.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        settings: Optional[MCPSettings] = None,
        negotiator: Optional[TransportNegotiator] = None,
        aggregator: Optional[ToolAggregator] = None,
        authorizer: Optional[Authorizer] = None,
        oauth_http_client: Optional[OAuthHttpClient] = None,
        local_servers: Optional[Dict[str, Callable[[], Any]]] = None,
    ):
        self.settings = settings or MCPSettings()
        self.store = store or MemoryStore()
        self.registry = ServerRegistry(self.store)
        self.negotiator = negotiator or TransportNegotiator(
            local_servers={**LOCAL_SERVERS, **(local_servers or {})},
            connect_timeout=self.settings.reconnect.connect_timeout_seconds,
        )
        self.aggregator = aggregator or ToolAggregator()
        self.aggregator.tool_caller = self.call_tool
        self.authorizer = authorizer or BrowserAuthorizer(
            self.settings.oauth.redirect_uri,
            self.handle_oauth_callback,
            open_browser=self.settings.oauth.open_browser,
        )
        self.oauth_http_client = oauth_http_client

        self.running_servers: Dict[str, ServerConnection] = {}
        self._snapshots: Tuple[ConnectionSnapshot, ...] = ()
        self._observers: List[ConnectionsObserver] = []
        self._message_callbacks: List[MessageCallback] = []
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # Observers

    def subscribe(self, observer: ConnectionsObserver) -> Callable[[], None]:
        """Register an observer. Returns a function that unregisters it."""
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: ConnectionsObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def add_message_callback(self, callback: MessageCallback) -> None:
        self._message_callbacks.append(callback)

    def remove_message_callback(self, callback: MessageCallback) -> None:
        if callback in self._message_callbacks:
            self._message_callbacks.remove(callback)

    def _on_message(self, connection_id: str, message: MCPMessage) -> None:
        conn = self.running_servers.get(connection_id)
        server_name = conn.name if conn else ""
        for callback in list(self._message_callbacks):
            try:
                callback(connection_id, server_name, message)
            except Exception as e:
                logger.warning(f"Message callback failed: {e}")

    def _on_connection_update(self, snapshot: ConnectionSnapshot) -> None:
        if snapshot.id not in self.running_servers:
            return
        tools = list(snapshot.tools) if snapshot.status == ConnectionStatus.CONNECTED else []
        self.aggregator.publish(snapshot.id, tools, snapshot.name)
        self._refresh()

    def _refresh(self) -> None:
        self._snapshots = tuple(conn.snapshot() for conn in self.running_servers.values())
        for observer in list(self._observers):
            try:
                observer(self._snapshots)
            except Exception as e:
                logger.error(f"Connections observer failed: {e}", exc_info=True)

    # Persistence

    async def _persist(self) -> None:
        records = [
            PersistedServer(id=conn.id, descriptor=conn.descriptor)
            for conn in self.running_servers.values()
            if not conn.descriptor.is_local
        ]
        try:
            await self.registry.save(records)
        except OSError as e:
            logger.error(f"Failed to persist server connections: {e}")

    # Connection set

    def _create_connection(self, connection_id: str, descriptor: ServerDescriptor) -> ServerConnection:
        return ServerConnection(
            connection_id,
            descriptor,
            self.negotiator,
            store=self.store,
            reconnect_settings=self.settings.reconnect,
            oauth_settings=self.settings.oauth,
            authorizer=self.authorizer,
            oauth_http_client=self.oauth_http_client,
            observer=self._on_connection_update,
            message_observer=self._on_message,
        )

    async def _register(self, connection_id: str, descriptor: ServerDescriptor) -> ServerConnection:
        async with self._lock:
            if connection_id in self.running_servers:
                raise ValueError(f"Connection '{connection_id}' already exists.")
            conn = self._create_connection(connection_id, descriptor)
            self.running_servers[connection_id] = conn
        self.aggregator.publish(connection_id, [], descriptor.name)
        self._refresh()
        return conn

    async def add_server(
        self,
        descriptor: ServerDescriptor,
        connect: bool = True,
        connection_id: Optional[str] = None,
    ) -> str:
        """
        Add a server and connect to it.

        A server waiting for the user to authorize is not an error. Any other
        connection failure is raised, but the server stays registered (and
        may already be retrying).

        Returns:
            The new connection id.
        """
        connection_id = connection_id or uuid.uuid4().hex
        conn = await self._register(connection_id, descriptor)
        await self._persist()
        logger.info(f"{descriptor.name}: added", data={"connection_id": connection_id, "url": descriptor.url})

        if connect:
            await conn.connect()
        return connection_id

    async def remove_server(self, connection_id: str) -> None:
        """Disconnect a server, forget its tokens and stop persisting it."""
        async with self._lock:
            conn = self.running_servers.pop(connection_id, None)
        if conn is None:
            logger.info(f"{connection_id}: No connection found. Skipping removal")
            return

        await conn.disconnect()
        await conn.clear_oauth_data()
        self.aggregator.remove(connection_id)
        self._refresh()
        await self._persist()
        logger.info(f"{conn.name}: removed", data={"connection_id": connection_id})

    async def reconnect_server(self, connection_id: str) -> None:
        await self.get(connection_id).reconnect()

    async def disconnect_server(self, connection_id: str) -> None:
        await self.get(connection_id).disconnect()

    async def update_descriptor(self, connection_id: str, descriptor: ServerDescriptor) -> None:
        """Replace a server's descriptor. Tools keep their recorded prefix."""
        conn = self.get(connection_id)
        await conn.update_descriptor(descriptor)
        await self._persist()

    def get(self, connection_id: str) -> ServerConnection:
        conn = self.running_servers.get(connection_id)
        if conn is None:
            raise ValueError(f"Connection '{connection_id}' not found.")
        return conn

    def connections(self) -> Tuple[ConnectionSnapshot, ...]:
        return self._snapshots

    def connected(self) -> Tuple[ConnectionSnapshot, ...]:
        return tuple(s for s in self._snapshots if s.status == ConnectionStatus.CONNECTED)

    def status_of(self, connection_id: str) -> ConnectionStatus:
        return self.get(connection_id).status

    # Capabilities

    def all_tools(self) -> Tuple[NamespacedTool, ...]:
        return self.aggregator.all_tools()

    def tools_for(self, connection_id: str) -> Tuple[NamespacedTool, ...]:
        return self.aggregator.tools_for(connection_id)

    def all_resources(self) -> List[Tuple[str, Resource]]:
        return [(s.id, resource) for s in self.connected() for resource in s.resources]

    def resources_for(self, connection_id: str) -> Sequence[Resource]:
        return self.get(connection_id).snapshot().resources

    async def call_tool(
        self, connection_id: str, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> CallToolResult:
        """Call a tool by its original name on one connection."""
        conn = self.running_servers.get(connection_id)
        if conn is None:
            raise ToolNotFoundError(f"Connection for tool '{name}' is gone", session_id=connection_id)
        return await conn.call_tool(name, arguments)

    # Authorization

    async def handle_oauth_callback(
        self, state: str, code: Optional[str] = None, error: Optional[str] = None
    ) -> None:
        """
        Route an authorization result to the connection named in the state.

        Raises:
            AuthError: The state names no known connection, or authorization failed.
        """
        connection_id = session_id_from_state(state)
        conn = self.running_servers.get(connection_id) if connection_id else None
        if conn is None:
            raise AuthError("Authorization callback does not match any connection", retryable=False)

        if error or not code:
            await conn.fail_authorization(state, error or "No authorization code received")
        else:
            await conn.complete_authorization(state, code)

    # Startup and shutdown

    async def restore(self) -> List[str]:
        """
        Recreate connections from the store, add configured servers that are
        not stored yet and fresh in-process servers, then connect them all.
        Connection failures are logged, not raised.

        Returns:
            The ids of the restored connections.
        """
        restored: List[ServerConnection] = []

        for record in await self.registry.load():
            if record.descriptor.is_local or record.id in self.running_servers:
                continue
            restored.append(await self._register(record.id, record.descriptor))

        known = {(conn.descriptor.name, conn.descriptor.url) for conn in self.running_servers.values()}
        for descriptor in self.settings.servers.values():
            if (descriptor.name, descriptor.url) not in known:
                restored.append(await self._register(uuid.uuid4().hex, descriptor))

        if self.settings.include_local_servers:
            for descriptor in default_local_descriptors():
                restored.append(await self._register(uuid.uuid4().hex, descriptor))

        await self._persist()

        async def connect_quietly(conn: ServerConnection) -> None:
            try:
                await conn.connect()
                if conn.is_connected:
                    logger.info(f"{conn.name}: auto-reconnected")
            except MCPError as e:
                logger.warning(f"{conn.name}: failed to auto-reconnect: {e.message}")

        await asyncio.gather(*(connect_quietly(conn) for conn in restored))
        return [conn.id for conn in restored]

    async def close(self) -> None:
        """Disconnect every server."""
        logger.info("Disconnecting all server connections...")
        async with self._lock:
            connections = list(self.running_servers.values())
        for conn in connections:
            try:
                await conn.disconnect()
            except Exception as e:
                logger.error(f"{conn.name}: error while disconnecting: {e}")
        if isinstance(self.authorizer, BrowserAuthorizer):
            await self.authorizer.close()
        logger.info("All server connections closed.")
