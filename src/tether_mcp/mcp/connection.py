"""
A managed connection to one MCP server.

ServerConnection owns the connection state machine for its server:

    disconnected -> connecting -> connected
                        |             |
                        v             | (liveness probe fails)
                      failed  <-------+
                        |
                        +--> connecting (backoff timer)

Only the connection itself changes its state. Everything else reads
immutable ConnectionSnapshot objects, delivered to the observer after
every change.
"""

import asyncio
import enum
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import anyio
from mcp.types import CallToolResult, Prompt, Resource, Tool
from pydantic import BaseModel, ConfigDict

from tether_mcp.config import OAuthSettings, ReconnectSettings, ServerDescriptor
from tether_mcp.mcp.client_session import MCPMessage
from tether_mcp.mcp.errors import (
    AuthError,
    ConnectionFailure,
    MCPError,
    ProtocolError,
    ToolExecutionError,
    UnauthorizedError,
    describe,
)
from tether_mcp.mcp.oauth import Authorizer, OAuthFlow, OAuthHttpClient, OAuthStatus
from tether_mcp.mcp.transport import TransportHandle, TransportKind, TransportNegotiator
from tether_mcp.storage import KeyValueStore, MemoryStore, token_key
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ConnectionSnapshot(BaseModel):
    """Read-only view of a connection at one point in time."""

    model_config = ConfigDict(frozen=True)

    id: str
    descriptor: ServerDescriptor
    status: ConnectionStatus
    transport: Optional[TransportKind] = None
    error: Optional[str] = None
    connection_attempts: int = 0
    last_connected: Optional[datetime] = None
    tools: Tuple[Tool, ...] = ()
    resources: Tuple[Resource, ...] = ()
    prompts: Tuple[Prompt, ...] = ()
    oauth_status: Optional[OAuthStatus] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def url(self) -> str:
        return self.descriptor.url

    @property
    def awaiting_authorization(self) -> bool:
        return self.oauth_status == OAuthStatus.AWAITING_AUTHORIZATION


ConnectionObserver = Callable[[ConnectionSnapshot], None]
ConnectionMessageObserver = Callable[[str, MCPMessage], None]


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 16.0) -> float:
    """
    Delay before retry number `attempt` (1-based): base, 2*base, 4*base, ...
    capped at max_delay.
    """
    if attempt < 1:
        return base_delay
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


class ServerConnection:
    """
    Connection state machine for one MCP server.

    Connection attempts are serialized: a new attempt starts only after the
    previous handle is fully closed.
    """

    def __init__(
        self,
        connection_id: str,
        descriptor: ServerDescriptor,
        negotiator: TransportNegotiator,
        store: Optional[KeyValueStore] = None,
        reconnect_settings: Optional[ReconnectSettings] = None,
        oauth_settings: Optional[OAuthSettings] = None,
        authorizer: Optional[Authorizer] = None,
        oauth_http_client: Optional[OAuthHttpClient] = None,
        observer: Optional[ConnectionObserver] = None,
        message_observer: Optional[ConnectionMessageObserver] = None,
    ):
        self.id = connection_id
        self.descriptor = descriptor
        self.negotiator = negotiator
        self.store = store or MemoryStore()
        self.reconnect_settings = reconnect_settings or ReconnectSettings()
        self.oauth_settings = oauth_settings or OAuthSettings()
        self.observer = observer
        self.message_observer = message_observer

        self._authorizer = authorizer
        self._oauth_http_client = oauth_http_client
        # Servers that never asked for OAuth get no flow at all
        self.oauth: Optional[OAuthFlow] = self._create_oauth_flow(descriptor)

        self.status = ConnectionStatus.DISCONNECTED
        self.transport: Optional[TransportKind] = None
        self.error: Optional[str] = None
        self.connection_attempts = 0
        self.last_connected: Optional[datetime] = None
        self._tools: List[Tool] = []
        self._resources: List[Resource] = []
        self._prompts: List[Prompt] = []

        self._handle: Optional[TransportHandle] = None
        self._lock = asyncio.Lock()
        self._probe_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._just_authorized = False
        # Bumped by disconnect(); timers and probes armed before it never reconnect
        self._generation = 0

    def _create_oauth_flow(self, descriptor: ServerDescriptor) -> Optional[OAuthFlow]:
        if not descriptor.requires_oauth:
            return None
        return OAuthFlow(
            self.id,
            descriptor,
            self.store,
            settings=self.oauth_settings,
            authorizer=self._authorizer,
            http_client=self._oauth_http_client,
        )

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _described(self, tool: Tool) -> Tool:
        return tool.model_copy(update={"description": f"[{self.name}] {tool.description or ''}".rstrip()})

    def snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            id=self.id,
            descriptor=self.descriptor,
            status=self.status,
            transport=self.transport,
            error=self.error,
            connection_attempts=self.connection_attempts,
            last_connected=self.last_connected,
            tools=tuple(self._described(tool) for tool in self._tools),
            resources=tuple(self._resources),
            prompts=tuple(self._prompts),
            oauth_status=self.oauth.status if self.oauth else None,
        )

    def _notify(self) -> None:
        if self.observer is None:
            return
        try:
            self.observer(self.snapshot())
        except Exception as e:
            logger.error(f"{self.name}: connection observer failed: {e}", exc_info=True)

    def _set_status(self, status: ConnectionStatus, error: Optional[str] = None) -> None:
        previous = self.status
        self.status = status
        self.error = error
        if previous != status:
            logger.info(
                f"{self.name}: {previous.value} -> {status.value}",
                data={"connection_id": self.id, "error": error} if error else {"connection_id": self.id},
            )
        self._notify()

    def _on_message(self, message: MCPMessage) -> None:
        if self.message_observer is not None:
            self.message_observer(self.id, message)

    # Connection lifecycle

    async def connect(self) -> None:
        """
        Tear down any current handle and run a full connection attempt.

        An OAuth server asking for authorization is not a failure: the flow
        is started, the status stays CONNECTING and this returns normally.

        Raises:
            MCPError: The attempt failed. A backoff retry has already been
                scheduled if the error is retryable and attempts remain.
        """
        async with self._lock:
            await self._connect_locked()

    async def reconnect(self) -> None:
        """Manual retry: restart the attempt counter, then connect."""
        self.connection_attempts = 0
        await self.connect()

    async def disconnect(self) -> None:
        """Release every resource and stop all timers."""
        self._generation += 1
        self._cancel_reconnect_timer()
        async with self._lock:
            # An attempt that held the lock may have armed a timer meanwhile
            self._cancel_reconnect_timer()
            await self._teardown()
            self.transport = None
            self._clear_capabilities()
            self._set_status(ConnectionStatus.DISCONNECTED)

    async def _scheduled_connect(self, generation: int) -> None:
        """Connect on behalf of a timer or probe, unless disconnected since."""
        async with self._lock:
            if generation != self._generation:
                logger.debug(f"{self.name}: skipping reconnect, disconnected meanwhile")
                return
            await self._connect_locked()

    async def _connect_locked(self) -> None:
        self._cancel_reconnect_timer()
        generation = self._generation
        await self._teardown()
        self._set_status(ConnectionStatus.CONNECTING)

        just_authorized, self._just_authorized = self._just_authorized, False
        try:
            headers = await self._auth_headers()
            handle, kind = await self.negotiator.negotiate(
                self.descriptor,
                headers=headers,
                message_observer=self._on_message,
                label=self.name,
            )
            self._handle = handle
            self.transport = kind
            await self._discover_capabilities()
        except asyncio.CancelledError:
            await self._teardown()
            raise
        except UnauthorizedError as e:
            await self._teardown()
            e.session_id = self.id
            if await self._start_authorization(e, just_authorized, generation):
                return
            raise self._connect_failed(self._as_auth_error(e, just_authorized), generation)
        except MCPError as e:
            await self._teardown()
            e.session_id = e.session_id or self.id
            raise self._connect_failed(e, generation)
        except Exception as e:
            await self._teardown()
            raise self._connect_failed(
                ConnectionFailure(describe(e), session_id=self.id), generation
            ) from e

        self.connection_attempts = 0
        self.last_connected = datetime.now(timezone.utc)
        self._set_status(ConnectionStatus.CONNECTED)
        self._probe_task = asyncio.create_task(self._probe_loop(), name=f"mcp-probe-{self.id}")

    def _as_auth_error(self, error: UnauthorizedError, just_authorized: bool) -> AuthError:
        if just_authorized:
            message = f"{self.name} rejected the new access token"
        else:
            message = f"{self.name} requires authorization"
        return AuthError(message, session_id=self.id, retryable=False, details=error.details)

    async def _start_authorization(
        self, error: UnauthorizedError, just_authorized: bool, generation: int
    ) -> bool:
        """
        Handle an unauthorized answer. Returns True if it started the OAuth
        flow, which means the attempt is waiting on the user.
        """
        if self.oauth is None or just_authorized:
            return False

        # Whatever token we sent is no good
        await self.store.delete(token_key(self.id))
        try:
            await self.oauth.begin()
        except AuthError as auth_error:
            raise self._connect_failed(auth_error, generation) from error
        self.transport = None
        self._clear_capabilities()
        self._set_status(ConnectionStatus.CONNECTING)
        return True

    def _connect_failed(self, error: MCPError, generation: int) -> MCPError:
        """
        Record a failed attempt and arm the backoff timer if allowed. No timer
        is armed if the connection was disconnected during the attempt.
        """
        self.connection_attempts += 1
        self.transport = None
        self._clear_capabilities()
        self._set_status(ConnectionStatus.FAILED, error.message)

        if generation != self._generation:
            logger.debug(f"{self.name}: attempt failed after disconnect: {error.message}")
        elif not error.retryable:
            logger.warning(f"{self.name}: connection failed, not retrying: {error.message}")
        elif self.connection_attempts > self.descriptor.max_reconnect_attempts:
            logger.warning(
                f"{self.name}: giving up after {self.connection_attempts} attempts: {error.message}"
            )
        else:
            delay = backoff_delay(
                self.connection_attempts,
                self.reconnect_settings.base_delay_seconds,
                self.reconnect_settings.max_delay_seconds,
            )
            logger.info(f"{self.name}: connection failed ({error.message}), retrying in {delay:g}s")
            self._reconnect_task = asyncio.create_task(
                self._reconnect_after(delay, generation), name=f"mcp-reconnect-{self.id}"
            )
        return error

    async def _reconnect_after(self, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        # From here on this task is the attempt, not a timer that can be cancelled
        self._reconnect_task = None
        try:
            await self._scheduled_connect(generation)
        except MCPError as e:
            logger.debug(f"{self.name}: scheduled reconnect failed: {e.message}")

    def _cancel_reconnect_timer(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _teardown(self) -> None:
        probe, self._probe_task = self._probe_task, None
        if probe is not None and probe is not asyncio.current_task() and not probe.done():
            probe.cancel()
            await asyncio.wait({probe})

        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.close()

    async def _auth_headers(self) -> Dict[str, str]:
        if self.oauth is None:
            return {}
        tokens = await self.oauth.tokens()
        return tokens.authorization_header() if tokens else {}

    # Liveness

    async def _probe_loop(self) -> None:
        generation = self._generation
        interval = self.reconnect_settings.health_check_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self._ping()
            except Exception as e:
                logger.warning(f"{self.name}: liveness probe failed: {describe(e)}")
                break

        # Detach so the reconnect below does not cancel this task
        self._probe_task = None
        try:
            await self._scheduled_connect(generation)
        except MCPError as e:
            logger.debug(f"{self.name}: reconnect after failed probe failed: {e.message}")

    async def _ping(self) -> None:
        handle = self._handle
        if handle is None or not handle.is_alive:
            raise ConnectionFailure("Transport closed", session_id=self.id)
        with anyio.fail_after(self.reconnect_settings.connect_timeout_seconds):
            await handle.session.list_tools()

    # Capability discovery

    def _clear_capabilities(self) -> None:
        self._tools = []
        self._resources = []
        self._prompts = []

    async def _discover_capabilities(self) -> None:
        self._tools = await self.discover_tools()

        # Not every server implements resources and prompts
        try:
            self._resources = await self.discover_resources()
        except MCPError as e:
            logger.debug(f"{self.name}: no resources: {e.message}")
            self._resources = []
        try:
            self._prompts = await self.discover_prompts()
        except MCPError as e:
            logger.debug(f"{self.name}: no prompts: {e.message}")
            self._prompts = []

    def _session(self):
        if self._handle is None or self._handle.session is None:
            raise ConnectionFailure(f"{self.name} is not connected", session_id=self.id)
        return self._handle.session

    async def discover_tools(self) -> List[Tool]:
        session = self._session()
        try:
            result = await session.list_tools()
        except Exception as e:
            raise ProtocolError(f"Failed to discover tools: {describe(e)}", session_id=self.id) from e
        return list(result.tools)

    async def discover_resources(self) -> List[Resource]:
        session = self._session()
        try:
            result = await session.list_resources()
        except Exception as e:
            raise ProtocolError(f"Failed to discover resources: {describe(e)}", session_id=self.id) from e
        return list(result.resources)

    async def discover_prompts(self) -> List[Prompt]:
        session = self._session()
        try:
            result = await session.list_prompts()
        except Exception as e:
            raise ProtocolError(f"Failed to discover prompts: {describe(e)}", session_id=self.id) from e
        return list(result.prompts)

    # Tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> CallToolResult:
        """
        Call a tool by its name on the server.

        Raises:
            ConnectionFailure: Not connected.
            ToolExecutionError: The call itself failed.
        """
        if not self.is_connected:
            raise ConnectionFailure(f"{self.name} is not connected", session_id=self.id)
        session = self._session()
        logger.info(f"{self.name}: calling tool {name}")
        try:
            return await session.call_tool(name, arguments or {})
        except Exception as e:
            raise ToolExecutionError(
                f"Failed to call tool {name}: {describe(e)}", session_id=self.id
            ) from e

    # Authorization

    def _require_oauth(self) -> OAuthFlow:
        if self.oauth is None:
            raise AuthError(f"{self.name} does not use OAuth", session_id=self.id, retryable=False)
        return self.oauth

    async def begin_authorization(self) -> str:
        """Start a new authorization attempt by hand. Returns the URL."""
        oauth = self._require_oauth()
        self._cancel_reconnect_timer()
        try:
            url = await oauth.begin()
        except AuthError as e:
            self._set_status(ConnectionStatus.FAILED, e.message)
            raise
        self._set_status(ConnectionStatus.CONNECTING)
        return url

    async def complete_authorization(self, state: str, code: str) -> None:
        """
        Exchange the code delivered by the authorizer, then reconnect with
        the new tokens. An exchange failure is final for this attempt.
        """
        oauth = self._require_oauth()
        try:
            await oauth.complete(state, code)
        except AuthError as e:
            e.session_id = self.id
            if oauth.status == OAuthStatus.FAILED:
                self._set_status(ConnectionStatus.FAILED, e.message)
            raise
        self._just_authorized = True
        await self.connect()

    async def fail_authorization(self, state: str, error: str) -> None:
        oauth = self._require_oauth()
        auth_error = await oauth.fail(state, error)
        auth_error.session_id = self.id
        self._set_status(ConnectionStatus.FAILED, auth_error.message)
        raise auth_error

    async def clear_oauth_data(self) -> None:
        """Forget this connection's tokens and pending authorization."""
        if self.oauth is not None:
            await self.oauth.clear_session_data()
            self._notify()

    async def clear_shared_client_data(self) -> None:
        """Forget the client registration shared with other connections to this server."""
        if self.oauth is not None:
            await self.oauth.clear_shared_client_data()

    # Descriptor changes

    async def update_descriptor(self, descriptor: ServerDescriptor) -> None:
        """
        Replace the descriptor. A pure rename only republishes; any other
        change reconnects a live connection.
        """
        previous = self.descriptor
        self.descriptor = descriptor
        if previous.model_dump(exclude={"name"}) == descriptor.model_dump(exclude={"name"}):
            if self.oauth is not None:
                self.oauth.descriptor = descriptor
            self._notify()
            return

        self.oauth = self._create_oauth_flow(descriptor)
        if self.status == ConnectionStatus.DISCONNECTED:
            self._notify()
            return
        await self.reconnect()
