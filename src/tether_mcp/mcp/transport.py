"""
Transport negotiation for MCP server connections.

A descriptor pointing at an in-process server is connected through a linked
pair of memory streams. Remote servers are tried over streamable HTTP first
and over SSE second. Retrying is left to the caller.
"""

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import (
    Any,
    AsyncContextManager,
    Callable,
    Dict,
    Literal,
    Mapping,
    Optional,
    Tuple,
)
from urllib.parse import urlparse

import anyio
import httpx
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.memory import create_client_server_memory_streams

from tether_mcp.config import ServerDescriptor
from tether_mcp.mcp.client_session import MessageObserver, TetherClientSession
from tether_mcp.mcp.errors import (
    ConnectionFailure,
    DescriptorError,
    MCPError,
    TransportError,
    UnauthorizedError,
    describe,
    find_cause,
)
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

TransportKind = Literal["streamable_http", "sse", "in_memory"]

TransportContextFactory = Callable[[], AsyncContextManager[Tuple[Any, ...]]]
Connector = Callable[[ServerDescriptor, Dict[str, str]], AsyncContextManager[Tuple[Any, ...]]]
ClientSessionFactory = Callable[
    [MemoryObjectReceiveStream, MemoryObjectSendStream, timedelta | None],
    ClientSession,
]
LocalServerFactory = Callable[[], Any]

CLOSE_TIMEOUT_SECONDS = 5.0

_UNAUTHORIZED_TEXT = re.compile(r"\b401\b|unauthori[sz]ed", re.IGNORECASE)


def default_client_session_factory(
    read_stream: MemoryObjectReceiveStream,
    write_stream: MemoryObjectSendStream,
    read_timeout: timedelta | None,
) -> ClientSession:
    return TetherClientSession(read_stream, write_stream, read_timeout_seconds=read_timeout)


def streamable_http_connector(descriptor: ServerDescriptor, headers: Dict[str, str]):
    return streamablehttp_client(descriptor.url, headers=headers or None)


def sse_connector(descriptor: ServerDescriptor, headers: Dict[str, str]):
    return sse_client(descriptor.url, headers=headers or None)


@asynccontextmanager
async def in_memory_streams(server: Any):
    """
    Run an in-process server and yield the client side of a linked stream pair.

    Accepts a low-level mcp Server or a FastMCP instance.
    """
    server = getattr(server, "_mcp_server", server)
    async with create_client_server_memory_streams() as (client_streams, server_streams):
        server_read, server_write = server_streams
        async with anyio.create_task_group() as tg:
            tg.start_soon(
                lambda: server.run(
                    server_read,
                    server_write,
                    server.create_initialization_options(),
                    raise_exceptions=True,
                )
            )
            try:
                yield client_streams
            finally:
                tg.cancel_scope.cancel()


def is_unauthorized(error: BaseException) -> bool:
    """True if the error, or anything it wraps, is an HTTP 401."""
    if find_cause(error, UnauthorizedError) is not None:
        return True
    status_error = find_cause(error, httpx.HTTPStatusError)
    if status_error is not None:
        return status_error.response.status_code == 401
    return bool(_UNAUTHORIZED_TEXT.search(describe(error)))


class TransportHandle:
    """
    A live transport and its initialized client session.

    The transport and session contexts are entered and exited by a dedicated
    lifecycle task, since anyio cancel scopes must be left from the task that
    entered them.
    """

    def __init__(
        self,
        kind: TransportKind,
        transport_context_factory: TransportContextFactory,
        client_session_factory: ClientSessionFactory = default_client_session_factory,
        read_timeout: timedelta | None = None,
        connect_timeout: float = 30.0,
        message_observer: Optional[MessageObserver] = None,
        label: str = "",
    ):
        self.kind = kind
        self.label = label
        self.session: ClientSession | None = None
        self._transport_context_factory = transport_context_factory
        self._client_session_factory = client_session_factory
        self._read_timeout = read_timeout
        self._connect_timeout = connect_timeout
        self._message_observer = message_observer
        self._task: asyncio.Task | None = None
        self._error: BaseException | None = None

        # Signal that the session is initialized, or that setup failed
        self._ready_event = anyio.Event()

        # Signal we want to shut down
        self._shutdown_event = anyio.Event()

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def is_alive(self) -> bool:
        return self.session is not None and self._task is not None and not self._task.done()

    async def _lifecycle(self) -> None:
        try:
            async with self._transport_context_factory() as streams:
                read_stream, write_stream = streams[0], streams[1]
                session = self._client_session_factory(read_stream, write_stream, self._read_timeout)
                if self._message_observer is not None and hasattr(session, "message_observer"):
                    session.message_observer = self._message_observer

                async with session:
                    await session.initialize()
                    self.session = session
                    self._ready_event.set()

                    # Wait until we're asked to shut down
                    await self._shutdown_event.wait()
        except Exception as exc:
            if self._ready_event.is_set():
                logger.warning(f"{self.label}: {self.kind} transport closed with error: {describe(exc)}")
            else:
                logger.debug(f"{self.label}: {self.kind} transport failed during setup: {describe(exc)}")
            self._error = exc
        finally:
            self.session = None
            # Make sure open() never hangs
            self._ready_event.set()

    async def open(self) -> "TransportHandle":
        """
        Start the lifecycle task and wait until the session is initialized.

        Raises:
            The setup error of the transport or session.
            ConnectionFailure: If setup does not finish within the connect timeout.
        """
        self._task = asyncio.create_task(self._lifecycle(), name=f"mcp-transport-{self.label}-{self.kind}")
        try:
            with anyio.fail_after(self._connect_timeout):
                await self._ready_event.wait()
        except TimeoutError:
            # Setup never finished
            self._task.cancel()
            await asyncio.wait({self._task})
            raise ConnectionFailure(
                f"Timed out after {self._connect_timeout:g}s connecting over {self.kind}"
            ) from None

        if self._error is not None:
            await self._task
            raise self._error
        if self.session is None:
            raise ConnectionFailure(f"{self.kind} transport closed during initialization")
        return self

    async def close(self) -> None:
        """Ask the lifecycle task to exit and wait for it, cancelling if it lingers."""
        self._shutdown_event.set()
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=CLOSE_TIMEOUT_SECONDS)
        if not done:
            logger.debug(f"{self.label}: {self.kind} transport did not close in time, cancelling")
            task.cancel()
            await asyncio.wait({task})


class TransportNegotiator:
    """
    Connects a descriptor using the first transport strategy that works.

    negotiate() never retries on its own.
    """

    def __init__(
        self,
        local_servers: Optional[Mapping[str, LocalServerFactory]] = None,
        client_session_factory: ClientSessionFactory = default_client_session_factory,
        connect_timeout: float = 30.0,
        primary_connector: Connector = streamable_http_connector,
        secondary_connector: Connector = sse_connector,
    ):
        self.local_servers: Dict[str, LocalServerFactory] = dict(local_servers or {})
        self.client_session_factory = client_session_factory
        self.connect_timeout = connect_timeout
        self.primary_connector = primary_connector
        self.secondary_connector = secondary_connector

    def _handle(
        self,
        kind: TransportKind,
        factory: TransportContextFactory,
        descriptor: ServerDescriptor,
        message_observer: Optional[MessageObserver],
        label: str,
    ) -> TransportHandle:
        read_timeout = (
            timedelta(seconds=descriptor.read_timeout_seconds)
            if descriptor.read_timeout_seconds
            else None
        )
        return TransportHandle(
            kind,
            factory,
            client_session_factory=self.client_session_factory,
            read_timeout=read_timeout,
            connect_timeout=self.connect_timeout,
            message_observer=message_observer,
            label=label or descriptor.name,
        )

    async def negotiate(
        self,
        descriptor: ServerDescriptor,
        headers: Optional[Dict[str, str]] = None,
        message_observer: Optional[MessageObserver] = None,
        label: str = "",
    ) -> Tuple[TransportHandle, TransportKind]:
        """
        Open a live handle for the descriptor.

        Raises:
            DescriptorError: The descriptor cannot be connected at all.
            UnauthorizedError: The server asked for authorization.
            ConnectionFailure: The in-process server failed.
            TransportError: Both remote strategies failed.
        """
        if descriptor.is_local:
            return await self._negotiate_local(descriptor, message_observer, label), "in_memory"

        parsed = urlparse(descriptor.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise DescriptorError(f"Unsupported server URL: {descriptor.url!r}", retryable=False)

        headers = dict(headers or {})

        primary = self._handle(
            "streamable_http",
            lambda: self.primary_connector(descriptor, headers),
            descriptor,
            message_observer,
            label,
        )
        try:
            return await primary.open(), "streamable_http"
        except Exception as primary_error:
            if is_unauthorized(primary_error):
                raise UnauthorizedError(
                    f"{descriptor.name} requires authorization",
                    details={"transport": "streamable_http"},
                ) from primary_error
            logger.info(
                f"{descriptor.name}: streamable HTTP failed ({describe(primary_error)}), falling back to SSE"
            )

        secondary = self._handle(
            "sse",
            lambda: self.secondary_connector(descriptor, headers),
            descriptor,
            message_observer,
            label,
        )
        try:
            return await secondary.open(), "sse"
        except Exception as secondary_error:
            if is_unauthorized(secondary_error):
                raise UnauthorizedError(
                    f"{descriptor.name} requires authorization",
                    details={"transport": "sse"},
                ) from secondary_error
            raise TransportError(
                f"Could not connect to {descriptor.url}: {describe(secondary_error)}"
            ) from secondary_error

    async def _negotiate_local(
        self,
        descriptor: ServerDescriptor,
        message_observer: Optional[MessageObserver],
        label: str,
    ) -> TransportHandle:
        server_factory = self.local_servers.get(descriptor.local_server or "")
        if server_factory is None:
            raise DescriptorError(
                f"No in-process server named {descriptor.local_server!r}", retryable=False
            )

        try:
            server = server_factory()
        except Exception as e:
            raise ConnectionFailure(
                f"In-process server {descriptor.local_server!r} could not be created: {describe(e)}"
            ) from e

        handle = self._handle(
            "in_memory",
            lambda: in_memory_streams(server),
            descriptor,
            message_observer,
            label,
        )
        try:
            return await handle.open()
        except MCPError:
            raise
        except Exception as e:
            raise ConnectionFailure(
                f"In-process server {descriptor.local_server!r} failed: {describe(e)}"
            ) from e
