"""
MCP connectivity for the tether-mcp client.

This module provides the components for connecting to MCP servers,
managing server connections, and routing tool calls to the appropriate servers.
"""

from .aggregator import NamespacedTool, ToolAggregator
from .client_session import MCPMessage, TetherClientSession
from .connection import ConnectionSnapshot, ConnectionStatus, ServerConnection
from .connection_manager import ConnectionManager
from .errors import (
    AuthError,
    ConnectionFailure,
    DescriptorError,
    MCPError,
    ProtocolError,
    ToolExecutionError,
    ToolNotFoundError,
    TransportError,
    UnauthorizedError,
)
from .oauth import OAuthFlow, OAuthStatus, TokenSet
from .server_registry import ServerRegistry
from .transport import TransportHandle, TransportNegotiator

__all__ = [
    "AuthError",
    "ConnectionFailure",
    "ConnectionManager",
    "ConnectionSnapshot",
    "ConnectionStatus",
    "DescriptorError",
    "MCPError",
    "MCPMessage",
    "NamespacedTool",
    "OAuthFlow",
    "OAuthStatus",
    "ProtocolError",
    "ServerConnection",
    "ServerRegistry",
    "TetherClientSession",
    "TokenSet",
    "ToolAggregator",
    "ToolExecutionError",
    "ToolNotFoundError",
    "TransportError",
    "TransportHandle",
    "TransportNegotiator",
    "UnauthorizedError",
]
