"""
tether-mcp - An MCP client that connects to many servers and runs an agent loop over their tools.
"""

__version__ = "0.1.0"

# Core components
from tether_mcp.app import TetherApp
from tether_mcp.core.context import TetherContext

# MCP connectivity
from tether_mcp.mcp.aggregator import NamespacedTool, ToolAggregator
from tether_mcp.mcp.connection import ServerConnection
from tether_mcp.mcp.connection_manager import ConnectionManager
from tether_mcp.mcp.transport import TransportNegotiator

# Agent loop
from tether_mcp.agents.agent_loop import AgentLoop
from tether_mcp.agents.conversation import ConversationManager
from tether_mcp.agents.inference import MockProvider, OpenAIProvider

# Configuration
from tether_mcp.config import Settings, ServerDescriptor, load_config

__all__ = [
    "AgentLoop",
    "ConnectionManager",
    "ConversationManager",
    "MockProvider",
    "NamespacedTool",
    "OpenAIProvider",
    "ServerConnection",
    "ServerDescriptor",
    "Settings",
    "TetherApp",
    "TetherContext",
    "ToolAggregator",
    "TransportNegotiator",
    "load_config",
]
