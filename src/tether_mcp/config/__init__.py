"""
Configuration management for the tether-mcp client.
"""

from .settings import (
    LOCAL_SERVER_URL,
    AgentLoopSettings,
    InferenceSettings,
    LoggingSettings,
    MCPSettings,
    OAuthClientSettings,
    OAuthSettings,
    ReconnectSettings,
    ServerDescriptor,
    Settings,
    StorageSettings,
    load_config,
)

__all__ = [
    "LOCAL_SERVER_URL",
    "AgentLoopSettings",
    "InferenceSettings",
    "LoggingSettings",
    "MCPSettings",
    "OAuthClientSettings",
    "OAuthSettings",
    "ReconnectSettings",
    "ServerDescriptor",
    "Settings",
    "StorageSettings",
    "load_config",
]
