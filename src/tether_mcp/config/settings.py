"""
Settings models for the tether-mcp client.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..utils.secrets import get_api_key

LOCAL_SERVER_URL = "local"

DEFAULT_CONFIG_FILE = "tether_mcp.config.yaml"
ENV_PREFIX = "TETHER_"
ENV_NESTING = "__"


class OAuthClientSettings(BaseModel):
    """Per-server OAuth client settings. Anything left unset is discovered."""

    model_config = ConfigDict(frozen=True)

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scope: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    registration_endpoint: Optional[str] = None


class ServerDescriptor(BaseModel):
    """
    Configuration for one MCP server.

    A descriptor is fixed once a session has been created from it; editing
    a server means replacing its descriptor.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    auth: Literal["none", "oauth"] = "none"
    oauth: OAuthClientSettings = Field(default_factory=OAuthClientSettings)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    read_timeout_seconds: Optional[float] = None
    local_server: Optional[str] = None

    @field_validator("name", "url")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @property
    def is_local(self) -> bool:
        return self.url == LOCAL_SERVER_URL

    @property
    def requires_oauth(self) -> bool:
        return self.auth == "oauth"


class ReconnectSettings(BaseModel):
    """Backoff and liveness probing for sessions."""

    base_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=16.0, gt=0)
    health_check_interval_seconds: float = Field(default=30.0, gt=0)
    connect_timeout_seconds: float = Field(default=30.0, gt=0)


class OAuthSettings(BaseModel):
    """Settings shared by every OAuth flow."""

    redirect_uri: str = "http://localhost:19876/mcp/oauth/callback"
    client_name: str = "tether-mcp"
    state_ttl_seconds: int = Field(default=300, ge=1, le=600)
    open_browser: bool = True


class MCPSettings(BaseModel):
    """Settings for MCP configuration."""

    servers: Dict[str, ServerDescriptor] = Field(default_factory=dict)
    reconnect: ReconnectSettings = Field(default_factory=ReconnectSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    include_local_servers: bool = True

    @model_validator(mode="before")
    @classmethod
    def _name_servers_by_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("servers"), dict):
            servers = {}
            for key, value in data["servers"].items():
                if isinstance(value, dict) and "name" not in value:
                    value = {**value, "name": key}
                servers[key] = value
            data = {**data, "servers": servers}
        return data


class InferenceSettings(BaseModel):
    """Settings for the inference provider."""

    provider: Literal["openai", "mock"] = "openai"
    api_key: Optional[str] = None
    api_base: str = "https://openrouter.ai/api/v1"
    model: str = "openai/gpt-4o-mini"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    app_name: Optional[str] = "tether-mcp"
    http_referrer: Optional[str] = None
    request_timeout_seconds: float = 120.0

    @model_validator(mode="before")
    @classmethod
    def _api_key_from_env(cls, data: Any) -> Any:
        # Pick the API key up from the environment if not explicitly provided
        if isinstance(data, dict) and not data.get("api_key"):
            api_key = get_api_key("openai")
            if api_key:
                data = {**data, "api_key": api_key}
        return data


class AgentLoopSettings(BaseModel):
    """Settings for the agent loop."""

    max_iterations: int = Field(default=10, ge=1)
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    stop_on_error: bool = False
    builtin_tools: bool = True


class StorageSettings(BaseModel):
    """Settings for the persisted key-value store."""

    backend: Literal["file", "memory"] = "file"
    path: str = str(Path.home() / ".tether_mcp" / "store.json")


class LoggingSettings(BaseModel):
    """Settings for logging configuration."""

    level: str = "info"
    file_path: Optional[str] = None


class Settings(BaseModel):
    """Root settings object for the tether-mcp client."""

    model_config = ConfigDict(extra="allow")

    mcp: MCPSettings = Field(default_factory=MCPSettings)
    inference: InferenceSettings = Field(default_factory=InferenceSettings)
    agent: AgentLoopSettings = Field(default_factory=AgentLoopSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load and validate the configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.
            If None, look for 'tether_mcp.config.yaml' in the current directory.

    Returns:
        Settings: Validated configuration object.
    """
    if config_path is None:
        config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

    # Secrets live next to the config file, e.g. tether_mcp.config.secrets.yaml
    secrets_path = Path(config_path).with_suffix(".secrets.yaml")
    if secrets_path.exists():
        with open(secrets_path, "r") as f:
            secrets_data = yaml.safe_load(f) or {}
        _merge_dicts(config_data, secrets_data)

    # Environment variables override file settings
    env_config = _load_from_env()
    if env_config:
        _merge_dicts(config_data, env_config)

    return Settings.model_validate(config_data)


def _load_from_env() -> Dict[str, Any]:
    """
    Load configuration from environment variables.

    TETHER_SECTION__KEY maps to section.key, so field names keep their
    underscores (TETHER_AGENT__MAX_ITERATIONS -> agent.max_iterations).
    """
    config: Dict[str, Any] = {}

    _set_nested_dict(config, ["inference", "api_key"],
                     os.environ.get("OPENROUTER_API_KEY") or os.environ.get("OPENAI_API_KEY"))
    _set_nested_dict(config, ["logging", "level"], os.environ.get("LOG_LEVEL"))
    _set_nested_dict(config, ["logging", "file_path"], os.environ.get("LOG_FILE"))

    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            path = [part for part in key[len(ENV_PREFIX):].lower().split(ENV_NESTING) if part]
            if path:
                _set_nested_dict(config, path, value)

    return config


def _set_nested_dict(d: Dict[str, Any], path: List[str], value: Any) -> None:
    """
    Set a value in a nested dictionary based on a path.

    Args:
        d: Dictionary to set value in.
        path: List of keys defining the path.
        value: Value to set.
    """
    if value is None:
        return

    if len(path) == 1:
        d[path[0]] = value
        return

    if not isinstance(d.get(path[0]), dict):
        d[path[0]] = {}

    _set_nested_dict(d[path[0]], path[1:], value)


def _merge_dicts(target: Dict, source: Dict) -> None:
    """
    Recursively merge source dictionary into target dictionary.
    Values in source will override values in target.
    """
    for key, value in source.items():
        if key in target and isinstance(target[key], dict) and isinstance(value, dict):
            _merge_dicts(target[key], value)
        else:
            target[key] = value
