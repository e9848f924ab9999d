"""Shared fakes for the MCP session layer and the agent loop."""

from typing import Any, Dict, List, Optional

import pytest
from mcp.types import (
    CallToolResult,
    ListPromptsResult,
    ListResourcesResult,
    ListToolsResult,
    TextContent,
    Tool,
)

from tether_mcp.config import ReconnectSettings, ServerDescriptor
from tether_mcp.storage import MemoryStore


def make_tool(name: str, description: str = "") -> Tool:
    return Tool(name=name, description=description or f"{name} tool", inputSchema={"type": "object", "properties": {}})


def text_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


class FakeSession:
    """Stands in for an initialized mcp ClientSession."""

    def __init__(
        self,
        tools: Optional[List[Tool]] = None,
        resources_error: Optional[Exception] = None,
        tools_error: Optional[Exception] = None,
    ):
        self.tools = list(tools or [])
        self.resources_error = resources_error
        self.tools_error = tools_error
        self.list_tools_calls = 0
        self.calls: List[tuple] = []
        self.results: Dict[str, Any] = {}

    async def list_tools(self):
        self.list_tools_calls += 1
        if self.tools_error is not None:
            raise self.tools_error
        return ListToolsResult(tools=self.tools)

    async def list_resources(self):
        if self.resources_error is not None:
            raise self.resources_error
        return ListResourcesResult(resources=[])

    async def list_prompts(self):
        raise RuntimeError("Method not found")

    async def call_tool(self, name: str, arguments: Dict[str, Any]):
        self.calls.append((name, arguments))
        result = self.results.get(name, text_result(f"{name} ok"))
        if isinstance(result, Exception):
            raise result
        return result


class FakeHandle:
    def __init__(self, session: FakeSession):
        self.session = session
        self.alive = True
        self.closed = False

    @property
    def is_alive(self) -> bool:
        return self.alive and not self.closed

    async def close(self) -> None:
        self.closed = True


class FakeNegotiator:
    """
    Plays back scripted outcomes for negotiate(): a FakeSession connects,
    an exception is raised. Once the script runs out it keeps connecting
    with the default session.
    """

    def __init__(self, outcomes: Optional[List[Any]] = None, session: Optional[FakeSession] = None):
        self.outcomes = list(outcomes or [])
        self.session = session or FakeSession([make_tool("echo")])
        self.handles: List[FakeHandle] = []
        self.headers: List[Dict[str, str]] = []

    async def negotiate(self, descriptor, headers=None, message_observer=None, label=""):
        self.headers.append(dict(headers or {}))
        outcome = self.outcomes.pop(0) if self.outcomes else self.session
        if isinstance(outcome, Exception):
            raise outcome
        handle = FakeHandle(outcome)
        self.handles.append(handle)
        return handle, "streamable_http"

    @property
    def attempts(self) -> int:
        return len(self.headers)


class FakeAuthorizer:
    def __init__(self):
        self.requests: List[tuple] = []

    async def __call__(self, session_id: str, url: str) -> None:
        self.requests.append((session_id, url))


class FakeOAuthHttpClient:
    """Authorization server answering discovery, registration and token requests."""

    def __init__(self, token_status: int = 200, token_body: Optional[Dict[str, Any]] = None):
        self.token_status = token_status
        self.token_body = token_body or {"access_token": "access-1", "token_type": "Bearer", "expires_in": 3600}
        self.get_calls: List[str] = []
        self.post_calls: List[tuple] = []
        self.token_error: Optional[Exception] = None

    async def get_json(self, url: str):
        self.get_calls.append(url)
        base = url.split("/.well-known")[0]
        return 200, {
            "authorization_endpoint": f"{base}/oauth/authorize",
            "token_endpoint": f"{base}/oauth/token",
            "registration_endpoint": f"{base}/oauth/register",
        }

    async def post(self, url: str, *, data=None, json=None):
        self.post_calls.append((url, data, json))
        if url.endswith("/register"):
            return 201, {"client_id": "client-1"}
        if self.token_error is not None:
            raise self.token_error
        return self.token_status, self.token_body

    @property
    def registrations(self) -> int:
        return sum(1 for url, _, _ in self.post_calls if url.endswith("/register"))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def fast_reconnect():
    return ReconnectSettings(
        base_delay_seconds=0.01,
        max_delay_seconds=0.04,
        health_check_interval_seconds=0.05,
        connect_timeout_seconds=1,
    )


@pytest.fixture
def descriptor():
    return ServerDescriptor(name="Weather", url="https://weather.example.com/mcp")


@pytest.fixture
def oauth_descriptor():
    return ServerDescriptor(name="Notes", url="https://notes.example.com/mcp", auth="oauth")
