"""
Tool aggregation across all live server connections.

Tools are exposed under namespaced names (<prefix>__<tool>). The prefix of a
connection is recorded the first time it publishes, and name resolution
only ever goes through that record, so renaming a server or adding a
second server with a similar name never changes where a tool call lands.

Namespaced names are unique. When two connections normalize to the same
prefix, the later one is published as <prefix>_2, <prefix>_3 and so on
instead of sharing the name with the first.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from mcp.types import CallToolResult, Tool
from pydantic import BaseModel, ConfigDict

from tether_mcp.mcp.errors import MCPError, ToolNotFoundError
from tether_mcp.mcp.naming import MAX_TOOL_NAME_LENGTH, namespaced, normalize, unique_prefix
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

# (connection_id, original_tool_name, arguments) -> result
ToolCaller = Callable[[str, str, Dict[str, Any]], Awaitable[CallToolResult]]


class NamespacedTool(BaseModel):
    """
    A tool that is namespaced by its server connection.
    """

    model_config = ConfigDict(frozen=True)

    tool: Tool
    session_id: str
    server_name: str
    namespaced_tool_name: str

    @property
    def original_name(self) -> str:
        return self.tool.name

    def as_tool(self) -> Tool:
        return self.tool.model_copy(update={"name": self.namespaced_tool_name})

    def to_function(self) -> Dict[str, Any]:
        """OpenAI-style function description for inference requests."""
        return {
            "type": "function",
            "function": {
                "name": self.namespaced_tool_name,
                "description": self.tool.description or "",
                "parameters": self.tool.inputSchema or {"type": "object", "properties": {}},
            },
        }


class ToolAggregator:
    """
    Registry of namespaced tools published by server connections.

    Readers get tuples that are never mutated; every publish builds new
    maps and swaps them in.
    """

    def __init__(self, tool_caller: Optional[ToolCaller] = None):
        self.tool_caller = tool_caller
        self._prefixes: Dict[str, str] = {}
        self._server_to_tool_map: Dict[str, Tuple[NamespacedTool, ...]] = {}
        self._namespaced_tool_map: Dict[str, NamespacedTool] = {}
        self._all_tools: Tuple[NamespacedTool, ...] = ()

    def prefix_for(self, session_id: str) -> Optional[str]:
        return self._prefixes.get(session_id)

    def _record_prefix(self, session_id: str, server_name: str) -> str:
        prefix = self._prefixes.get(session_id)
        if prefix is None:
            taken = [p for sid, p in self._prefixes.items() if sid != session_id]
            prefix = unique_prefix(normalize(server_name), taken)
            if prefix != normalize(server_name):
                logger.info(f"Tool prefix {normalize(server_name)!r} is taken, using {prefix!r} for {server_name}")
            self._prefixes[session_id] = prefix
        return prefix

    def publish(self, session_id: str, tools: Sequence[Tool], server_name: str) -> Tuple[NamespacedTool, ...]:
        """
        Replace the tools of one connection.

        Publishing an empty list keeps the recorded prefix, so a connection
        that drops and comes back keeps its tool names.
        """
        prefix = self._record_prefix(session_id, server_name)

        entries: List[NamespacedTool] = []
        used: Dict[str, int] = {}
        for tool in tools:
            name = namespaced(prefix, tool.name)
            if name in used:
                used[name] += 1
                suffix = f"_{used[name]}"
                name = name[:MAX_TOOL_NAME_LENGTH - len(suffix)] + suffix
            used.setdefault(name, 1)
            entries.append(
                NamespacedTool(
                    tool=tool,
                    session_id=session_id,
                    server_name=server_name,
                    namespaced_tool_name=name,
                )
            )

        server_map = dict(self._server_to_tool_map)
        server_map[session_id] = tuple(entries)
        self._swap(server_map)

        logger.debug(
            "Server tools published",
            data={"session_id": session_id, "server_name": server_name, "tools_count": len(entries)},
        )
        return server_map[session_id]

    def remove(self, session_id: str) -> None:
        """Forget a connection entirely, including its recorded prefix."""
        self._prefixes.pop(session_id, None)
        server_map = dict(self._server_to_tool_map)
        server_map.pop(session_id, None)
        self._swap(server_map)

    def _swap(self, server_map: Dict[str, Tuple[NamespacedTool, ...]]) -> None:
        all_tools = tuple(entry for entries in server_map.values() for entry in entries)
        self._namespaced_tool_map = {entry.namespaced_tool_name: entry for entry in all_tools}
        self._server_to_tool_map = server_map
        self._all_tools = all_tools

    def all_tools(self) -> Tuple[NamespacedTool, ...]:
        return self._all_tools

    def tools_for(self, session_id: str) -> Tuple[NamespacedTool, ...]:
        return self._server_to_tool_map.get(session_id, ())

    def resolve(self, name: str) -> Tuple[str, str]:
        """
        Map a namespaced tool name back to (session_id, original_tool_name).

        Raises:
            ToolNotFoundError: No published tool has this name.
        """
        entry = self._namespaced_tool_map.get(name)
        if entry is None:
            raise ToolNotFoundError(f"Tool '{name}' not found")
        return entry.session_id, entry.original_name

    async def invoke(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> CallToolResult:
        """
        Call a tool by its namespaced name on the connection that owns it.

        Errors from the connection are re-raised as they are, tagged with
        the connection id.
        """
        session_id, original_name = self.resolve(name)
        if self.tool_caller is None:
            raise ToolNotFoundError(f"No tool caller configured for '{name}'", session_id=session_id)

        logger.info(
            "Requesting tool call",
            data={"tool_name": original_name, "session_id": session_id},
        )
        try:
            return await self.tool_caller(session_id, original_name, arguments or {})
        except MCPError as e:
            if e.session_id is None:
                e.session_id = session_id
            raise
