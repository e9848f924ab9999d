"""
In-process MCP servers, reachable with url "local".
"""

from typing import Callable, Dict, List

from tether_mcp.config import LOCAL_SERVER_URL, ServerDescriptor
from tether_mcp.mcp.servers.demo import create_demo_server

LOCAL_SERVERS: Dict[str, Callable] = {
    "demo": create_demo_server,
}


def default_local_descriptors() -> List[ServerDescriptor]:
    """Descriptors for the in-process servers created at every start."""
    return [
        ServerDescriptor(name="In-Memory Test Server", url=LOCAL_SERVER_URL, local_server="demo"),
    ]


__all__ = ["LOCAL_SERVERS", "create_demo_server", "default_local_descriptors"]
