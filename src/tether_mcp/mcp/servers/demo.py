"""
Demo server served in-process through the "local" URL.
"""

from mcp.server.fastmcp import FastMCP


def create_demo_server() -> FastMCP:
    server = FastMCP("demo-server")

    @server.tool()
    async def add(a: float, b: float) -> str:
        """Add two numbers"""
        total = a + b
        return str(int(total) if float(total).is_integer() else total)

    return server
