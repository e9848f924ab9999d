"""
Browser-based authorization for OAuth-protected MCP servers.

BrowserAuthorizer opens the authorization URL in the user's browser and
serves the redirect URI on a local aiohttp server. Callbacks are forwarded
to a handler (normally ConnectionManager.handle_oauth_callback), which
routes them to the session whose id is embedded in the state.
"""

import asyncio
import html
import webbrowser
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

from aiohttp import web

from tether_mcp.mcp.errors import MCPError
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

# Receives (state, code, error); exactly one of code and error is set.
CallbackHandler = Callable[[str, Optional[str], Optional[str]], Awaitable[None]]

HTML_SUCCESS = """<!DOCTYPE html>
<html>
<head><title>tether-mcp - Authorization Successful</title></head>
<body style="font-family: system-ui, sans-serif; text-align: center; padding: 3rem;">
  <h1>Authorization Successful</h1>
  <p>You can close this window and return to tether-mcp.</p>
  <script>setTimeout(() => window.close(), 2000);</script>
</body>
</html>"""

HTML_ERROR = """<!DOCTYPE html>
<html>
<head><title>tether-mcp - Authorization Failed</title></head>
<body style="font-family: system-ui, sans-serif; text-align: center; padding: 3rem;">
  <h1>Authorization Failed</h1>
  <pre>{error}</pre>
</body>
</html>"""


def _html_error(message: str, status: int = 400) -> web.Response:
    return web.Response(
        text=HTML_ERROR.format(error=html.escape(message)),
        status=status,
        content_type="text/html",
    )


class OAuthCallbackServer:
    """Local HTTP endpoint receiving OAuth redirects."""

    def __init__(self, redirect_uri: str, handler: CallbackHandler):
        parsed = urlparse(redirect_uri)
        self.host = parsed.hostname or "127.0.0.1"
        self.port = parsed.port if parsed.port is not None else 80
        self.path = parsed.path or "/"
        self._handler = handler
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    @property
    def is_running(self) -> bool:
        return self._site is not None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.path, self._handle_callback)
        return app

    async def _handle_callback(self, request: web.Request) -> web.Response:
        state = request.query.get("state")
        code = request.query.get("code")
        error = request.query.get("error")
        error_description = request.query.get("error_description")

        logger.info(f"Received OAuth callback, error={error}")

        if not state:
            return _html_error("Missing required state parameter")
        if not code and not error:
            return _html_error("No authorization code provided")

        try:
            if error:
                await self._handler(state, None, error_description or error)
            else:
                await self._handler(state, code, None)
        except MCPError as e:
            return _html_error(e.message)

        if error:
            return _html_error(error_description or error, status=200)
        return web.Response(text=HTML_SUCCESS, content_type="text/html")

    async def start(self) -> None:
        """
        Start listening.

        Raises:
            OSError: If the port is already in use.
        """
        if self.is_running:
            return
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info(f"OAuth callback server listening on {self.host}:{self.port}{self.path}")

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None


class BrowserAuthorizer:
    """
    Opens authorization URLs in a browser and serves the redirect URI.

    Calling the authorizer returns as soon as the browser has been asked to
    open the page; the result arrives later through the callback handler.
    """

    def __init__(self, redirect_uri: str, handler: CallbackHandler, open_browser: bool = True):
        self.server = OAuthCallbackServer(redirect_uri, handler)
        self.open_browser = open_browser

    async def __call__(self, session_id: str, url: str) -> None:
        await self.server.start()
        opened = False
        if self.open_browser:
            opened = await asyncio.to_thread(webbrowser.open, url)
        if not opened:
            logger.warning(f"Open this URL to authorize the server connection: {url}")

    async def close(self) -> None:
        await self.server.stop()
