"""
Main application class for the tether-mcp client.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from tether_mcp.agents.agent_loop import AgentLoopRun
from tether_mcp.agents.inference import InferenceProvider
from tether_mcp.config.settings import Settings, load_config
from tether_mcp.core.context import TetherContext, create_context
from tether_mcp.mcp.connection_manager import ConnectionManager
from tether_mcp.mcp.oauth import Authorizer
from tether_mcp.storage import KeyValueStore
from tether_mcp.utils.logging import configure_logging, get_logger


class TetherApp:
    """
    Main application class that manages the client lifecycle.

    Example usage:
        app = TetherApp()

        async with app.run() as running_app:
            conversation = await running_app.conversations.create_conversation()
            await running_app.send_message(conversation.id, "What is 2 + 3?")
    """

    def __init__(
        self,
        name: str = "tether_app",
        config_path: Optional[str] = None,
        settings: Optional[Settings] = None,
        store: Optional[KeyValueStore] = None,
        provider: Optional[InferenceProvider] = None,
        authorizer: Optional[Authorizer] = None,
        restore_connections: bool = True,
    ):
        """
        Initialize the application with a name and optional settings.

        Args:
            name: Name of the application.
            config_path: Path to configuration file (if not provided, looks for tether_mcp.config.yaml).
            settings: Application configuration object (if provided, takes precedence over config_path).
            store: Key-value store to use instead of the configured one.
            provider: Inference provider to use instead of the configured one.
            authorizer: OAuth authorizer to use instead of opening a browser.
            restore_connections: Reconnect persisted and configured servers on start.
        """
        self.name = name
        self._config_path = config_path
        self._settings = settings
        self._store = store
        self._provider = provider
        self._authorizer = authorizer
        self._restore_connections = restore_connections

        self._logger = None
        self._context: Optional[TetherContext] = None
        self._initialized = False
        self._session_id: Optional[str] = None
        self._pending_handlers: List[tuple] = []

    @property
    def context(self) -> TetherContext:
        """Get the current application context."""
        if self._context is None:
            raise RuntimeError(
                "TetherApp not initialized. Please call initialize() first, or use async with app.run()."
            )
        return self._context

    @property
    def config(self) -> Settings:
        return self.context.config

    @property
    def connections(self) -> ConnectionManager:
        return self.context.connection_manager

    @property
    def conversations(self):
        return self.context.conversations

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def logger(self):
        if self._logger is None:
            self._logger = get_logger(f"tether.{self.name}")
        return self._logger

    async def initialize(self):
        """Load configuration, build the context and restore server connections."""
        if self._initialized:
            return

        if not self._session_id:
            self._session_id = str(uuid.uuid4())

        config = self._settings if self._settings is not None else load_config(self._config_path)
        configure_logging(config.logging.level, config.logging.file_path)

        self._context = await create_context(
            config,
            store=self._store,
            provider=self._provider,
            authorizer=self._authorizer,
        )
        for event_type, handler in self._pending_handlers:
            self._context.register_event_handler(event_type, handler)
        self._pending_handlers = []

        if self._restore_connections:
            restored = await self._context.connection_manager.restore()
            self.logger.info(f"Restored {len(restored)} server connections")

        self._initialized = True
        self.logger.info(f"TetherApp initialized - app_name: {self.name}, session_id: {self._session_id}")

    async def cleanup(self):
        """Disconnect all servers and drop the context."""
        if not self._initialized:
            return

        self.logger.info(f"TetherApp cleaning up - app_name: {self.name}, session_id: {self._session_id}")
        try:
            await self.context.close()
        finally:
            self._context = None
            self._initialized = False

    @asynccontextmanager
    async def run(self):
        """
        Run the application as an async context manager.

        Yields:
            The initialized application instance.
        """
        await self.initialize()
        try:
            yield self
        finally:
            await self.cleanup()

    async def send_message(self, conversation_id: str, text: str) -> AgentLoopRun:
        return await self.context.conversations.send_message(conversation_id, text)

    def register_event_handler(self, event_type: str, handler: Callable):
        """
        Register an event handler for a specific event type. Handlers
        registered before initialization are attached once the context exists.
        """
        if self._context is not None:
            self._context.register_event_handler(event_type, handler)
        else:
            self._pending_handlers.append((event_type, handler))
