"""
Context management for the tether-mcp client.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from tether_mcp.agents.agent_loop import AgentLoop
from tether_mcp.agents.conversation import Conversation, ConversationManager
from tether_mcp.agents.inference import InferenceProvider, create_provider
from tether_mcp.config.settings import Settings
from tether_mcp.mcp.connection import ConnectionSnapshot
from tether_mcp.mcp.connection_manager import ConnectionManager
from tether_mcp.mcp.oauth import Authorizer
from tether_mcp.storage import KeyValueStore, create_store
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
EventHandler = Callable[[T], None]

CONNECTIONS_EVENT = "connections"
CONVERSATION_EVENT = "conversation"


class TetherContext:
    """
    Holds the configured components of a running client and relays their
    updates as events.

    Events:
        connections: tuple of ConnectionSnapshot, after any server change.
        conversation: a Conversation copy, after any conversation change.
    """

    def __init__(
        self,
        config: Settings,
        store: KeyValueStore,
        connection_manager: ConnectionManager,
        provider: InferenceProvider,
        agent_loop: AgentLoop,
        conversations: ConversationManager,
    ):
        self.config = config
        self.store = store
        self.connection_manager = connection_manager
        self.provider = provider
        self.agent_loop = agent_loop
        self.conversations = conversations
        self.state: Dict[str, Any] = {}
        self.event_handlers: Dict[str, List[EventHandler]] = {}

        self._unsubscribers = [
            connection_manager.subscribe(self._on_connections),
            conversations.subscribe(self._on_conversation),
        ]

    def _on_connections(self, snapshots: Tuple[ConnectionSnapshot, ...]) -> None:
        self.emit_event(CONNECTIONS_EVENT, snapshots)

    def _on_conversation(self, conversation: Conversation) -> None:
        self.emit_event(CONVERSATION_EVENT, conversation)

    def get_state(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def set_state(self, key: str, value: Any) -> None:
        self.state[key] = value

    def register_event_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register an event handler for a specific event type.

        Args:
            event_type: Type of event to handle.
            handler: Function to call when the event occurs.
        """
        self.event_handlers.setdefault(event_type, []).append(handler)

    def emit_event(self, event_type: str, event_data: Any) -> None:
        for handler in list(self.event_handlers.get(event_type, [])):
            try:
                handler(event_data)
            except Exception as e:
                logger.error(f"Error in event handler for {event_type}: {e}")

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.connection_manager.close()


async def create_context(
    config: Settings,
    store: Optional[KeyValueStore] = None,
    provider: Optional[InferenceProvider] = None,
    authorizer: Optional[Authorizer] = None,
    connection_manager: Optional[ConnectionManager] = None,
) -> TetherContext:
    """
    Build every component from configuration. Anything passed in is used
    as is instead of being created.
    """
    store = store or create_store(config.storage.backend, config.storage.path)
    connection_manager = connection_manager or ConnectionManager(
        store=store,
        settings=config.mcp,
        authorizer=authorizer,
    )
    provider = provider or create_provider(config.inference)

    agent_settings = config.agent
    if agent_settings.temperature is None and config.inference.temperature is not None:
        agent_settings = agent_settings.model_copy(update={"temperature": config.inference.temperature})

    agent_loop = AgentLoop(
        provider,
        connection_manager.aggregator,
        agent_settings,
        max_tokens=config.inference.max_tokens,
    )
    conversations = ConversationManager(agent_loop, store)
    await conversations.load()

    return TetherContext(
        config=config,
        store=store,
        connection_manager=connection_manager,
        provider=provider,
        agent_loop=agent_loop,
        conversations=conversations,
    )
