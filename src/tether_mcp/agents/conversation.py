"""
Conversations and their persistence.

A conversation is an ordered list of messages, each made of content
blocks: text, tool use requests from the model and tool results.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from tether_mcp.storage import CONVERSATIONS_KEY, KeyValueStore, MemoryStore
from tether_mcp.utils.logging import get_logger

if TYPE_CHECKING:
    from tether_mcp.agents.agent_loop import AgentLoop, AgentLoopRun

logger = get_logger(__name__)

DEFAULT_TITLE = "New Conversation"
MAX_TITLE_LENGTH = 50

ConversationStatus = Literal["idle", "thinking", "calling_tools", "error"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: List[Dict[str, Any]] = Field(default_factory=list)
    is_error: bool = False


ContentBlock = Annotated[Union[TextBlock, ToolUseBlock, ToolResultBlock], Field(discriminator="type")]


class ConversationMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Literal["user", "assistant", "tool"]
    content: List[ContentBlock] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_now)

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    @property
    def tool_results(self) -> List[ToolResultBlock]:
        return [block for block in self.content if isinstance(block, ToolResultBlock)]


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = DEFAULT_TITLE
    messages: List[ConversationMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    status: ConversationStatus = "idle"
    error: Optional[str] = None

    def append(self, message: ConversationMessage) -> ConversationMessage:
        self.messages.append(message)
        self.updated_at = _now()
        return message

    def set_status(self, status: ConversationStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        self.updated_at = _now()


def generate_title(text: str) -> str:
    """Title from the first user message: word characters only, 50 chars max."""
    title = re.sub(r"[^\w\s]", "", text).strip()[:MAX_TITLE_LENGTH].strip()
    return title or DEFAULT_TITLE


ConversationObserver = Callable[[Conversation], None]


class ConversationManager:
    """
    Keeps the conversations of this client, runs the agent loop on them and
    stores them under the "conversations" key.
    """

    def __init__(self, agent_loop: "AgentLoop", store: Optional[KeyValueStore] = None):
        self.agent_loop = agent_loop
        self.store = store or MemoryStore()
        self._conversations: Dict[str, Conversation] = {}
        self._observers: List[ConversationObserver] = []

    def subscribe(self, observer: ConversationObserver) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: ConversationObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, conversation: Conversation) -> None:
        for observer in list(self._observers):
            try:
                observer(conversation)
            except Exception as e:
                logger.error(f"Conversation observer failed: {e}")

    async def load(self) -> None:
        raw = await self.store.get(CONVERSATIONS_KEY) or []
        conversations = {}
        for item in raw:
            try:
                conversation = Conversation.model_validate(item)
            except ValueError as e:
                logger.warning(f"Skipping unreadable conversation: {e}")
                continue
            # A turn cannot survive a restart
            if conversation.status in ("thinking", "calling_tools"):
                conversation.set_status("idle")
            conversations[conversation.id] = conversation
        self._conversations = conversations
        logger.debug(f"Loaded {len(conversations)} conversations")

    async def persist(self) -> None:
        await self.store.set(
            CONVERSATIONS_KEY,
            [c.model_dump(mode="json") for c in self._conversations.values()],
        )

    def conversations(self) -> Tuple[Conversation, ...]:
        """Conversations, most recently updated first."""
        return tuple(
            c.model_copy(deep=True)
            for c in sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)
        )

    def _get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ValueError(f"Conversation {conversation_id} not found")
        return conversation

    def get(self, conversation_id: str) -> Conversation:
        """
        Raises:
            ValueError: If the conversation does not exist.
        """
        return self._get(conversation_id).model_copy(deep=True)

    async def create_conversation(self, title: Optional[str] = None) -> Conversation:
        conversation = Conversation(title=title or DEFAULT_TITLE)
        self._conversations[conversation.id] = conversation
        await self.persist()
        self._notify(conversation.model_copy(deep=True))
        return conversation.model_copy(deep=True)

    async def delete_conversation(self, conversation_id: str) -> None:
        self.agent_loop.stop(conversation_id)
        if self._conversations.pop(conversation_id, None) is not None:
            await self.persist()

    async def update_title(self, conversation_id: str, title: str) -> Conversation:
        conversation = self._get(conversation_id)
        conversation.title = title.strip() or DEFAULT_TITLE
        await self.persist()
        self._notify(conversation.model_copy(deep=True))
        return conversation.model_copy(deep=True)

    async def add_user_message(self, conversation_id: str, text: str) -> ConversationMessage:
        """Append a user message. The first one also names the conversation."""
        conversation = self._get(conversation_id)
        if conversation.title == DEFAULT_TITLE and not any(m.role == "user" for m in conversation.messages):
            conversation.title = generate_title(text)
        message = conversation.append(ConversationMessage(role="user", content=[TextBlock(text=text)]))
        if conversation.status == "error":
            conversation.set_status("idle")
        await self.persist()
        self._notify(conversation.model_copy(deep=True))
        return message.model_copy(deep=True)

    async def send_message(self, conversation_id: str, text: str) -> "AgentLoopRun":
        """Append a user message and run the agent loop to the end of the turn."""
        await self.add_user_message(conversation_id, text)
        return await self.continue_conversation(conversation_id)

    async def continue_conversation(self, conversation_id: str) -> "AgentLoopRun":
        conversation = self._get(conversation_id)
        try:
            return await self.agent_loop.run(conversation, on_update=self._notify)
        finally:
            await self.persist()

    async def stop(self, conversation_id: str) -> bool:
        """Cancel the running turn, if any, and put the conversation back to idle."""
        stopped = self.agent_loop.stop(conversation_id)
        conversation = self._conversations.get(conversation_id)
        if conversation is not None and conversation.status != "error":
            conversation.set_status("idle")
            self._notify(conversation.model_copy(deep=True))
        return stopped

    def loop_state(self, conversation_id: str) -> Optional["AgentLoopRun"]:
        return self.agent_loop.state(conversation_id)
