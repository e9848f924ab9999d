"""
Conversations, inference providers and the agent loop for tether-mcp.
"""

from .agent_loop import AgentLoop, AgentLoopRun
from .builtin_tools import BUILTIN_TOOLS, BuiltinTool
from .conversation import Conversation, ConversationManager, ConversationMessage
from .inference import (
    ChatMessage,
    InferenceError,
    InferenceProvider,
    InferenceResponse,
    MockProvider,
    OpenAIProvider,
    ToolCall,
    create_provider,
)

__all__ = [
    "AgentLoop",
    "AgentLoopRun",
    "BUILTIN_TOOLS",
    "BuiltinTool",
    "ChatMessage",
    "Conversation",
    "ConversationManager",
    "ConversationMessage",
    "InferenceError",
    "InferenceProvider",
    "InferenceResponse",
    "MockProvider",
    "OpenAIProvider",
    "ToolCall",
    "create_provider",
]
