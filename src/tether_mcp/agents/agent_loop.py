"""
The agent loop: alternate inference and tool execution until the model
answers without requesting tools, the iteration cap is hit or the run is
cancelled.
"""

import json
from typing import Any, Callable, Dict, List, Literal, Optional

from mcp.types import CallToolResult
from pydantic import BaseModel

from tether_mcp.agents.builtin_tools import BUILTIN_TOOLS, BuiltinTool
from tether_mcp.agents.conversation import (
    Conversation,
    ConversationMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from tether_mcp.agents.inference import ChatMessage, InferenceError, InferenceProvider, ToolCall
from tether_mcp.config import AgentLoopSettings
from tether_mcp.mcp.aggregator import ToolAggregator
from tether_mcp.mcp.errors import describe
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

Phase = Literal["inference", "tool_execution", "complete"]

UpdateCallback = Callable[[Conversation], None]


class AgentLoopRun(BaseModel):
    """State of one turn of one conversation."""

    conversation_id: str
    iteration: int = 0
    max_iterations: int
    phase: Phase = "inference"
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def truncated(self) -> bool:
        """The turn ended because it ran out of iterations."""
        return self.iteration >= self.max_iterations and not self.cancelled


def to_chat_messages(conversation: Conversation, system_prompt: Optional[str] = None) -> List[ChatMessage]:
    """Build the model-facing message list from a conversation."""
    messages: List[ChatMessage] = []
    if system_prompt:
        messages.append(ChatMessage(role="system", content=system_prompt))

    for message in conversation.messages:
        if message.role == "user":
            messages.append(ChatMessage(role="user", content=message.text))
        elif message.role == "assistant":
            tool_calls = [
                ToolCall(id=block.id, name=block.name, arguments=block.input) for block in message.tool_uses
            ]
            messages.append(ChatMessage(role="assistant", content=message.text, tool_calls=tool_calls or None))
        else:
            for block in message.tool_results:
                messages.append(
                    ChatMessage(role="tool", content=_tool_result_text(block), tool_call_id=block.tool_use_id)
                )
    return messages


def _tool_result_text(block: ToolResultBlock) -> str:
    parts = []
    for item in block.content:
        if item.get("type") == "text":
            parts.append(str(item.get("text", "")))
        elif item.get("type") == "error":
            parts.append(f"Error: {item.get('error')}")
        else:
            parts.append(json.dumps(item))
    return "\n".join(parts)


def error_result(tool_use_id: str, message: str) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=tool_use_id, content=[{"type": "error", "error": message}], is_error=True)


def call_tool_result_block(tool_use_id: str, result: CallToolResult) -> ToolResultBlock:
    content = [item.model_dump(mode="json", exclude_none=True) for item in result.content]
    if result.isError:
        text = "\n".join(item["text"] for item in content if item.get("type") == "text")
        return error_result(tool_use_id, text or "Tool execution failed")
    return ToolResultBlock(tool_use_id=tool_use_id, content=content)


class AgentLoop:
    """
    Runs conversation turns against an inference provider and the tools
    published in the tool aggregator.

    Tool failures are handed back to the model as error results. Inference
    failures end the turn with the conversation in the error state.
    Cancellation is checked before each phase and before each tool call;
    calls already in flight are not interrupted.
    """

    def __init__(
        self,
        provider: InferenceProvider,
        aggregator: Optional[ToolAggregator] = None,
        settings: Optional[AgentLoopSettings] = None,
        builtin_tools: Optional[Dict[str, BuiltinTool]] = None,
        max_tokens: Optional[int] = None,
    ):
        self.provider = provider
        self.aggregator = aggregator or ToolAggregator()
        self.settings = settings or AgentLoopSettings()
        if builtin_tools is None:
            builtin_tools = BUILTIN_TOOLS if self.settings.builtin_tools else {}
        self.builtin_tools = dict(builtin_tools)
        self.max_tokens = max_tokens
        self._runs: Dict[str, AgentLoopRun] = {}

    def state(self, conversation_id: str) -> Optional[AgentLoopRun]:
        run = self._runs.get(conversation_id)
        return run.model_copy() if run else None

    def stop(self, conversation_id: str) -> bool:
        """Request cancellation of the running turn. Returns False if none is running."""
        run = self._runs.get(conversation_id)
        if run is None:
            return False
        run.cancelled = True
        logger.info(f"Cancellation requested for conversation {conversation_id}")
        return True

    def tools(self) -> List[Dict[str, Any]]:
        functions = [tool.to_function() for tool in self.builtin_tools.values()]
        functions.extend(
            entry.to_function()
            for entry in self.aggregator.all_tools()
            if entry.namespaced_tool_name not in self.builtin_tools
        )
        return functions

    async def run(
        self,
        conversation: Conversation,
        on_update: Optional[UpdateCallback] = None,
        max_iterations: Optional[int] = None,
    ) -> AgentLoopRun:
        """
        Run one turn. The conversation is updated in place and on_update
        receives a copy after every change.

        Raises:
            RuntimeError: A turn is already running for this conversation.
            InferenceError: Inference failed and stop_on_error is set.
        """
        if conversation.id in self._runs:
            raise RuntimeError(f"Conversation {conversation.id} already has a running turn")

        run = AgentLoopRun(
            conversation_id=conversation.id,
            max_iterations=self.settings.max_iterations if max_iterations is None else max_iterations,
        )
        self._runs[conversation.id] = run

        def update() -> None:
            if on_update is not None:
                on_update(conversation.model_copy(deep=True))

        try:
            await self._run(conversation, run, update)
        finally:
            run.phase = "complete"
            self._runs.pop(conversation.id, None)

        if run.error is None:
            conversation.set_status("idle")
            update()
        return run

    async def _run(self, conversation: Conversation, run: AgentLoopRun, update: Callable[[], None]) -> None:
        pending: List[ToolUseBlock] = []

        while run.iteration < run.max_iterations and not run.cancelled:
            if run.phase == "inference":
                conversation.set_status("thinking")
                update()

                try:
                    response = await self.provider.generate(
                        to_chat_messages(conversation, self.settings.system_prompt),
                        tools=self.tools() or None,
                        temperature=self.settings.temperature,
                        max_tokens=self.max_tokens,
                    )
                except InferenceError as e:
                    logger.error(
                        f"Inference failed for conversation {conversation.id}: {e.message}",
                        data={"kind": e.kind, "status": e.status},
                    )
                    run.error = e.message
                    conversation.set_status("error", e.message)
                    update()
                    if self.settings.stop_on_error:
                        raise
                    return
                except Exception as e:
                    run.error = str(e)
                    conversation.set_status("error", str(e))
                    update()
                    raise

                pending = [
                    ToolUseBlock(id=call.id, name=call.name, input=call.arguments)
                    for call in response.message.tool_calls or []
                ]
                blocks: List[Any] = []
                if response.message.content:
                    blocks.append(TextBlock(text=response.message.content))
                blocks.extend(pending)
                conversation.append(ConversationMessage(role="assistant", content=blocks))
                update()

                if not pending:
                    return
                run.phase = "tool_execution"

            if run.phase == "tool_execution":
                conversation.set_status("calling_tools")
                update()

                for tool_use in pending:
                    if run.cancelled:
                        break
                    result = await self.execute_tool(tool_use)
                    conversation.append(ConversationMessage(role="tool", content=[result]))
                    update()

                run.iteration += 1
                run.phase = "inference"

        if run.iteration >= run.max_iterations:
            logger.warning(
                f"Conversation {conversation.id} reached the iteration limit ({run.max_iterations})"
            )

    async def execute_tool(self, tool_use: ToolUseBlock) -> ToolResultBlock:
        """Run one tool call. Never raises; failures become error results."""
        builtin = self.builtin_tools.get(tool_use.name)
        try:
            if builtin is not None:
                logger.info(f"Calling built-in tool {tool_use.name}")
                return ToolResultBlock(
                    tool_use_id=tool_use.id,
                    content=[{"type": "text", "text": json.dumps(builtin(tool_use.input))}],
                )
            result = await self.aggregator.invoke(tool_use.name, tool_use.input)
        except Exception as e:
            logger.warning(f"Tool {tool_use.name} failed: {describe(e)}")
            return error_result(tool_use.id, describe(e))
        return call_tool_result_block(tool_use.id, result)
