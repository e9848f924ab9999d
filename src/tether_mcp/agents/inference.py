"""
Inference providers for the agent loop.

Providers speak the OpenAI chat-completions format, which OpenRouter and
most other gateways accept. Tool calls come back with their arguments
already parsed.
"""

import asyncio
import json
import uuid
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Union

import aiohttp
from pydantic import BaseModel, Field

from tether_mcp.config import InferenceSettings
from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://openrouter.ai/api/v1"

Role = Literal["system", "user", "assistant", "tool"]
StopReason = Literal["stop", "max_tokens", "tool_calls", "error"]
InferenceErrorKind = Literal["auth", "network", "rate_limit", "invalid_request", "provider_error"]

_FINISH_REASONS: Dict[str, StopReason] = {
    "stop": "stop",
    "length": "max_tokens",
    "tool_calls": "tool_calls",
}


class InferenceError(Exception):
    """A failed inference request."""

    def __init__(
        self,
        message: str,
        kind: InferenceErrorKind = "provider_error",
        retryable: bool = False,
        status: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.retryable = retryable
        self.status = status
        self.details = details

    @classmethod
    def from_status(cls, status: int, body: Any) -> "InferenceError":
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            message = error.get("message") or f"HTTP {status} error"
        else:
            message = str(error or f"HTTP {status} error")

        if status == 401:
            return cls(message, "auth", False, status, error)
        if status == 429:
            return cls(message, "rate_limit", True, status, error)
        if status == 400:
            return cls(message, "invalid_request", False, status, error)
        if status in (500, 502, 503, 504):
            return cls(message, "provider_error", True, status, error)
        return cls(message, "provider_error", False, status, error)


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    role: Role
    content: str = ""
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: Optional[float] = None


class InferenceResponse(BaseModel):
    message: ChatMessage
    usage: TokenUsage = Field(default_factory=TokenUsage)
    stop_reason: StopReason = "stop"
    finish_reason: Optional[str] = None


class ModelInfo(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    context_length: int = 0
    provider: str = "openrouter"
    supports_vision: bool = False
    max_tokens: int = 4096
    input_cost: Optional[float] = None
    output_cost: Optional[float] = None


def parse_tool_arguments(raw: Any) -> Dict[str, Any]:
    """
    Decode tool-call arguments. Invalid JSON is passed on to the tool as
    {"_parseError": ..., "_rawArguments": ...} instead of failing the turn.
    """
    if isinstance(raw, dict):
        return raw
    if raw in (None, ""):
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {"_parseError": "Invalid JSON in tool call arguments", "_rawArguments": raw}
    if not isinstance(parsed, dict):
        return {"_parseError": "Tool call arguments must be a JSON object", "_rawArguments": raw}
    return parsed


class InferenceProvider:
    """Base class for inference providers."""

    name = "base"

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> InferenceResponse:
        """
        Generate the next assistant message.

        Args:
            messages: Conversation so far, system message first if any.
            tools: OpenAI-style function descriptions. The model picks
                tools on its own when any are given.

        Raises:
            InferenceError: If the request fails.
        """
        raise NotImplementedError("Subclasses must implement generate()")

    async def list_models(self) -> List[ModelInfo]:
        return []


class OpenAIProvider(InferenceProvider):
    """OpenAI-compatible chat completions, OpenRouter by default."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        api_base: Optional[str] = None,
        model: str = "openai/gpt-4o-mini",
        app_name: Optional[str] = None,
        http_referrer: Optional[str] = None,
        timeout_seconds: float = 120.0,
    ):
        self.api_key = api_key
        self.api_base = (api_base or DEFAULT_API_BASE).rstrip("/")
        self.model = model
        self.app_name = app_name
        self.http_referrer = http_referrer
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        if self.http_referrer:
            headers["HTTP-Referer"] = self.http_referrer
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers

    async def _request(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        if not self.api_key:
            raise InferenceError("No API key configured", "auth")

        url = f"{self.api_base}{endpoint}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=self._headers(), json=payload) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = {"error": {"message": await response.text()}}
                    if response.status != 200:
                        raise InferenceError.from_status(response.status, body)
                    return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise InferenceError(f"Network request failed: {e}", "network", True) from e

    @staticmethod
    def format_message(message: ChatMessage) -> Dict[str, Any]:
        formatted: Dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            formatted["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            formatted["tool_call_id"] = message.tool_call_id
        return formatted

    @staticmethod
    def parse_response(body: Dict[str, Any]) -> InferenceResponse:
        choices = body.get("choices") or []
        if not choices:
            raise InferenceError("Response contained no choices", "provider_error", details=body)
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = None
        if message.get("tool_calls"):
            tool_calls = [
                ToolCall(
                    id=call.get("id") or uuid.uuid4().hex,
                    name=call["function"]["name"],
                    arguments=parse_tool_arguments(call["function"].get("arguments")),
                )
                for call in message["tool_calls"]
            ]

        usage = body.get("usage") or {}
        finish_reason = choice.get("finish_reason")
        return InferenceResponse(
            message=ChatMessage(
                role="assistant",
                content=message.get("content") or "",
                tool_calls=tool_calls,
            ),
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
                cost=usage.get("cost"),
            ),
            stop_reason=_FINISH_REASONS.get(finish_reason, "error"),
            finish_reason=finish_reason,
        )

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> InferenceResponse:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [self.format_message(m) for m in messages],
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = "auto"

        logger.debug(f"Inference request to {self.model}", data={"messages": len(messages), "tools": len(tools or [])})
        body = await self._request("POST", "/chat/completions", payload)
        response = self.parse_response(body)
        logger.debug(
            f"Inference response from {self.model}",
            data={"stop_reason": response.stop_reason, "total_tokens": response.usage.total_tokens},
        )
        return response

    async def list_models(self) -> List[ModelInfo]:
        """Models that support tool calling."""
        body = await self._request("GET", "/models")
        models = []
        for model in body.get("data", []):
            if "tools" not in (model.get("supported_parameters") or []):
                continue
            pricing = model.get("pricing") or {}
            modality = (model.get("architecture") or {}).get("modality") or ""
            top_provider = model.get("top_provider") or {}
            models.append(
                ModelInfo(
                    id=model["id"],
                    name=model.get("name") or model["id"],
                    description=model.get("description"),
                    context_length=model.get("context_length") or 0,
                    supports_vision="image" in modality or "vision" in modality,
                    max_tokens=top_provider.get("max_completion_tokens") or 4096,
                    input_cost=_per_million(pricing.get("prompt")),
                    output_cost=_per_million(pricing.get("completion")),
                )
            )
        return models


def _per_million(value: Any) -> Optional[float]:
    try:
        return float(value) * 1_000_000
    except (TypeError, ValueError):
        return None


ScriptStep = Union[InferenceResponse, ChatMessage, Exception, Callable[[Sequence[ChatMessage]], InferenceResponse]]


class MockProvider(InferenceProvider):
    """
    Provider for tests and offline use.

    Plays back a script of responses in order; each step can be a response,
    an assistant message, an exception to raise or a function of the
    request messages. Without a script it echoes the last user message.
    """

    name = "mock"

    def __init__(self, script: Optional[Sequence[ScriptStep]] = None, repeat_last: bool = False):
        self.script = list(script or [])
        self.repeat_last = repeat_last
        self.requests: List[Dict[str, Any]] = []

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> InferenceResponse:
        self.requests.append({"messages": list(messages), "tools": list(tools or [])})

        if not self.script:
            last_user = next((m.content for m in reversed(messages) if m.role == "user"), "")
            return InferenceResponse(message=ChatMessage(role="assistant", content=f"You said: {last_user}"))

        step = self.script[0] if self.repeat_last and len(self.script) == 1 else self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            step = step(messages)
        if isinstance(step, ChatMessage):
            stop_reason = "tool_calls" if step.tool_calls else "stop"
            step = InferenceResponse(message=step, stop_reason=stop_reason)
        return step


def create_provider(settings: InferenceSettings) -> InferenceProvider:
    """
    Create an inference provider from configuration.

    Raises:
        ValueError: If provider is not supported.
    """
    provider = settings.provider.lower()
    if provider == "openai":
        return OpenAIProvider(
            api_key=settings.api_key,
            api_base=settings.api_base,
            model=settings.model,
            app_name=settings.app_name,
            http_referrer=settings.http_referrer,
            timeout_seconds=settings.request_timeout_seconds,
        )
    if provider == "mock":
        return MockProvider()
    raise ValueError(f"Unsupported inference provider: {provider}")
