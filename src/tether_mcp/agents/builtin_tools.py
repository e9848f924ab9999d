"""
Built-in tools available to the agent loop without any MCP server.

They exist to check that tool calling works end to end against a model.
"""

import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tether_mcp.utils.expression import ExpressionError, evaluate


@dataclass(frozen=True)
class BuiltinTool:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Callable[[Dict[str, Any]], Dict[str, Any]]

    def to_function(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def __call__(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return self.handler(arguments)


def get_weather(arguments: Dict[str, Any]) -> Dict[str, Any]:
    location = arguments.get("location")
    if not location:
        raise ValueError("location is required")
    return {
        "location": location,
        "temperature": random.randint(10, 39),
        "unit": arguments.get("unit") or "fahrenheit",
        "condition": random.choice(["sunny", "cloudy", "rainy", "snowy"]),
        "humidity": random.randint(30, 79),
    }


def _number(arguments: Dict[str, Any], key: str) -> float:
    value = arguments.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return value


def calculate_sum(arguments: Dict[str, Any]) -> Dict[str, Any]:
    a = _number(arguments, "a")
    b = _number(arguments, "b")
    total = a + b
    return {"a": a, "b": b, "sum": total, "operation": f"{a} + {b} = {total}"}


def get_current_time(arguments: Dict[str, Any]) -> Dict[str, Any]:
    name = arguments.get("timezone") or "UTC"
    try:
        tz = timezone.utc if name == "UTC" else ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e

    now = datetime.now(tz)
    return {
        "timezone": name,
        "current_time": now.astimezone(timezone.utc).isoformat(),
        "unix_timestamp": int(time.time()),
        "formatted": now.strftime("%m/%d/%Y, %I:%M:%S %p"),
    }


def calculate(arguments: Dict[str, Any]) -> Dict[str, Any]:
    expression = arguments.get("expression")
    if not isinstance(expression, str) or not expression.strip():
        raise ValueError("expression is required")
    try:
        result = evaluate(expression)
    except ExpressionError as e:
        raise ValueError(f"Invalid expression: {e}") from e
    return {"expression": expression, "result": result}


BUILTIN_TOOLS: Dict[str, BuiltinTool] = {
    tool.name: tool
    for tool in (
        BuiltinTool(
            name="get_weather",
            description="Get the current weather for a location",
            parameters={
                "type": "object",
                "properties": {
                    "location": {
                        "type": "string",
                        "description": "The city and state, e.g. San Francisco, CA",
                    },
                    "unit": {
                        "type": "string",
                        "enum": ["celsius", "fahrenheit"],
                        "description": "The temperature unit to use",
                        "default": "fahrenheit",
                    },
                },
                "required": ["location"],
            },
            handler=get_weather,
        ),
        BuiltinTool(
            name="calculate_sum",
            description="Calculate the sum of two numbers",
            parameters={
                "type": "object",
                "properties": {
                    "a": {"type": "number", "description": "First number"},
                    "b": {"type": "number", "description": "Second number"},
                },
                "required": ["a", "b"],
            },
            handler=calculate_sum,
        ),
        BuiltinTool(
            name="get_current_time",
            description="Get the current time in a specific timezone",
            parameters={
                "type": "object",
                "properties": {
                    "timezone": {
                        "type": "string",
                        "description": "The timezone (e.g., America/New_York, Europe/London)",
                        "default": "UTC",
                    },
                },
                "required": [],
            },
            handler=get_current_time,
        ),
        BuiltinTool(
            name="calculate",
            description="Evaluate an arithmetic expression, e.g. (2 + 3) * sqrt(16)",
            parameters={
                "type": "object",
                "properties": {
                    "expression": {"type": "string", "description": "The expression to evaluate"},
                },
                "required": ["expression"],
            },
            handler=calculate,
        ),
    )
}


def get_builtin_tool(name: str) -> Optional[BuiltinTool]:
    return BUILTIN_TOOLS.get(name)
