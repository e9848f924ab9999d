"""
Tool naming rules shared by the aggregator and the inference layer.

Inference backends accept function names matching ^[A-Za-z0-9_-]{1,64}$,
so server names are normalized into a prefix of at most 32 characters and
joined to the tool name with a double underscore.
"""

import re
from typing import Iterable

SEPARATOR = "__"
MAX_PREFIX_LENGTH = 32
MAX_TOOL_NAME_LENGTH = 64
FALLBACK_PREFIX = "server"

TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


def normalize(name: str) -> str:
    """
    Normalize a server display name into a tool-name prefix.

    >>> normalize("My Weather Server!")
    'My_Weather_Server'
    """
    normalized = _INVALID_CHARS.sub("_", name)
    normalized = _REPEATED_UNDERSCORES.sub("_", normalized)
    normalized = normalized.strip("_")
    return normalized[:MAX_PREFIX_LENGTH] or FALLBACK_PREFIX


def namespaced(prefix: str, tool_name: str) -> str:
    """
    Join a prefix and a tool name. The tool part is sanitized and cut so the
    result always satisfies TOOL_NAME_PATTERN.
    """
    room = MAX_TOOL_NAME_LENGTH - len(prefix) - len(SEPARATOR)
    tool_part = _INVALID_CHARS.sub("_", tool_name)[:room] or "tool"
    return f"{prefix}{SEPARATOR}{tool_part}"


def is_valid_tool_name(name: str) -> bool:
    return bool(TOOL_NAME_PATTERN.fullmatch(name))


def unique_prefix(prefix: str, taken: Iterable[str]) -> str:
    """
    Return prefix, or prefix_<n> for the smallest n >= 2 not in taken.
    Suffixed prefixes stay within MAX_PREFIX_LENGTH.
    """
    taken = set(taken)
    if prefix not in taken:
        return prefix
    n = 2
    while True:
        suffix = f"_{n}"
        candidate = prefix[:MAX_PREFIX_LENGTH - len(suffix)] + suffix
        if candidate not in taken:
            return candidate
        n += 1
