"""
Error types raised by the MCP session layer.

Every error carries a kind, the id of the session it belongs to (when
known) and whether the session may retry after it.
"""

from typing import Any, Dict, Literal, Optional

ErrorKind = Literal["connection", "auth", "protocol", "tool_execution", "transport"]


class MCPError(Exception):
    """Base class for session-layer failures."""

    kind: ErrorKind = "connection"
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "session_id": self.session_id,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, session_id={self.session_id!r})"


class ConnectionFailure(MCPError):
    """Handshake or session setup failed."""

    kind = "connection"
    default_retryable = True


class TransportError(MCPError):
    """No transport strategy could reach the server."""

    kind = "transport"
    default_retryable = True


class UnauthorizedError(MCPError):
    """The server answered 401. For OAuth servers this starts authorization."""

    kind = "auth"


class AuthError(MCPError):
    """Authorization or token exchange failed."""

    kind = "auth"


class ProtocolError(MCPError):
    """Capability discovery or another protocol exchange failed."""

    kind = "protocol"
    default_retryable = True


class ToolExecutionError(MCPError):
    kind = "tool_execution"


class ToolNotFoundError(ToolExecutionError):
    """No live session owns the requested tool."""


class DescriptorError(MCPError):
    """The server descriptor cannot be used to connect."""

    kind = "connection"


def find_cause(error: BaseException, error_type: type) -> Optional[BaseException]:
    """
    Search an exception, its exception-group members and its cause chain
    for an instance of error_type.
    """
    seen = set()
    pending = [error]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, error_type):
            return current
        if isinstance(current, BaseExceptionGroup):
            pending.extend(current.exceptions)
        pending.append(current.__cause__)
        pending.append(current.__context__)
    return None


def describe(error: BaseException) -> str:
    """Message for an error, unwrapping single-member exception groups."""
    while isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
        error = error.exceptions[0]
    if isinstance(error, MCPError):
        return error.message
    return str(error) or type(error).__name__
