"""
Client session used for every server connection.

Extends the MCP client session with debug logging and a message observer,
so the traffic of each server can be monitored.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional

from mcp import ClientSession
from mcp.shared.session import ReceiveNotificationT, SendNotificationT
from pydantic import BaseModel, Field

from tether_mcp.utils.logging import get_logger

logger = get_logger(__name__)


class MCPMessage(BaseModel):
    """One message exchanged with a server, as seen by the client."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    direction: Literal["sent", "received"]
    type: Literal["request", "response", "notification"]
    method: Optional[str] = None
    content: Any = None
    error: Optional[str] = None


MessageObserver = Callable[[MCPMessage], None]


def _dump(message: Any) -> Any:
    if hasattr(message, "model_dump"):
        return message.model_dump(mode="json", exclude_none=True)
    return message


def _method(message: Any) -> Optional[str]:
    root = getattr(message, "root", message)
    return getattr(root, "method", None)


class TetherClientSession(ClientSession):
    """
    Client session for tether-mcp connections to MCP servers.

    Supports:
    - Debug logging of requests, responses and notifications
    - A message observer receiving an MCPMessage for each of them
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.message_observer: Optional[MessageObserver] = None

    def _observe(self, **fields) -> None:
        if self.message_observer is None:
            return
        try:
            self.message_observer(MCPMessage(**fields))
        except Exception as e:
            logger.warning(f"Message observer failed: {e}")

    async def send_request(self, request, result_type, *args, **kwargs):
        method = _method(request)
        logger.debug("send_request: request=", data=_dump(request))
        self._observe(direction="sent", type="request", method=method, content=_dump(request))
        try:
            result = await super().send_request(request, result_type, *args, **kwargs)
        except Exception as e:
            logger.debug(f"send_request {method} failed: {e}")
            self._observe(direction="received", type="response", method=method, error=str(e))
            raise
        logger.debug("send_request: response=", data=_dump(result))
        self._observe(direction="received", type="response", method=method, content=_dump(result))
        return result

    async def send_notification(self, notification: SendNotificationT, *args, **kwargs) -> None:
        logger.debug("send_notification:", data=_dump(notification))
        self._observe(
            direction="sent",
            type="notification",
            method=_method(notification),
            content=_dump(notification),
        )
        return await super().send_notification(notification, *args, **kwargs)

    async def _received_notification(self, notification: ReceiveNotificationT) -> None:
        logger.debug("_received_notification: notification=", data=_dump(notification))
        self._observe(
            direction="received",
            type="notification",
            method=_method(notification),
            content=_dump(notification),
        )
        return await super()._received_notification(notification)
