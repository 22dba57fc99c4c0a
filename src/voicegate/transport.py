"""
Outbound side of a Twilio media stream connection.
"""

from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class TransportError(Exception):
    """Raised when a frame cannot be written to the media stream socket."""
    pass


class WebSocketTransport:
    """
    Wraps one accepted FastAPI WebSocket.

    Every session started on the socket shares this object; the registry uses its
    identity to find the sessions to tear down on disconnect.
    """

    def __init__(self, websocket: Any, connection_id: str = ""):
        self._websocket = websocket
        self.connection_id = connection_id
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportError("WebSocket already closed")
        try:
            await self._websocket.send_text(message)
        except Exception as e:
            self.closed = True
            logger.warning(
                "Failed to send WebSocket message",
                connection_id=self.connection_id,
                error=str(e),
            )
            raise TransportError(str(e)) from e

    def mark_closed(self) -> None:
        self.closed = True
