"""WebSocket transport for Connection.

Implements the Transport protocol on top of an aiohttp client WebSocket.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import aiohttp

if TYPE_CHECKING:
    from aiohttp import ClientWebSocketResponse

logger = logging.getLogger(__name__)


class WebSocketClientTransport:
    """WebSocket transport for a remote browser server.

    Example:
        ```python
        transport = WebSocketClientTransport("ws://localhost:3000/")
        await transport.connect()
        connection = Connection(transport)
        ```
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the transport.

        Args:
            url: WebSocket URL (e.g., "ws://localhost:3000/")
            headers: Extra headers sent with the handshake
            timeout: Handshake timeout in seconds
        """
        self.url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None
        self._ws: ClientWebSocketResponse | None = None
        self._closed = False
        self._close_task: asyncio.Task[None] | None = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        """Connect to the WebSocket server."""
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, headers=self._headers, max_msg_size=0),
                timeout=self._timeout,
            )
        except Exception:
            await self._session.close()
            self._session = None
            raise
        logger.debug("Connected to %s", self.url)

    async def send(self, message: str) -> None:
        """Send a frame to the server."""
        if self._ws is None or self._closed:
            raise ConnectionError("WebSocket is closed")
        await self._ws.send_str(message)

    async def receive(self) -> str:
        """Receive a frame from the server.

        Raises:
            ConnectionError: If the socket closed or failed
        """
        if self._ws is None or self._closed:
            raise ConnectionError("WebSocket is closed")

        msg = await self._ws.receive()

        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        elif msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data.decode("utf-8")
        elif msg.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
        ):
            self._closed = True
            raise ConnectionError(f"WebSocket closed: {msg.data}")
        elif msg.type == aiohttp.WSMsgType.ERROR:
            self._closed = True
            raise ConnectionError(f"WebSocket error: {self._ws.exception()}")
        else:
            raise ValueError(f"Unexpected message type: {msg.type}")

    def abort(self, reason: Exception) -> None:
        """Close the socket in the background after a connection failure."""
        logger.debug("Aborting WebSocket transport: %s", reason)
        self._closed = True
        if self._ws is not None and self._close_task is None:
            self._close_task = asyncio.create_task(self._close_ws())

    async def _close_ws(self) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.close()
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.debug("Error closing WebSocket: %s", e)

    async def close(self) -> None:
        """Close the socket and the HTTP session."""
        self._closed = True
        if self._close_task is not None:
            await self._close_task
            self._close_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
