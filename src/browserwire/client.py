"""Entry point for talking to a remote browser server over WebSocket."""

from __future__ import annotations

import logging
from typing import Any

from browserwire.config import ClientConfig
from browserwire.connection import Connection
from browserwire.error import ProtocolError, TargetClosedError
from browserwire.objects import Browser, RemoteBrowser
from browserwire.ws_transport import WebSocketClientTransport

logger = logging.getLogger(__name__)


class RemoteBrowserClient:
    """Client for a remote browser server.

    Opens the WebSocket, starts a Connection and waits until the server
    announces the remote browser object.

    Example:
        ```python
        config = ClientConfig(url="ws://localhost:3000/")
        async with RemoteBrowserClient(config) as client:
            page = await client.browser.contexts()[0].new_page()
            popup = await page.wait_for_popup(action=lambda: page.send("click"))
        ```
    """

    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self._transport: WebSocketClientTransport | None = None
        self._connection: Connection | None = None
        self._remote: RemoteBrowser | None = None

    async def __aenter__(self) -> RemoteBrowserClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def connection(self) -> Connection:
        if self._connection is None:
            raise TargetClosedError("Not connected")
        return self._connection

    @property
    def browser(self) -> Browser:
        if self._remote is None:
            raise TargetClosedError("Not connected")
        return self._remote.browser()

    async def connect(self) -> None:
        """Open the transport and wait for the remote browser announcement."""
        transport = WebSocketClientTransport(
            self.config.url,
            headers=self.config.headers,
            timeout=self.config.connect_timeout,
        )
        await transport.connect()
        self._transport = transport

        self._connection = Connection(transport, self.config.options)
        self._connection.start()

        try:
            remote = await self._connection.wait_for_object(
                self.config.root_guid,
                timeout=self.config.connect_timeout * 1000,
            )
            if not isinstance(remote, RemoteBrowser):
                raise ProtocolError(
                    f"Malformed endpoint: {self.config.root_guid} is a {remote.type}"
                )
            remote.browser()
        except Exception:
            await self.close()
            raise

        self._remote = remote
        logger.info("Connected to remote browser at %s", self.config.url)

    async def close(self) -> None:
        """Close the connection and the transport."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
        self._transport = None
        self._remote = None


async def connect_ws(url: str, **kwargs: Any) -> RemoteBrowserClient:
    """Connect to ``url`` and return a started client.

    Keyword arguments are forwarded to ClientConfig. The caller owns the
    client and must close() it.
    """
    client = RemoteBrowserClient(ClientConfig(url=url, **kwargs))
    await client.connect()
    return client
