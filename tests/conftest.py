"""Pytest configuration for all tests."""

import asyncio
import json
from typing import Any

from browserwire.config import ConnectionConfig
from browserwire.connection import Connection


class QueueTransport:
    """In-memory transport for testing.

    Frames pushed with feed() are returned by receive(); frames sent by the
    connection are collected in ``sent`` and mirrored to ``outbox``.
    """

    def __init__(self) -> None:
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.outbox: asyncio.Queue[str] = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False
        self.abort_reason: Exception | None = None

    def feed(self, frame: str | None) -> None:
        """Queue a frame for receive(). None simulates the peer closing."""
        self.inbox.put_nowait(frame)

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("Transport closed")
        self.sent.append(message)
        await self.outbox.put(message)

    async def receive(self) -> str:
        if self.closed:
            raise ConnectionError("Transport closed")
        frame = await self.inbox.get()
        if frame is None:
            self.closed = True
            raise ConnectionError("Peer closed")
        return frame

    def abort(self, reason: Exception) -> None:
        self.closed = True
        self.abort_reason = reason
        # Wake a pending receive()
        self.inbox.put_nowait(None)

    async def close(self) -> None:
        self.closed = True


class FakeDriver:
    """Plays the driver side of a connection over a QueueTransport."""

    def __init__(self, transport: QueueTransport) -> None:
        self.transport = transport

    def push(self, message: dict[str, Any]) -> None:
        self.transport.feed(json.dumps(message))

    def create(
        self,
        guid: str,
        type: str,
        parent_guid: str | None = None,
        initializer: dict[str, Any] | None = None,
    ) -> None:
        self.push({
            "op": "CREATE",
            "guid": guid,
            "type": type,
            "parentGuid": parent_guid,
            "initializer": initializer or {},
        })

    def dispose(self, guid: str) -> None:
        self.push({"op": "DISPOSE", "guid": guid})

    def event(self, guid: str, method: str, params: dict[str, Any] | None = None) -> None:
        self.push({"guid": guid, "method": method, "params": params or {}})

    def respond(self, call_id: int, result: Any = None) -> None:
        self.push({"id": call_id, "result": result})

    def fail(self, call_id: int, message: str, name: str = "Error") -> None:
        self.push({"id": call_id, "error": {"error": {"name": name, "message": message}}})

    def disconnect(self) -> None:
        self.transport.feed(None)

    async def next_request(self, timeout: float = 1.0) -> dict[str, Any]:
        """Return the next frame sent by the connection, decoded."""
        frame = await asyncio.wait_for(self.transport.outbox.get(), timeout=timeout)
        return json.loads(frame)


def create_connection(
    default_timeout_ms: float = 30_000,
) -> tuple[Connection, FakeDriver]:
    """Create a started connection wired to a fake driver."""
    transport = QueueTransport()
    options = ConnectionConfig(default_timeout_ms=default_timeout_ms)
    connection = Connection(transport, options)
    connection.start()
    return connection, FakeDriver(transport)


async def settle(connection: Connection, timeout: float = 1.0) -> None:
    """Wait until every frame fed so far has been dispatched."""
    transport = connection.transport
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not transport.inbox.empty() and not connection.is_closed:
        if loop.time() > deadline:
            raise AssertionError("Frames were not dispatched in time")
        await asyncio.sleep(0.001)
    # The last frame may have been taken off the queue but not yet dispatched
    await asyncio.sleep(0.02)


async def build_page_tree(driver: FakeDriver, connection: Connection) -> dict[str, Any]:
    """Announce browser -> context -> page (+ main frame) and return the proxies."""
    driver.create("browser@1", "Browser", initializer={"name": "chromium", "version": "1.0"})
    driver.create("remoteBrowser", "RemoteBrowser", initializer={"browser": {"guid": "browser@1"}})
    driver.create("context@1", "BrowserContext", "browser@1")
    driver.create("frame@1", "Frame", "context@1", {"url": "about:blank", "name": ""})
    driver.create("page@1", "Page", "context@1", {"mainFrame": {"guid": "frame@1"}})
    page = await connection.wait_for_object("page@1", timeout=1000)
    return {
        "browser": connection.get_object("browser@1"),
        "remote": connection.get_object("remoteBrowser"),
        "context": connection.get_object("context@1"),
        "frame": connection.get_object("frame@1"),
        "page": page,
    }
