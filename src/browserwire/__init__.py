"""browserwire - async client core for a remote browser-automation protocol

Remote browser objects (browsers, contexts, pages, frames, requests,
workers, sockets) are represented as local proxies bound to one multiplexed
Connection. Every ``wait_for_*`` method is built on a single event-wait
primitive that races the awaited event against a timeout and the closing
of the owning object.
"""

from browserwire.config import ClientConfig, ConnectionConfig
from browserwire.error import (
    BrowserWireError,
    ErrorCode,
    ProtocolError,
    TargetClosedError,
    TimeoutError,
    UsageError,
)
from browserwire.listeners import EventType, ListenerCollection
from browserwire.waiter import Waiter, WaiterState
from browserwire.timeouts import TimeoutSettings
from browserwire.waits import UrlMatcher, WaitFailure, wait_for_event
from browserwire.wire import (
    ControlOp,
    WireControl,
    WireEvent,
    WireRequest,
    WireResponse,
    parse_message,
    serialize_message,
)
from browserwire.channel_owner import ChannelOwner
from browserwire.connection import Connection, Transport
from browserwire.objects import (
    Browser,
    BrowserContext,
    ConsoleMessage,
    Dialog,
    Download,
    FileChooser,
    Frame,
    Page,
    RemoteBrowser,
    Request,
    Response,
    WebSocket,
    WebSocketFrame,
    Worker,
)
from browserwire.ws_transport import WebSocketClientTransport
from browserwire.client import RemoteBrowserClient, connect_ws

__version__ = "0.1.0"

__all__ = [
    # Configuration (Pydantic models)
    "ClientConfig",
    "ConnectionConfig",
    # Errors
    "BrowserWireError",
    "ErrorCode",
    "ProtocolError",
    "TargetClosedError",
    "TimeoutError",
    "UsageError",
    # Events and waits
    "EventType",
    "ListenerCollection",
    "Waiter",
    "WaiterState",
    "TimeoutSettings",
    "UrlMatcher",
    "WaitFailure",
    "wait_for_event",
    # Wire messages
    "ControlOp",
    "WireControl",
    "WireEvent",
    "WireRequest",
    "WireResponse",
    "parse_message",
    "serialize_message",
    # Connection and proxies
    "ChannelOwner",
    "Connection",
    "Transport",
    "Browser",
    "BrowserContext",
    "ConsoleMessage",
    "Dialog",
    "Download",
    "FileChooser",
    "Frame",
    "Page",
    "RemoteBrowser",
    "Request",
    "Response",
    "WebSocket",
    "WebSocketFrame",
    "Worker",
    # WebSocket client
    "WebSocketClientTransport",
    "RemoteBrowserClient",
    "connect_ws",
]
