"""Connection: object registry, pending calls and the inbound message loop.

One Connection exists per transport. It owns:

1. the guid -> proxy registry (a tree rooted at the implicit Root, guid "")
2. the pending-call table (call id -> Waiter)
3. a single read loop task that receives frames and dispatches each one to
   completion before reading the next

Because dispatch happens on one task, registry and listener mutations need
no locking, and events are delivered in arrival order. A coroutine awaiting
a Waiter never blocks dispatch, so waits may nest freely.

Closing (or losing) the transport fails every pending call, disposes every
proxy bottom-up and rejects any further request with TargetClosedError.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from browserwire.channel_owner import ChannelOwner, Root
from browserwire.config import ConnectionConfig
from browserwire.error import (
    BrowserWireError,
    ProtocolError,
    TargetClosedError,
)
from browserwire.listeners import EventType, ListenerCollection
from browserwire.objects import BUILTIN_TYPES
from browserwire.timeouts import TimeoutSettings
from browserwire.waiter import Waiter
from browserwire.waits import (
    WaitFailure,
    arm_event,
    arm_failure,
    arm_timeout,
    closed_error,
    run_until,
)
from browserwire.wire import (
    ControlOp,
    WireControl,
    WireEvent,
    WireMessage,
    WireRequest,
    WireResponse,
    is_int_not_bool,
    parse_message,
    serialize_message,
)

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Interface for the duplex frame channel.

    Implement this for WebSocket, pipes, in-memory queues, etc.
    """

    async def send(self, message: str) -> None:
        """Send a frame to the driver."""
        ...

    async def receive(self) -> str:
        """Receive a frame from the driver. Raises ConnectionError on close."""
        ...

    def abort(self, reason: Exception) -> None:
        """Signal that the connection has failed."""
        ...

    async def close(self) -> None:
        """Close the channel."""
        ...


class PendingCall:
    """Entry in the pending-call table."""
    __slots__ = ("waiter", "guid", "method")

    def __init__(self, waiter: Waiter[Any], guid: str, method: str) -> None:
        self.waiter = waiter
        self.guid = guid
        self.method = method


class Connection:
    """A multiplexed session with a remote browser driver.

    Example:
        ```python
        connection = Connection(transport)
        connection.start()
        browser = await connection.wait_for_object("browser@1")
        ...
        await connection.close()
        ```
    """

    def __init__(
        self,
        transport: Transport,
        options: ConnectionConfig | None = None,
    ) -> None:
        """Initialize the connection.

        Args:
            transport: The frame transport
            options: Optional connection configuration
        """
        self.transport = transport
        self._options = options or ConnectionConfig()
        self.timeout_settings = TimeoutSettings(
            default_timeout=self._options.default_timeout_ms
        )

        # Registry: guid -> proxy. Disposed guids are remembered so they are
        # never revived.
        self._objects: dict[str, ChannelOwner] = {}
        self._disposed_guids: set[str] = set()

        # Pending calls: call id -> PendingCall
        self._callbacks: dict[int, PendingCall] = {}
        self._last_id = 0

        # Connection-level events (CREATED, CLOSE)
        self.listeners: ListenerCollection[EventType] = ListenerCollection()

        self._types: dict[str, type[ChannelOwner]] = dict(BUILTIN_TYPES)

        self._close_reason: Exception | None = None
        self._read_loop_task: asyncio.Task[None] | None = None
        self._send_tasks: set[asyncio.Task[None]] = set()

        self._root = Root(self)
        self._objects[self._root.guid] = self._root

    async def __aenter__(self) -> Connection:
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def root(self) -> ChannelOwner:
        return self._root

    @property
    def is_closed(self) -> bool:
        return self._close_reason is not None

    @property
    def close_reason(self) -> Exception | None:
        return self._close_reason

    def start(self) -> None:
        """Start the read loop."""
        if self._read_loop_task is None:
            self._read_loop_task = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        """Close the connection and its transport."""
        self._abort(TargetClosedError("Connection closed"))
        task = self._read_loop_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        close = getattr(self.transport, "close", None)
        if close is not None:
            result = close()
            if asyncio.iscoroutine(result):
                await result

    def get_stats(self) -> dict[str, int]:
        """Get statistics about the connection.

        Returns:
            Dict with 'objects' (root excluded) and 'pending_calls' counts
        """
        return {
            "objects": len(self._objects) - (1 if self._root.guid in self._objects else 0),
            "pending_calls": len(self._callbacks),
        }

    def register_type(self, type_name: str, cls: type[ChannelOwner]) -> None:
        """Use cls for proxies of the given remote type."""
        self._types[type_name] = cls

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def get_object(self, guid: str) -> ChannelOwner:
        """Resolve a guid to its proxy.

        Raises:
            ProtocolError: If the guid is unknown
        """
        obj = self._objects.get(guid)
        if obj is None:
            raise ProtocolError(f"Object doesn't exist: {guid}")
        return obj

    def find_object(self, guid: str) -> ChannelOwner | None:
        return self._objects.get(guid)

    def __contains__(self, guid: object) -> bool:
        return guid in self._objects

    def create(
        self,
        guid: str,
        type_name: str,
        parent_guid: str | None = None,
        initializer: dict[str, Any] | None = None,
    ) -> ChannelOwner:
        """Register a new proxy under parent_guid (or under the root).

        Raises:
            TargetClosedError: If the connection is closed
            ProtocolError: If guid already exists (or was disposed), or if
                parent_guid is unknown
        """
        self._check_open()
        if guid in self._objects or guid in self._disposed_guids:
            raise ProtocolError(f"Object with guid {guid} already exists")

        if parent_guid is None:
            parent = self._root
        else:
            parent = self._objects.get(parent_guid)
            if parent is None:
                raise ProtocolError(
                    f"Cannot find parent object {parent_guid} to create {guid}"
                )

        cls = self._types.get(type_name)
        if cls is None:
            logger.debug("No proxy class for type %s, using ChannelOwner", type_name)
            cls = ChannelOwner
        obj = cls(self, parent, type_name, guid, initializer or {})

        self._objects[guid] = obj
        parent.children.add(guid)
        obj._on_created()
        self.listeners.notify(EventType.CREATED, obj)
        return obj

    def dispose(self, guid: str, reason: Exception | None = None) -> None:
        """Dispose guid and all its descendants, bottom-up.

        Each disposed proxy fails its pending calls, then receives a
        DISPOSED notification (payload: the reason) while still resolvable,
        then leaves the registry. Unknown guids are ignored.
        """
        obj = self._objects.get(guid)
        if obj is None:
            return
        reason = reason or TargetClosedError(f"{obj.type} has been closed")
        self._dispose_subtree(obj, reason)
        parent = obj.parent
        if parent is not None:
            parent.children.discard(guid)

    def _dispose_subtree(self, obj: ChannelOwner, reason: Exception) -> None:
        for child_guid in list(obj.children):
            child = self._objects.get(child_guid)
            if child is not None:
                self._dispose_subtree(child, reason)
        obj.children.clear()

        obj.disposed = True
        self._fail_calls(reason, guid=obj.guid)
        try:
            obj._on_dispose()
        except Exception:
            logger.exception("Dispose hook of %r failed", obj)
        obj.listeners.notify(EventType.DISPOSED, reason)
        obj.listeners.clear()

        del self._objects[obj.guid]
        self._disposed_guids.add(obj.guid)

    async def wait_for_object(
        self,
        guid: str,
        timeout: float | None = None,
    ) -> ChannelOwner:
        """Wait until guid is registered and return its proxy.

        Args:
            guid: The guid to wait for
            timeout: Timeout in ms (None = connection default, 0 = no timeout)
        """
        obj = self._objects.get(guid)
        if obj is not None:
            return obj
        self._check_open()

        waiter: Waiter[ChannelOwner] = Waiter()
        try:
            arm_event(waiter, self.listeners, EventType.CREATED, lambda o: o.guid == guid)
            arm_failure(
                waiter,
                WaitFailure(self.listeners, EventType.CLOSE, closed_error("Connection closed")),
            )
            arm_timeout(waiter, self.timeout_settings.timeout(timeout))
        except BaseException:
            waiter.dispose()
            raise
        return await run_until(waiter)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def send_request(
        self,
        guid: str,
        method: str,
        params: dict[str, Any] | None = None,
    ) -> Waiter[Any]:
        """Send a request and return the Waiter for its response.

        This method is synchronous: the frame is queued to the transport
        before it returns, so requests leave in call order.

        Raises:
            TargetClosedError: If the connection (or the target) is closed
        """
        self._check_open()
        if guid in self._disposed_guids:
            raise TargetClosedError(f"Target {guid} has been closed")

        self._last_id += 1
        call_id = self._last_id
        waiter: Waiter[Any] = Waiter()
        self._callbacks[call_id] = PendingCall(waiter, guid, method)

        request = WireRequest(call_id, guid, method, params or {})
        self._send_sync(serialize_message(request))
        return waiter

    async def call(
        self,
        guid: str,
        method: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and await its result."""
        waiter = self.send_request(guid, method, params)
        try:
            return await waiter.wait()
        finally:
            waiter.dispose()

    def send_no_reply(
        self,
        guid: str,
        method: str,
        params: dict[str, Any] | None = None,
    ) -> None:
        """Send a request whose response is ignored."""
        self.send_request(guid, method, params)

    def _send_sync(self, data: str) -> None:
        if self._options.log_messages:
            logger.debug("SEND message: %s", data)
        task = asyncio.create_task(self._send_async(data))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send_async(self, data: str) -> None:
        """Actually send the frame to the transport."""
        try:
            await self.transport.send(data)
        except Exception as e:
            logger.warning("Send failed: %s", e)
            self._abort(TargetClosedError(f"Connection closed: {e}"))

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    async def _read_loop(self) -> None:
        """Main message processing loop.

        Dispatch is synchronous, so at most one frame is in flight and frames
        are processed in arrival order.
        """
        while self._close_reason is None:
            try:
                data = await self.transport.receive()
            except ConnectionError as e:
                logger.debug("Transport closed: %s", e)
                self._abort(TargetClosedError("Connection closed"), abort_transport=False)
                break
            except Exception as e:
                logger.exception("Error in read loop")
                self._abort(TargetClosedError(f"Connection closed: {e}"))
                break

            try:
                self.on_message(data)
            except BrowserWireError as e:
                logger.error("Protocol error, closing connection: %s", e)
                self._abort(e)
                break
            except Exception as e:
                logger.exception("Error dispatching message")
                self._abort(ProtocolError(f"Error dispatching message: {e}"))
                break

    def on_message(self, data: str | bytes) -> None:
        """Decode and dispatch one inbound frame.

        A frame that fails to decode but can be attributed to a pending call
        fails only that call. Otherwise the error propagates: the stream is
        out of sync and the read loop closes the connection.
        """
        if self._options.log_messages:
            logger.debug("RECEIVE message: %s", data)
        try:
            message = parse_message(data)
        except ProtocolError as e:
            if self._fail_attributable_call(data, e):
                return
            raise
        self.dispatch(message)

    def dispatch(self, message: WireMessage) -> None:
        """Dispatch one decoded message."""
        match message:
            case WireResponse(call_id, result, error):
                pending = self._callbacks.pop(call_id, None)
                if pending is None:
                    logger.warning("Cannot find command to respond: %d", call_id)
                    return
                if error is not None:
                    pending.waiter.complete_with_exception(BrowserWireError.from_wire(error))
                else:
                    pending.waiter.complete(result)

            case WireControl(op=ControlOp.CREATE):
                if message.type is None:
                    raise ProtocolError(f"Create of {message.guid} has no type")
                self.create(
                    message.guid,
                    message.type,
                    message.parent_guid,
                    message.initializer,
                )

            case WireControl(op=ControlOp.DISPOSE):
                if message.guid not in self._objects:
                    logger.debug("Dispose of unknown object %s ignored", message.guid)
                self.dispose(message.guid)

            case WireEvent(guid, method, params):
                obj = self._objects.get(guid)
                if obj is None:
                    logger.warning("Cannot find object to call %s: %s", method, guid)
                    return
                obj.handle_event(method, params)

            case WireRequest():
                logger.warning("Ignoring request frame sent by the driver: %s", message.method)

    def _fail_attributable_call(self, data: str | bytes, error: ProtocolError) -> bool:
        try:
            obj = json.loads(data)
        except (TypeError, ValueError):
            return False
        if not isinstance(obj, dict):
            return False
        call_id = obj.get("id")
        if not is_int_not_bool(call_id):
            return False
        pending = self._callbacks.pop(call_id, None)
        if pending is None:
            return False
        pending.waiter.complete_with_exception(error)
        return True

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._close_reason is not None:
            if isinstance(self._close_reason, TargetClosedError):
                raise self._close_reason
            raise TargetClosedError(f"Connection closed: {self._close_reason}")

    def _fail_calls(self, reason: Exception, guid: str | None = None) -> None:
        for call_id, pending in list(self._callbacks.items()):
            if guid is None or pending.guid == guid:
                del self._callbacks[call_id]
                pending.waiter.complete_with_exception(reason)

    def _abort(self, reason: Exception, abort_transport: bool = True) -> None:
        """Close the connection: fail calls, dispose everything, notify.

        Args:
            reason: Error delivered to every pending call and wait
            abort_transport: Whether to tell the transport to shut down
        """
        if self._close_reason is not None:
            return
        self._close_reason = reason

        self._fail_calls(reason)
        if self._root.guid in self._objects:
            self._dispose_subtree(self._root, reason)

        if abort_transport:
            abort = getattr(self.transport, "abort", None)
            if abort is not None:
                try:
                    abort(reason)
                except Exception:
                    logger.exception("Transport abort failed")

        self.listeners.notify(EventType.CLOSE, reason)
        self.listeners.clear()
