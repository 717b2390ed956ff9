"""Local proxies for remote protocol objects.

A ChannelOwner is the local stand-in for an object living in the browser
driver. It is always created and destroyed by its Connection: children are
tracked as a set of guids resolved through the Connection's registry, and
the parent is held through a weak reference, so disposal never has to
untangle object cycles.
"""

from __future__ import annotations

import logging
import weakref
from typing import TYPE_CHECKING, Any

from browserwire.listeners import EventType, Listener, ListenerCollection
from browserwire.timeouts import TimeoutSettings
from browserwire.waits import (
    Action,
    Predicate,
    WaitFailure,
    closed_error,
    coerce_event,
    wait_for_event,
)

if TYPE_CHECKING:
    from browserwire.connection import Connection

logger = logging.getLogger(__name__)


class ChannelOwner:
    """Proxy for one remote object.

    Attributes:
        guid: Identifier assigned by the driver
        type: Remote type name (e.g. "Page")
        initializer: Initial state sent with the object's creation
        children: Guids of the objects this proxy owns
        disposed: True once the connection disposed this proxy
        listeners: Event listener registry
    """

    def __init__(
        self,
        connection: Connection,
        parent: ChannelOwner | None,
        type: str,
        guid: str,
        initializer: dict[str, Any] | None = None,
    ) -> None:
        self._connection = connection
        self._parent_ref: weakref.ref[ChannelOwner] | None = (
            weakref.ref(parent) if parent is not None else None
        )
        self.type = type
        self.guid = guid
        self.initializer: dict[str, Any] = initializer or {}
        self.children: set[str] = set()
        self.disposed = False
        self.listeners: ListenerCollection[EventType] = ListenerCollection()

    def __repr__(self) -> str:
        state = " disposed" if self.disposed else ""
        return f"<{type(self).__name__} guid={self.guid!r}{state}>"

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def parent(self) -> ChannelOwner | None:
        if self._parent_ref is None:
            return None
        return self._parent_ref()

    @property
    def timeout_settings(self) -> TimeoutSettings:
        """Timeout chain used by waits on this object (inherited from parent)."""
        parent = self.parent
        if parent is not None:
            return parent.timeout_settings
        return self._connection.timeout_settings

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on(self, event: EventType | str, listener: Listener) -> None:
        """Register listener for event."""
        self.listeners.add(coerce_event(event), listener)

    def off(self, event: EventType | str, listener: Listener) -> None:
        """Unregister one registration of listener."""
        self.listeners.remove(coerce_event(event), listener)

    def once(self, event: EventType | str, listener: Listener) -> None:
        """Register listener for the next occurrence of event only."""
        event = coerce_event(event)

        def wrapper(payload: Any) -> Any:
            self.listeners.remove(event, wrapper)
            return listener(payload)

        self.listeners.add(event, wrapper)

    def emit(self, event: EventType | str, payload: Any = None) -> int:
        """Notify listeners of event. Returns how many were invoked."""
        return self.listeners.notify(coerce_event(event), payload)

    def handle_event(self, method: str, params: dict[str, Any]) -> None:
        """Handle an event frame addressed to this object.

        The default maps the method name onto an EventType and forwards the
        raw params. Subclasses translate params into richer payloads.
        """
        event = EventType.for_method(method)
        if event is None:
            logger.debug("%r ignoring unknown event %s", self, method)
            return
        self.emit(event, params)

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    async def send(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call a method on the remote object and return its result."""
        return await self._connection.call(self.guid, method, params)

    def send_no_reply(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Call a method without waiting for (or checking) the response."""
        self._connection.send_no_reply(self.guid, method, params)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def dispose(self) -> None:
        """Dispose this proxy and its whole subtree."""
        self._connection.dispose(self.guid)

    def _on_created(self) -> None:
        """Called once the proxy is registered and attached to its parent."""

    def _on_dispose(self) -> None:
        """Called during disposal, before the DISPOSED notification."""

    # -------------------------------------------------------------------------
    # Waits
    # -------------------------------------------------------------------------

    def wait_failures(self) -> list[WaitFailure]:
        """Events that abort a wait on this object.

        Disposal of this proxy (which covers disposal of any ancestor and of
        the connection) always aborts the wait.
        """
        return [
            WaitFailure(
                self.listeners,
                EventType.DISPOSED,
                closed_error(f"{self.type} has been closed"),
            )
        ]

    async def wait_for_event(
        self,
        event: EventType | str,
        predicate: Predicate | None = None,
        timeout: float | None = None,
        action: Action | None = None,
    ) -> Any:
        """Wait for the next matching event, optionally running a trigger first.

        Args:
            event: Event to wait for
            predicate: Optional filter on the event payload
            timeout: Timeout in ms (None = default chain, 0 = no timeout)
            action: Trigger action; sync callable or coroutine function

        Returns:
            The event payload

        Raises:
            TimeoutError: If no matching event arrived in time
            TargetClosedError: If the object (or its owner) closed first
        """
        return await wait_for_event(self, event, predicate, timeout, action)


class Root(ChannelOwner):
    """Implicit root of the object tree (guid "")."""

    def __init__(self, connection: Connection) -> None:
        super().__init__(connection, None, "Root", "")

