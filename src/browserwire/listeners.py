"""Per-object event listener registry.

Every proxy owns one ListenerCollection. Listeners are plain callables
taking the event payload. A listener returning an awaitable is scheduled as a
task on the running loop so that async handlers can perform nested waits
without blocking dispatch of the next frame.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]
K = TypeVar("K", bound=Hashable)


def _same_listener(registered: Listener, listener: Listener) -> bool:
    if registered is listener:
        return True
    if inspect.ismethod(registered) and inspect.ismethod(listener):
        return (
            registered.__self__ is listener.__self__
            and registered.__func__ is listener.__func__
        )
    return False


class EventType(str, Enum):
    """Events a proxy can notify its listeners about."""

    CLOSE = "close"
    CONSOLE = "console"
    CRASH = "crash"
    DIALOG = "dialog"
    DOMCONTENTLOADED = "domcontentloaded"
    DOWNLOAD = "download"
    DISCONNECTED = "disconnected"
    FILECHOOSER = "filechooser"
    FRAMEATTACHED = "frameattached"
    FRAMEDETACHED = "framedetached"
    FRAMENAVIGATED = "framenavigated"
    FRAMERECEIVED = "framereceived"
    FRAMESENT = "framesent"
    LOAD = "load"
    PAGE = "page"
    PAGEERROR = "pageerror"
    POPUP = "popup"
    REQUEST = "request"
    REQUESTFAILED = "requestfailed"
    REQUESTFINISHED = "requestfinished"
    RESPONSE = "response"
    SOCKETERROR = "socketerror"
    WEBSOCKET = "websocket"
    WORKER = "worker"
    # Terminal notification fired on a proxy right before it leaves the registry
    DISPOSED = "disposed"
    # Connection-level: a proxy was added to the registry
    CREATED = "created"

    @classmethod
    def for_method(cls, method: str) -> EventType | None:
        """Map a driver event method name (e.g. "frameSent") to an EventType."""
        try:
            return cls(method.lower())
        except ValueError:
            return None


class ListenerCollection(Generic[K]):
    """Ordered, per-event-type multi-consumer registry.

    Duplicate registrations are allowed; each one is removed independently.
    """

    __slots__ = ("_listeners", "_pending_tasks")

    def __init__(self) -> None:
        self._listeners: dict[K, list[Listener]] = {}
        self._pending_tasks: set[asyncio.Task[Any]] = set()

    def add(self, event_type: K, listener: Listener) -> None:
        """Append a listener for event_type."""
        self._listeners.setdefault(event_type, []).append(listener)

    def remove(self, event_type: K, listener: Listener) -> None:
        """Remove the first registration of listener; no-op if absent.

        Registrations match by identity. Bound methods are recreated on every
        attribute access, so they match on their instance and function.
        """
        listeners = self._listeners.get(event_type)
        if listeners is None:
            return
        for i, registered in enumerate(listeners):
            if _same_listener(registered, listener):
                del listeners[i]
                break
        if not listeners:
            del self._listeners[event_type]

    def has_listeners(self, event_type: K) -> bool:
        return event_type in self._listeners

    def count(self, event_type: K) -> int:
        return len(self._listeners.get(event_type, ()))

    def clear(self) -> None:
        self._listeners.clear()

    def notify(self, event_type: K, payload: Any = None) -> int:
        """Invoke every listener registered for event_type, in order.

        Iterates a snapshot, so listeners may add or remove listeners
        (including themselves) without affecting the current pass. A listener
        that raises is logged and skipped.

        Args:
            event_type: The event being delivered
            payload: Argument passed to each listener

        Returns:
            The number of listeners invoked
        """
        listeners = self._listeners.get(event_type)
        if not listeners:
            return 0

        snapshot = tuple(listeners)
        for listener in snapshot:
            try:
                result = listener(payload)
            except Exception:
                logger.exception("Listener for %s failed", event_type)
                continue
            if inspect.isawaitable(result):
                self._schedule(event_type, result)
        return len(snapshot)

    def _schedule(self, event_type: K, awaitable: Any) -> None:
        async def run() -> None:
            try:
                await awaitable
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Async listener for %s failed", event_type)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop for async listener of %s", event_type)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(run())
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)
