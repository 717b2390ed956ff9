"""Event waits: the machinery behind every ``wait_for_*`` call.

A wait is a Waiter armed with up to three kinds of triggers:

1. an event listener that completes it when a matching event arrives
2. a timer that fails it with TimeoutError
3. failure listeners on the owning objects (close, crash, disposal) that
   fail it with TargetClosedError

run_until() then runs the caller's trigger action and awaits the Waiter.
The Connection's reader task keeps dispatching frames while we await, so a
trigger action may itself perform nested waits on the same connection.
Every trigger is unregistered on every exit path via Waiter.dispose().
"""

from __future__ import annotations

import asyncio
import inspect
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Hashable

from browserwire.error import TargetClosedError, TimeoutError, UsageError
from browserwire.listeners import EventType, ListenerCollection
from browserwire.waiter import Waiter

if TYPE_CHECKING:
    from browserwire.channel_owner import ChannelOwner

Predicate = Callable[[Any], bool]
Action = Callable[[], Awaitable[Any] | Any]


@dataclass(frozen=True, slots=True)
class WaitFailure:
    """An event that aborts a wait.

    Attributes:
        listeners: Where to listen
        event: Which event aborts the wait
        error: Builds the error from the event payload
    """

    listeners: ListenerCollection[Any]
    event: Hashable
    error: Callable[[Any], BaseException]


def closed_error(message: str) -> Callable[[Any], BaseException]:
    """Error factory for close-like events.

    A payload that is already an exception (the disposal reason) wins over
    the fixed message, so a protocol desync surfaces as ProtocolError.
    """
    def build(payload: Any) -> BaseException:
        if isinstance(payload, BaseException):
            return payload
        return TargetClosedError(message)
    return build


def format_timeout(timeout_ms: float) -> str:
    return f"Timeout {timeout_ms:g}ms exceeded."


def arm_event(
    waiter: Waiter[Any],
    listeners: ListenerCollection[Any],
    event: Hashable,
    predicate: Predicate | None = None,
) -> None:
    """Complete waiter with the payload of the first matching event."""
    def on_event(payload: Any) -> None:
        if waiter.is_finished():
            return
        if predicate is not None:
            try:
                if not predicate(payload):
                    return
            except Exception as e:
                waiter.complete_with_exception(e)
                return
        waiter.complete(payload)

    listeners.add(event, on_event)
    waiter.add_disposer(lambda: listeners.remove(event, on_event))


def arm_failure(waiter: Waiter[Any], failure: WaitFailure) -> None:
    """Fail waiter when failure.event fires."""
    def on_failure(payload: Any) -> None:
        if not waiter.is_finished():
            waiter.complete_with_exception(failure.error(payload))

    failure.listeners.add(failure.event, on_failure)
    waiter.add_disposer(lambda: failure.listeners.remove(failure.event, on_failure))


def arm_timeout(waiter: Waiter[Any], timeout_ms: float | None) -> None:
    """Fail waiter with TimeoutError once timeout_ms has elapsed.

    None or 0 means no timeout. The timer re-arms itself if the loop wakes
    it early, so the waiter never fails before the full timeout.
    """
    if not timeout_ms:
        return
    if timeout_ms < 0:
        raise UsageError(f"Timeout must be non-negative, got {timeout_ms}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0
    handle: asyncio.TimerHandle | None = None

    def fire() -> None:
        nonlocal handle
        remaining = deadline - loop.time()
        if remaining > 0:
            handle = loop.call_later(remaining, fire)
            return
        waiter.complete_with_exception(TimeoutError(format_timeout(timeout_ms)))

    def cancel() -> None:
        if handle is not None:
            handle.cancel()

    handle = loop.call_later(timeout_ms / 1000.0, fire)
    waiter.add_disposer(cancel)


async def run_until(waiter: Waiter[Any], action: Action | None = None) -> Any:
    """Run the trigger action, then await waiter; always dispose it.

    Args:
        waiter: An armed waiter
        action: Optional sync callable or coroutine function that triggers
            the awaited event

    Returns:
        The waiter's value

    Raises:
        TimeoutError, TargetClosedError, ProtocolError from the waiter, or
        whatever the action raised
    """
    try:
        if action is not None:
            result = action()
            if inspect.isawaitable(result):
                await result
        return await waiter.wait()
    finally:
        waiter.dispose()


def coerce_event(event: EventType | str) -> EventType:
    if isinstance(event, EventType):
        return event
    resolved = EventType.for_method(event)
    if resolved is None:
        raise UsageError(f"Unknown event: {event}")
    return resolved


async def wait_for_event(
    owner: ChannelOwner,
    event: EventType | str,
    predicate: Predicate | None = None,
    timeout: float | None = None,
    action: Action | None = None,
) -> Any:
    """Wait for ``event`` on ``owner``, running ``action`` as the trigger.

    The listener is registered before the action runs; events that were
    delivered earlier are never replayed.

    Args:
        owner: The proxy that emits the event
        event: Event to wait for
        predicate: Optional filter on the event payload
        timeout: Timeout in ms; None uses the owner's default chain, 0 waits
            forever
        action: Optional trigger (sync callable or coroutine function)

    Returns:
        The payload of the first matching event
    """
    event = coerce_event(event)
    if owner.disposed:
        raise TargetClosedError(f"{owner.type} {owner.guid} is already disposed")

    waiter: Waiter[Any] = Waiter()
    try:
        arm_event(waiter, owner.listeners, event, predicate)
        for failure in owner.wait_failures():
            if failure.listeners is owner.listeners and failure.event == event:
                continue
            arm_failure(waiter, failure)
        arm_timeout(waiter, owner.timeout_settings.timeout(timeout))
    except BaseException:
        waiter.dispose()
        raise
    return await run_until(waiter, action)


async def wait_for_timeout(timeout_ms: float) -> None:
    """Sleep for timeout_ms milliseconds."""
    await asyncio.sleep(timeout_ms / 1000.0)


def glob_to_regex(glob: str) -> str:
    """Translate a URL glob into a regex.

    Supports ``**`` (any characters), ``*`` (anything but ``/``), ``?`` and
    ``{a,b}`` alternation.
    """
    tokens = ["^"]
    in_group = False
    i = 0
    while i < len(glob):
        c = glob[i]
        if c == "\\" and i + 1 < len(glob):
            tokens.append(re.escape(glob[i + 1]))
            i += 2
            continue
        if c == "*":
            if glob[i + 1:i + 2] == "*":
                tokens.append(".*")
                i += 2
                continue
            tokens.append("[^/]*")
        elif c == "?":
            tokens.append(".")
        elif c == "{":
            in_group = True
            tokens.append("(")
        elif c == "}" and in_group:
            in_group = False
            tokens.append(")")
        elif c == "," and in_group:
            tokens.append("|")
        else:
            tokens.append(re.escape(c))
        i += 1
    tokens.append("$")
    return "".join(tokens)


class UrlMatcher:
    """Matches URLs against a glob, a compiled regex or a predicate."""

    __slots__ = ("_source", "_test")

    def __init__(self, source: Any, test: Callable[[str], bool] | None) -> None:
        self._source = source
        self._test = test

    @classmethod
    def for_one_of(cls, url: Any) -> UrlMatcher:
        if url is None:
            return cls(None, None)
        if isinstance(url, str):
            if not url:
                return cls(url, None)
            pattern = re.compile(glob_to_regex(url))
            return cls(url, lambda s: s == url or pattern.search(s) is not None)
        if isinstance(url, re.Pattern):
            return cls(url, lambda s: url.search(s) is not None)
        if callable(url):
            return cls(url, url)
        raise UsageError(
            f"Url must be str, re.Pattern or a predicate, found: {type(url).__name__}"
        )

    def test(self, value: str) -> bool:
        return self._test is None or bool(self._test(value))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UrlMatcher):
            return NotImplemented
        return self._source == other._source

    def __hash__(self) -> int:
        return hash(self._source) if not callable(self._source) else id(self._source)
