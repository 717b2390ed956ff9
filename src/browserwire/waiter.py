"""One-shot completion cell.

A Waiter starts pending and transitions exactly once, to either a value or
an error. Later completion attempts are ignored, which is what makes the
race between an event, a timeout and an owner closing safe: whichever
fires first wins.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum, auto
from typing import Any, Callable, Generic, TypeVar, cast

from browserwire.error import UsageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WaiterState(Enum):
    PENDING = auto()
    COMPLETED = auto()
    FAILED = auto()


class Waiter(Generic[T]):
    """One-shot result slot used for RPC responses and event waits.

    Usage:
        waiter = Waiter()
        waiter.add_disposer(lambda: page.off("popup", on_popup))
        ...
        try:
            value = await waiter.wait()
        finally:
            waiter.dispose()
    """

    __slots__ = ("_state", "_value", "_error", "_event", "_disposers", "_disposed")

    def __init__(self) -> None:
        self._state = WaiterState.PENDING
        self._value: T | None = None
        self._error: BaseException | None = None
        self._event = asyncio.Event()
        self._disposers: list[Callable[[], Any]] = []
        self._disposed = False

    def __repr__(self) -> str:
        return f"Waiter({self._state.name})"

    @property
    def state(self) -> WaiterState:
        return self._state

    def complete(self, value: T) -> bool:
        """Record a successful outcome.

        Returns:
            True if this call performed the transition, False if the waiter
            had already finished
        """
        if self._state is not WaiterState.PENDING:
            return False
        self._value = value
        self._state = WaiterState.COMPLETED
        self._event.set()
        return True

    def complete_with_exception(self, error: BaseException) -> bool:
        """Record a failed outcome. Same first-write-wins rule as complete()."""
        if self._state is not WaiterState.PENDING:
            return False
        self._error = error
        self._state = WaiterState.FAILED
        self._event.set()
        return True

    def is_finished(self) -> bool:
        return self._state is not WaiterState.PENDING

    def get(self) -> T:
        """Return the recorded value or raise the recorded error.

        The original error object is re-raised, so a TimeoutError stays a
        TimeoutError for callers branching on type.

        Raises:
            UsageError: If the waiter has not finished yet
        """
        if self._state is WaiterState.PENDING:
            raise UsageError("Waiter result read before it finished")
        if self._state is WaiterState.FAILED:
            raise cast(BaseException, self._error)
        return self._value  # type: ignore[return-value]

    async def wait(self) -> T:
        """Suspend until the waiter finishes, then return get()."""
        await self._event.wait()
        return self.get()

    def add_disposer(self, disposer: Callable[[], Any]) -> None:
        """Register a cleanup callback run once by dispose().

        If the waiter was already disposed, the callback runs immediately.
        """
        if self._disposed:
            disposer()
            return
        self._disposers.append(disposer)

    def dispose(self) -> None:
        """Release the listeners and timers tied to this waiter.

        Idempotent. Does not change the recorded outcome.
        """
        if self._disposed:
            return
        self._disposed = True
        disposers, self._disposers = self._disposers, []
        for disposer in reversed(disposers):
            try:
                disposer()
            except Exception:
                logger.exception("Waiter disposer failed")
