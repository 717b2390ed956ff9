"""Error taxonomy for browserwire.

All errors raised by the connection, the waiter and the wait bridge derive
from BrowserWireError, so callers can branch on the concrete class or on
``error.code``.
"""

from __future__ import annotations

import builtins
from enum import Enum
from typing import Any


class ErrorCode(Enum):
    """Kinds of failure surfaced to callers."""

    TIMEOUT = "timeout"
    TARGET_CLOSED = "target_closed"
    PROTOCOL = "protocol"
    USAGE = "usage"


class BrowserWireError(Exception):
    """Base class for every error raised by this package.

    Attributes:
        code: The error kind
        message: Human readable description
    """

    code: ErrorCode = ErrorCode.PROTOCOL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"

    @classmethod
    def timeout(cls, message: str) -> TimeoutError:
        return TimeoutError(message)

    @classmethod
    def target_closed(cls, message: str = "Target closed") -> TargetClosedError:
        return TargetClosedError(message)

    @classmethod
    def protocol(cls, message: str) -> ProtocolError:
        return ProtocolError(message)

    @classmethod
    def usage(cls, message: str) -> UsageError:
        return UsageError(message)

    @classmethod
    def from_wire(cls, error: Any) -> BrowserWireError:
        """Convert a server-reported error payload into a typed error.

        The driver reports failures as ``{"error": {"name", "message",
        "stack"}}``; older drivers send a bare ``{"message": ...}``.

        Args:
            error: The ``error`` member of a response frame

        Returns:
            TimeoutError when the server says so, ProtocolError otherwise
        """
        if not isinstance(error, dict):
            return ProtocolError(str(error))

        inner = error.get("error")
        if not isinstance(inner, dict):
            return ProtocolError(str(error.get("message", error)))

        name = inner.get("name")
        message = inner.get("message") or str(inner)
        if name == "TimeoutError":
            return TimeoutError(message)
        return ProtocolError(message, name=name, stack=inner.get("stack"))


class TimeoutError(BrowserWireError, builtins.TimeoutError):
    """A wait exceeded its deadline."""

    code = ErrorCode.TIMEOUT


class TargetClosedError(BrowserWireError):
    """The owning object or the connection closed while an operation was pending."""

    code = ErrorCode.TARGET_CLOSED


class ProtocolError(BrowserWireError):
    """Malformed message, protocol desync, or a server-reported method failure."""

    code = ErrorCode.PROTOCOL

    def __init__(
        self,
        message: str,
        name: str | None = None,
        stack: str | None = None,
    ) -> None:
        super().__init__(message)
        self.name = name
        self.stack = stack


class UsageError(BrowserWireError):
    """Caller misuse, e.g. reading a waiter that has not finished."""

    code = ErrorCode.USAGE


_SAFE_CLOSE_MESSAGES = (
    "Target closed",
    "Target page, context or browser has been closed",
    "Browser has been closed",
    "Browser has disconnected",
)


def is_safe_close_error(error: BaseException) -> bool:
    """Whether an error from a ``close`` call only says the target is already gone."""
    if isinstance(error, TargetClosedError):
        return True
    if not isinstance(error, BrowserWireError):
        return False
    return any(error.message.endswith(m) for m in _SAFE_CLOSE_MESSAGES)
