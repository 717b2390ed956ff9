"""Timeout resolution for waits.

Settings form a chain (page -> context -> connection). A call resolves its
timeout as: explicit option, then the nearest link with a default set, then
the connection-wide default, then 30 seconds. A timeout of 0 means the wait
never times out.
"""

from __future__ import annotations

from browserwire.config import DEFAULT_TIMEOUT_MS


class TimeoutSettings:
    """One link of the timeout chain.

    Attributes:
        default_timeout: Default for this link in ms, or None to inherit
        default_navigation_timeout: Navigation default in ms, or None to inherit
    """

    __slots__ = ("_parent", "default_timeout", "default_navigation_timeout")

    def __init__(
        self,
        parent: TimeoutSettings | None = None,
        default_timeout: float | None = None,
    ) -> None:
        self._parent = parent
        self.default_timeout = default_timeout
        self.default_navigation_timeout: float | None = None

    @property
    def parent(self) -> TimeoutSettings | None:
        return self._parent

    def timeout(self, timeout: float | None = None) -> float:
        """Resolve the effective timeout in milliseconds."""
        if timeout is not None:
            return timeout
        if self.default_timeout is not None:
            return self.default_timeout
        if self._parent is not None:
            return self._parent.timeout()
        return DEFAULT_TIMEOUT_MS

    def navigation_timeout(self, timeout: float | None = None) -> float:
        """Resolve the effective navigation timeout in milliseconds."""
        if timeout is not None:
            return timeout
        if self.default_navigation_timeout is not None:
            return self.default_navigation_timeout
        if self.default_timeout is not None:
            return self.default_timeout
        if self._parent is not None:
            return self._parent.navigation_timeout()
        return DEFAULT_TIMEOUT_MS
