"""Monotonic deadlines for the run and its stages."""

from __future__ import annotations

import time
from collections.abc import Callable


class Deadline:
    """A point in monotonic time after which work must stop.

    Args:
        seconds: Seconds from now.
        clock: Monotonic clock (injectable for tests).

    Examples:
        >>> ticks = iter([0.0, 4.0])
        >>> deadline = Deadline(10.0, clock=lambda: next(ticks))
        >>> deadline.remaining()
        6.0
    """

    __slots__ = ("_clock", "_expires_at", "seconds")

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if seconds <= 0:
            raise ValueError(f"Deadline must be positive, got {seconds}")
        self._clock = clock
        self.seconds = seconds
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        """Whether no time is left."""
        return self.remaining() <= 0

    def child(self, seconds: float) -> Deadline:
        """Nested deadline that never outlives this one."""
        return Deadline(max(min(seconds, self.remaining()), 1e-9), clock=self._clock)

    def cap(self, timeout: float | None) -> float:
        """Clamp ``timeout`` (None means unbounded) to the remaining time."""
        remaining = self.remaining()
        return remaining if timeout is None else min(timeout, remaining)

    def __repr__(self) -> str:
        return f"Deadline(seconds={self.seconds:g}, remaining={self.remaining():.1f})"


__all__ = ["Deadline"]
