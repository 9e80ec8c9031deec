"""Per-cycle deadline threaded through every blocking call of a reconcile."""
from __future__ import annotations

import time
from typing import Optional

from slipway.errors import DeadlineExceededError


class Deadline:
    """A point on the monotonic clock after which a reconcile cycle must stop."""

    def __init__(self, timeout_s: float, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + timeout_s

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, what: str) -> None:
        """Raise ``DeadlineExceededError`` if there is no time left for *what*."""
        if self.expired():
            raise DeadlineExceededError(f"deadline exceeded before {what}")

    def bound(self, timeout_s: float) -> float:
        """Clamp a per-request timeout so it never outlives the deadline."""
        return min(timeout_s, self.remaining())


def bounded_timeout(deadline: Optional[Deadline], timeout_s: float, what: str) -> float:
    if deadline is None:
        return timeout_s
    deadline.check(what)
    return deadline.bound(timeout_s)
