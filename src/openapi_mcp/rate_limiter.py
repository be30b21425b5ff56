"""Process-local token bucket rate limiter."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .errors import RateLimitError


logger = logging.getLogger(__name__)


def _monotonic_millis() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """Token bucket whose limit, window and burst are supplied on every call.

    The bucket starts full. Tokens refill continuously at ``limit / window_ms``
    per millisecond up to ``burst`` (defaults to ``limit``); each admitted call
    consumes exactly one token.
    """

    def __init__(self, clock: Callable[[], float] = _monotonic_millis) -> None:
        self.clock = clock
        self.capacity: Optional[float] = None
        self.refill_rate_per_ms = 0.0
        self.tokens = 0.0
        self.last_refill: Optional[float] = None
        self._lock = threading.Lock()

    def acquire(
        self,
        limit: Optional[float],
        window_ms: float = 60_000,
        burst: Optional[float] = None,
    ) -> None:
        if not limit or limit <= 0:
            return

        capacity = burst if burst and burst > 0 else limit
        window = window_ms if window_ms and window_ms > 0 else 60_000

        with self._lock:
            now = self.clock()
            if self.last_refill is None:
                self.tokens = capacity
            else:
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(capacity, self.tokens + elapsed * limit / window)
            self.capacity = capacity
            self.refill_rate_per_ms = limit / window
            self.last_refill = now

            if self.tokens < 1:
                logger.warning("Rate limit exceeded (limit=%s window_ms=%s)", limit, window)
                raise RateLimitError("Rate limit exceeded")
            self.tokens -= 1
