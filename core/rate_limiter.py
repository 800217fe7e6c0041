"""
Token bucket admission control.

Shared by the upstream extractor (rejection means back off and retry) and the
search service (rejection means HTTP 429). The check never blocks: callers
decide how to wait.
"""

import threading
import time
from typing import Callable, Optional


class TokenBucketRateLimiter:
    """
    Non-blocking token bucket.

    Holds up to ``capacity`` tokens, refilled continuously at ``refill_rate``
    tokens per second. ``try_acquire`` is O(1) and thread-safe; the pair
    (tokens, last_refill) is only touched under the lock.
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        clock: Optional[Callable[[], float]] = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")

        self.capacity = int(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock or time.perf_counter
        self._tokens = float(self.capacity)
        self._last_refill = self._clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)

    def try_acquire(self, count: int = 1) -> bool:
        """Take ``count`` tokens if available. Returns False without waiting otherwise."""
        if count <= 0:
            raise ValueError("count must be > 0")

        with self._lock:
            self._refill()
            if self._tokens >= count:
                self._tokens -= count
                return True
            return False

    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def seconds_until_available(self, count: int = 1) -> float:
        """Time until ``count`` tokens will be in the bucket; used for Retry-After."""
        with self._lock:
            self._refill()
            missing = count - self._tokens
            if missing <= 0:
                return 0.0
            return missing / self.refill_rate

    def reset(self) -> None:
        with self._lock:
            self._tokens = float(self.capacity)
            self._last_refill = self._clock()
