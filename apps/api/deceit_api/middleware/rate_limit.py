"""In-process sliding window rate limiter keyed by agent id."""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Callable


class InMemoryRateLimiter:
    """Sliding-window limiter; each key gets ``max_requests`` per ``window_seconds``."""

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(1, int(window_seconds))
        self._clock = clock
        self._buckets: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> list[float]:
        bucket = self._buckets[key]
        cutoff = now - self.window_seconds
        bucket[:] = [t for t in bucket if t > cutoff]
        return bucket

    def check(self, key: str) -> bool:
        """Return True if the request is allowed, False if rate-limited."""
        now = self._clock()
        with self._lock:
            bucket = self._prune(key, now)
            if len(bucket) >= self.max_requests:
                return False
            bucket.append(now)
            return True

    def retry_after_seconds(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            bucket = self._prune(key, now)
            if len(bucket) < self.max_requests:
                return 0
            return max(1, int(bucket[0] + self.window_seconds - now + 0.999))

    def reset(self) -> None:
        """Clear all buckets (for testing)."""
        with self._lock:
            self._buckets.clear()
