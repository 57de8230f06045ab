from __future__ import annotations

import threading
import time
from typing import Any, Callable

from ..ports import Completion


class MinIntervalRateLimiter:
    """Spaces calls at least ``min_interval_seconds`` apart across all threads."""

    def __init__(
        self,
        min_interval_seconds: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> float:
        """Blocks until the caller's slot; returns the seconds waited."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval_seconds
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay


class RateLimitedCompletion:
    def __init__(self, inner: Completion, limiter: MinIntervalRateLimiter) -> None:
        self.inner = inner
        self.limiter = limiter

    def classify(self, prompt: str) -> dict[str, Any]:
        self.limiter.acquire()
        return self.inner.classify(prompt)

    def generate_title(self, content: str) -> dict[str, Any]:
        self.limiter.acquire()
        return self.inner.generate_title(content)
