from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from ..models import BreakerStatus
from ..utils import log_event

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure breaker guarding a cache or queue backend.

    Closed: every call goes to the backend. After ``threshold`` consecutive
    failures it opens and callers bypass the backend until ``cooldown_seconds``
    have passed. The first caller after the cool-down becomes the half-open
    probe; everyone else keeps bypassing until the probe reports back.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 10,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.name = name
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._logger = logger or logging.getLogger("newsharvest.breaker")
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failures = 0
        self._last_failure_at: float | None = None
        self._opened_until: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CLOSED:
                return True
            now = self._clock()
            if self._state == OPEN:
                if self._opened_until is not None and now < self._opened_until:
                    return False
                self._state = HALF_OPEN
                self._probe_in_flight = True
                log_event(self._logger, logging.INFO, "breaker_half_open", breaker=self.name)
                return True
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            was_open = self._state != CLOSED
            self._state = CLOSED
            self._failures = 0
            self._opened_until = None
            self._probe_in_flight = False
        if was_open:
            log_event(self._logger, logging.INFO, "breaker_closed", breaker=self.name)

    def record_failure(self, error: str | None = None) -> None:
        opened = False
        with self._lock:
            now = self._clock()
            self._failures += 1
            self._last_failure_at = now
            if self._state == HALF_OPEN or self._failures >= self.threshold:
                opened = self._state != OPEN
                self._state = OPEN
                self._opened_until = now + self.cooldown_seconds
                self._probe_in_flight = False
            failures = self._failures
        if opened:
            log_event(
                self._logger,
                logging.WARNING,
                "breaker_opened",
                breaker=self.name,
                failures=failures,
                cooldown_seconds=self.cooldown_seconds,
                error=error,
            )

    def reset(self) -> None:
        with self._lock:
            self._state = CLOSED
            self._failures = 0
            self._last_failure_at = None
            self._opened_until = None
            self._probe_in_flight = False
        log_event(self._logger, logging.INFO, "breaker_reset", breaker=self.name)

    def status(self) -> BreakerStatus:
        with self._lock:
            return BreakerStatus(
                state=self._state,
                failures=self._failures,
                threshold=self.threshold,
                cooldown_seconds=self.cooldown_seconds,
                last_failure_at=self._last_failure_at,
                opened_until=self._opened_until,
                probe_in_flight=self._probe_in_flight,
            )
