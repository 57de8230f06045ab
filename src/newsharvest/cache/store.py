from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, TypeVar

from ..errors import TransientInfrastructureError
from ..utils import json_dumps, log_event
from .backends import CacheBackend
from .breaker import CircuitBreaker

T = TypeVar("T")

DEFAULT_TTL_CLASSES = {
    "scrape": 3600,
    "config": 600,
    "token": 300,
    "static": 86400,
    "search": 1800,
    "stats": 300,
    "user": 600,
}

_BYPASS = object()


class CacheStats:
    FIELDS = ("hits", "misses", "errors", "sets", "deletes", "bypassed")

    def __init__(
        self,
        reset_operations: int = 1_000_000,
        reset_interval_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._reset_operations = reset_operations
        self._reset_interval = reset_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._counters = {name: 0 for name in self.FIELDS}
        self._started = clock()
        self._previous: dict[str, Any] | None = None

    def record(self, field: str, amount: int = 1) -> None:
        with self._lock:
            self._maybe_reset_locked()
            self._counters[field] += amount

    def _maybe_reset_locked(self) -> None:
        now = self._clock()
        total = sum(self._counters.values())
        if total < self._reset_operations and now - self._started < self._reset_interval:
            return
        self._previous = self._summary_locked(now)
        self._counters = {name: 0 for name in self.FIELDS}
        self._started = now

    def _summary_locked(self, now: float) -> dict[str, Any]:
        counters = dict(self._counters)
        lookups = counters["hits"] + counters["misses"]
        total = sum(counters.values())
        elapsed = max(now - self._started, 1e-9)
        counters["hit_rate"] = round(counters["hits"] / lookups, 4) if lookups else 0.0
        counters["total_operations"] = total
        counters["period_seconds"] = round(now - self._started, 3)
        counters["ops_per_second"] = round(total / elapsed, 3) if total else 0.0
        return counters

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._maybe_reset_locked()
            data = self._summary_locked(self._clock())
            data["previous_period"] = dict(self._previous) if self._previous else None
            return data


class CacheStore:
    """Cache-aside store. Backend trouble never reaches the caller."""

    def __init__(
        self,
        backend: CacheBackend,
        breaker: CircuitBreaker | None = None,
        ttl_classes: dict[str, int] | None = None,
        default_ttl: int = 300,
        stats: CacheStats | None = None,
        writer_threads: int = 2,
        purge_every_writes: int = 500,
        logger: logging.Logger | None = None,
    ) -> None:
        self.backend = backend
        self.breaker = breaker or CircuitBreaker(f"cache:{backend.name}")
        self.ttl_classes = dict(DEFAULT_TTL_CLASSES if ttl_classes is None else ttl_classes)
        self.default_ttl = default_ttl
        self._stats = stats or CacheStats()
        self._logger = logger or logging.getLogger("newsharvest.cache")
        self._writer_logger = logging.getLogger("newsharvest.cache.writer")
        self._writer = ThreadPoolExecutor(
            max_workers=max(1, writer_threads), thread_name_prefix="cache-writer"
        )
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._purge_every = purge_every_writes
        self._writes_since_purge = 0
        self._purge_lock = threading.Lock()

    def ttl_for(self, key: str, override: int | None = None) -> tuple[int, str]:
        if override is not None:
            return int(override), "explicit"
        prefix = key.split(":", 1)[0]
        if prefix in self.ttl_classes:
            return self.ttl_classes[prefix], prefix
        return self.default_ttl, "default"

    def get_or_compute(self, key: str, compute: Callable[[], T], ttl: int | None = None) -> T:
        try:
            raw = self._call("get", self.backend.get, key)
        except TransientInfrastructureError:
            return compute()
        if raw is _BYPASS:
            return compute()
        if raw is not None:
            try:
                value = json.loads(raw)
            except json.JSONDecodeError:
                log_event(self._logger, logging.WARNING, "cache_corrupt_entry", key=key)
            else:
                self._stats.record("hits")
                return value
        self._stats.record("misses")
        value = compute()
        self._schedule_write(key, value, ttl)
        return value

    def get(self, key: str) -> Any | None:
        try:
            raw = self._call("get", self.backend.get, key)
        except TransientInfrastructureError:
            return None
        if raw is _BYPASS:
            return None
        if raw is None:
            self._stats.record("misses")
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            log_event(self._logger, logging.WARNING, "cache_corrupt_entry", key=key)
            self._stats.record("misses")
            return None
        self._stats.record("hits")
        return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        ttl_seconds, ttl_class = self.ttl_for(key, ttl)
        try:
            outcome = self._call(
                "set", self.backend.set, key, json_dumps(value), ttl_seconds, ttl_class
            )
        except TransientInfrastructureError:
            return False
        if outcome is _BYPASS:
            return False
        self._stats.record("sets")
        self._note_write()
        return True

    def delete(self, key: str) -> bool:
        try:
            outcome = self._call("delete", self.backend.delete, key)
        except TransientInfrastructureError:
            return False
        if outcome is _BYPASS:
            return False
        self._stats.record("deletes")
        return bool(outcome)

    def delete_by_prefix(self, prefix: str) -> int:
        prefix = prefix.rstrip("*")
        if not prefix:
            raise ValueError("refusing to delete by an empty prefix; use clear_all")
        try:
            outcome = self._call("delete_prefix", self.backend.delete_prefix, prefix)
        except TransientInfrastructureError:
            return 0
        if outcome is _BYPASS:
            return 0
        count = int(outcome)
        self._stats.record("deletes", count)
        log_event(self._logger, logging.INFO, "cache_prefix_invalidated", prefix=prefix, count=count)
        return count

    def exists(self, key: str) -> bool:
        try:
            outcome = self._call("exists", self.backend.exists, key)
        except TransientInfrastructureError:
            return False
        return outcome is not _BYPASS and bool(outcome)

    def ttl_remaining(self, key: str) -> float | None:
        try:
            outcome = self._call("ttl", self.backend.ttl, key)
        except TransientInfrastructureError:
            return None
        return None if outcome is _BYPASS else outcome

    def purge_expired(self) -> int:
        try:
            outcome = self._call("purge", self.backend.purge_expired)
        except TransientInfrastructureError:
            return 0
        if outcome is _BYPASS:
            return 0
        count = int(outcome)
        log_event(self._logger, logging.INFO, "cache_expired_purged", count=count)
        return count

    def clear_all(self) -> int:
        try:
            outcome = self._call("clear", self.backend.clear)
        except TransientInfrastructureError:
            return 0
        if outcome is _BYPASS:
            return 0
        log_event(self._logger, logging.WARNING, "cache_cleared", count=outcome)
        return int(outcome)

    def stats(self) -> dict[str, Any]:
        data = self._stats.snapshot()
        data["backend"] = self.backend.name
        data["breaker"] = self.breaker.status().to_dict()
        with self._pending_lock:
            data["pending_writes"] = len(self._pending)
        return data

    def health(self) -> dict[str, Any]:
        started = time.perf_counter()
        status = "healthy"
        error = None
        try:
            outcome = self._call("ping", self.backend.ping)
            if outcome is _BYPASS:
                status = "degraded"
        except TransientInfrastructureError as exc:
            status = "unhealthy"
            error = str(exc)
        return {
            "status": status,
            "backend": self.backend.name,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "breaker": self.breaker.state,
            "error": error,
        }

    def flush(self, timeout: float | None = None) -> bool:
        # Writes may schedule a purge, so wait until nothing new is pending.
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = {future for future in self._pending if not future.done()}
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait(pending, timeout=remaining)
            if not_done:
                return False

    def close(self) -> None:
        self._writer.shutdown(wait=True)
        self.backend.close()

    def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        if not self.breaker.allow_request():
            self._stats.record("bypassed")
            return _BYPASS
        try:
            result = func(*args)
        except Exception as exc:  # noqa: BLE001
            self.breaker.record_failure(str(exc))
            self._stats.record("errors")
            log_event(
                self._logger,
                logging.WARNING,
                "cache_backend_error",
                operation=operation,
                backend=self.backend.name,
                error=str(exc),
            )
            if isinstance(exc, TransientInfrastructureError):
                raise
            raise TransientInfrastructureError(f"cache {operation} failed: {exc}") from exc
        self.breaker.record_success()
        return result

    def _schedule_write(self, key: str, value: Any, ttl: int | None) -> None:
        payload = json_dumps(value)
        ttl_seconds, ttl_class = self.ttl_for(key, ttl)
        self._submit_background(lambda: self._write(key, payload, ttl_seconds, ttl_class), key)

    def _write(self, key: str, payload: str, ttl_seconds: int, ttl_class: str) -> bool:
        outcome = self._call("set", self.backend.set, key, payload, ttl_seconds, ttl_class)
        if outcome is _BYPASS:
            return False
        self._stats.record("sets")
        self._note_write()
        return True

    def _on_write_done(self, future: Future, key: str) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            log_event(
                self._writer_logger,
                logging.ERROR,
                "cache_write_failed",
                key=key,
                error=str(exc),
            )

    def _note_write(self) -> None:
        if self._purge_every <= 0:
            return
        with self._purge_lock:
            self._writes_since_purge += 1
            if self._writes_since_purge < self._purge_every:
                return
            self._writes_since_purge = 0
        self._submit_background(self.purge_expired, "purge")

    def _submit_background(self, func: Callable[[], Any], label: str) -> None:
        try:
            future = self._writer.submit(func)
        except RuntimeError as exc:
            log_event(self._writer_logger, logging.ERROR, "cache_write_rejected", key=label, error=str(exc))
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(lambda done, label=label: self._on_write_done(done, label))
