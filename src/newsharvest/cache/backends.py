from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable

from .. import storage
from ..db import ThreadLocalConnections
from ..errors import TransientInfrastructureError


class CacheBackend(ABC):
    name = "cache"

    @abstractmethod
    def get(self, key: str) -> str | None: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int, ttl_class: str) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def ttl(self, key: str) -> float | None: ...

    @abstractmethod
    def clear(self) -> int: ...

    @abstractmethod
    def purge_expired(self) -> int: ...

    @abstractmethod
    def ping(self) -> None: ...

    def close(self) -> None:
        return None


class DatabaseCacheBackend(CacheBackend):
    name = "database"

    def __init__(
        self,
        connections: ThreadLocalConnections,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._connections = connections
        self._clock = clock

    def _call(self, operation: str, func, *args):
        try:
            conn = self._connections.get()
            return func(conn, *args)
        except Exception as exc:  # noqa: BLE001
            self._connections.discard()
            raise TransientInfrastructureError(f"cache {operation} failed: {exc}") from exc

    def get(self, key: str) -> str | None:
        return self._call("get", storage.cache_get, key, self._clock())

    def set(self, key: str, value: str, ttl_seconds: int, ttl_class: str) -> None:
        self._call(
            "set", storage.cache_set, key, value, ttl_class, self._clock() + ttl_seconds
        )

    def delete(self, key: str) -> bool:
        return self._call("delete", storage.cache_delete, key)

    def delete_prefix(self, prefix: str) -> int:
        return self._call("delete_prefix", storage.cache_delete_prefix, prefix)

    def exists(self, key: str) -> bool:
        return self._call("exists", storage.cache_exists, key, self._clock())

    def ttl(self, key: str) -> float | None:
        return self._call("ttl", storage.cache_ttl_remaining, key, self._clock())

    def clear(self) -> int:
        return self._call("clear", storage.cache_clear)

    def purge_expired(self) -> int:
        return self._call("purge", storage.cache_purge_expired, self._clock())

    def ping(self) -> None:
        self._call("ping", lambda conn: conn.execute("SELECT 1").fetchone())

    def close(self) -> None:
        self._connections.close_all()


class MemoryCacheBackend(CacheBackend):
    """In-process backend for tests and single-process deployments.

    Setting ``available = False`` makes every call raise
    TransientInfrastructureError, which is how tests simulate an outage.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[str, float, str]] = {}
        self.available = True
        self.calls = 0

    def _check(self) -> None:
        self.calls += 1
        if not self.available:
            raise TransientInfrastructureError("memory cache backend unavailable")

    def get(self, key: str) -> str | None:
        with self._lock:
            self._check()
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at, _ = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int, ttl_class: str) -> None:
        with self._lock:
            self._check()
            self._entries[key] = (value, self._clock() + ttl_seconds, ttl_class)

    def delete(self, key: str) -> bool:
        with self._lock:
            self._check()
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            self._check()
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def exists(self, key: str) -> bool:
        return self.ttl(key) is not None

    def ttl(self, key: str) -> float | None:
        with self._lock:
            self._check()
            entry = self._entries.get(key)
            if entry is None:
                return None
            remaining = entry[1] - self._clock()
            return remaining if remaining > 0 else None

    def clear(self) -> int:
        with self._lock:
            self._check()
            count = len(self._entries)
            self._entries.clear()
            return count

    def purge_expired(self) -> int:
        with self._lock:
            self._check()
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry[1] <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def ping(self) -> None:
        with self._lock:
            self._check()

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


class NullCacheBackend(CacheBackend):
    name = "disabled"

    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, ttl_seconds: int, ttl_class: str) -> None:
        return None

    def delete(self, key: str) -> bool:
        return False

    def delete_prefix(self, prefix: str) -> int:
        return 0

    def exists(self, key: str) -> bool:
        return False

    def ttl(self, key: str) -> float | None:
        return None

    def clear(self) -> int:
        return 0

    def purge_expired(self) -> int:
        return 0

    def ping(self) -> None:
        return None
