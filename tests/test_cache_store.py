import threading

import pytest

from newsharvest.cache import CacheStats, CacheStore, CircuitBreaker, MemoryCacheBackend


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _store(clock=None, threshold=10, **kwargs):
    clock = clock or FakeClock()
    backend = MemoryCacheBackend(clock=clock)
    breaker = CircuitBreaker("cache:memory", threshold=threshold, cooldown_seconds=60, clock=clock)
    return CacheStore(backend, breaker=breaker, **kwargs), backend, clock


def test_get_or_compute_caches_by_ttl_class():
    store, backend, _ = _store()
    calls = []

    def compute():
        calls.append(1)
        return {"html": "<p>hola</p>"}

    first = store.get_or_compute("scrape:https://df.cl/a", compute)
    assert store.flush(timeout=5)
    second = store.get_or_compute("scrape:https://df.cl/a", compute)

    assert first == second == {"html": "<p>hola</p>"}
    assert len(calls) == 1
    assert backend.ttl("scrape:https://df.cl/a") == 3600
    stats = store.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["backend"] == "memory"
    assert stats["pending_writes"] == 0
    store.close()


def test_ttl_resolution():
    store, _, _ = _store(ttl_classes={"search": 60}, default_ttl=42)

    assert store.ttl_for("search:public:abc") == (60, "search")
    assert store.ttl_for("scrape:x") == (42, "default")
    assert store.ttl_for("search:public:abc", 5) == (5, "explicit")
    store.close()


def test_open_breaker_bypasses_backend_entirely():
    store, backend, clock = _store(threshold=2)
    backend.available = False

    assert store.get_or_compute("stats:public", lambda: 1) == 1
    assert store.get_or_compute("stats:public", lambda: 2) == 2
    assert store.breaker.state == "open"
    calls_when_opened = backend.calls

    assert store.get_or_compute("stats:public", lambda: 3) == 3
    assert store.get("stats:public") is None
    assert store.set("stats:public", 4) is False
    assert backend.calls == calls_when_opened
    assert store.stats()["bypassed"] == 3
    assert store.stats()["errors"] == 2
    assert store.health()["status"] == "degraded"

    backend.available = True
    clock.now += 60
    assert store.get_or_compute("stats:public", lambda: 5) == 5
    assert store.breaker.state == "closed"
    store.close()


def test_backend_errors_never_reach_callers():
    store, backend, _ = _store()
    backend.available = False

    assert store.get("k") is None
    assert store.set("k", 1) is False
    assert store.delete("k") is False
    assert store.delete_by_prefix("search:") == 0
    assert store.exists("k") is False
    assert store.ttl_remaining("k") is None
    assert store.clear_all() == 0
    assert store.health()["status"] == "unhealthy"
    store.close()


def test_failed_background_write_is_logged_not_raised():
    class BrokenWrites(MemoryCacheBackend):
        def set(self, key, value, ttl_seconds, ttl_class):
            raise RuntimeError("disk full")

    store = CacheStore(BrokenWrites(), breaker=CircuitBreaker("cache:broken", threshold=5))

    assert store.get_or_compute("scrape:x", lambda: "value") == "value"
    assert store.flush(timeout=5)
    assert store.breaker.status().failures == 1
    assert store.stats()["errors"] == 1
    store.close()


def test_corrupt_entries_are_misses():
    store, backend, _ = _store()
    backend.set("config:x", "{not json", 60, "config")

    assert store.get("config:x") is None
    assert store.get_or_compute("config:x", lambda: {"ok": True}) == {"ok": True}
    store.close()


def test_delete_by_prefix_strips_wildcard_and_refuses_empty():
    store, backend, _ = _store()
    store.set("search:public:a", 1)
    store.set("search:public:b", 2)
    store.set("search:tenant:a", 3)

    assert store.delete_by_prefix("search:public:*") == 2
    assert backend.keys() == ["search:tenant:a"]
    with pytest.raises(ValueError):
        store.delete_by_prefix("*")
    store.close()


def test_concurrent_misses_all_get_values():
    store, _, _ = _store()
    results = []

    def worker(index):
        results.append(store.get_or_compute(f"user:public:{index % 3}", lambda: index % 3))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(12)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == sorted(i % 3 for i in range(12))
    store.close()


def test_stats_roll_over_into_previous_period():
    stats = CacheStats(reset_operations=3, clock=FakeClock())
    for _ in range(3):
        stats.record("hits")

    snapshot = stats.snapshot()

    assert snapshot["hits"] == 0
    assert snapshot["previous_period"]["hits"] == 3
    assert snapshot["previous_period"]["hit_rate"] == 1.0


def test_expired_entries_are_purged_every_few_writes():
    store, backend, clock = _store(purge_every_writes=3)
    store.set("search:public:a", 1, ttl=10)
    store.set("search:public:b", 2, ttl=10)
    clock.now += 30
    store.set("search:public:c", 3, ttl=10)

    assert store.flush(timeout=5)
    assert backend.keys() == ["search:public:c"]
    assert store.purge_expired() == 0

    backend.available = False
    assert store.purge_expired() == 0
    store.close()
