from newsharvest.cache import CacheStore, DatabaseCacheBackend, NullCacheBackend
from newsharvest.db import ThreadLocalConnections


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_database_backend_expiry_and_prefixes(tmp_path):
    clock = FakeClock()
    connections = ThreadLocalConnections(str(tmp_path / "state.sqlite3"))
    backend = DatabaseCacheBackend(connections, clock=clock)

    backend.set("a_b:1", '"one"', 60, "a_b")
    backend.set("axb:1", '"two"', 60, "axb")
    backend.set("scrape:x", '"html"', 10, "scrape")

    assert backend.get("a_b:1") == '"one"'
    assert backend.exists("scrape:x") is True
    assert backend.ttl("scrape:x") == 10

    clock.now += 10
    assert backend.get("scrape:x") is None
    assert backend.exists("scrape:x") is False

    assert backend.delete_prefix("a_b:") == 1
    assert backend.get("axb:1") == '"two"'
    assert backend.delete("axb:1") is True
    assert backend.delete("axb:1") is False

    backend.set("stale", '"x"', 1, "default")
    clock.now += 5
    assert backend.purge_expired() == 1
    backend.ping()
    backend.close()


def test_store_over_database_backend(tmp_path):
    connections = ThreadLocalConnections(str(tmp_path / "state.sqlite3"))
    store = CacheStore(DatabaseCacheBackend(connections))

    assert store.set("config:runtime", {"threshold": 0.85}) is True
    assert store.get("config:runtime") == {"threshold": 0.85}
    assert store.exists("config:runtime") is True
    assert 0 < store.ttl_remaining("config:runtime") <= 600
    assert store.clear_all() == 1
    assert store.health()["status"] == "healthy"
    store.close()



def test_store_purges_expired_database_rows(tmp_path):
    clock = FakeClock()
    connections = ThreadLocalConnections(str(tmp_path / "state.sqlite3"))
    store = CacheStore(DatabaseCacheBackend(connections, clock=clock))

    store.set("scrape:https://www.df.cl/a", "<html>", ttl=10)
    store.set("search:public:x", [1], ttl=600)
    clock.now += 60

    assert store.purge_expired() == 1
    assert store.exists("search:public:x") is True
    store.close()

def test_null_backend_always_misses():
    store = CacheStore(NullCacheBackend())

    assert store.set("k", 1) is True
    assert store.get("k") is None
    assert store.get_or_compute("k", lambda: 2) == 2
    assert store.health()["backend"] == "disabled"
    store.close()
