from .backends import CacheBackend, DatabaseCacheBackend, MemoryCacheBackend, NullCacheBackend
from .breaker import CircuitBreaker
from .keys import InvalidationScopes, generate_key, scrape_key
from .store import CacheStats, CacheStore

__all__ = [
    "CacheBackend",
    "CacheStats",
    "CacheStore",
    "CircuitBreaker",
    "DatabaseCacheBackend",
    "InvalidationScopes",
    "MemoryCacheBackend",
    "NullCacheBackend",
    "generate_key",
    "scrape_key",
]
