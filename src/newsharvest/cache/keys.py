from __future__ import annotations

import hashlib
import json
import threading
from typing import Any, Protocol

PUBLIC_OWNER = "public"


def generate_key(prefix: str, params: dict[str, Any] | None = None) -> str:
    if not params:
        return prefix
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.md5(payload.encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}"


def scrape_key(url: str) -> str:
    return f"scrape:{url}"


def search_key(owner_id: str | None, params: dict[str, Any]) -> str:
    return generate_key(f"search:{owner_id or PUBLIC_OWNER}", params)


def search_prefix(owner_id: str | None) -> str:
    return f"search:{owner_id or PUBLIC_OWNER}:"


def stats_key(owner_id: str | None) -> str:
    return f"stats:{owner_id or PUBLIC_OWNER}"


def filters_key(owner_id: str | None) -> str:
    return f"filters:{owner_id or PUBLIC_OWNER}"


def user_prefix(owner_id: str | None) -> str:
    return f"user:{owner_id or PUBLIC_OWNER}:"


def user_key(owner_id: str | None, name: str) -> str:
    return f"{user_prefix(owner_id)}{name}"


def domain_prefix(domain: str) -> str:
    return f"static:domain:{domain}:"


class Invalidator(Protocol):
    def delete(self, key: str) -> bool: ...

    def delete_by_prefix(self, prefix: str) -> int: ...


class InvalidationScopes:
    """Owners and domains touched during a batch, flushed once at the end."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: set[str] = set()
        self._domains: set[str] = set()

    def add(self, owner_id: str | None = None, domain: str | None = None) -> None:
        with self._lock:
            self._owners.add(owner_id or PUBLIC_OWNER)
            if domain:
                self._domains.add(domain)

    @property
    def owners(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._owners)

    @property
    def domains(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._domains)

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners) + len(self._domains)

    def flush(self, cache: Invalidator) -> int:
        with self._lock:
            owners = sorted(self._owners)
            domains = sorted(self._domains)
            self._owners.clear()
            self._domains.clear()
        removed = 0
        for owner in owners:
            removed += cache.delete_by_prefix(search_prefix(owner))
            removed += cache.delete_by_prefix(user_prefix(owner))
            removed += int(cache.delete(stats_key(owner)))
            removed += int(cache.delete(filters_key(owner)))
        for domain in domains:
            removed += cache.delete_by_prefix(domain_prefix(domain))
        return removed
