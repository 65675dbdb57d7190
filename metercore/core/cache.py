"""In-process TTL cache for per-tenant plan snapshots.

Plan versions are immutable, but a tenant's plan reference is not: every
subscription change must call :func:`invalidate` for that tenant so the
next entitlement check reloads the snapshot.

The cache lives in each process. Invalidation only reaches the API process
that handled the change; other API processes and workers keep serving their
old snapshot until it is ``plan_cache_ttl_seconds`` old.
"""

import time
from collections.abc import Hashable
from typing import Any

_cache: dict[Hashable, tuple[float, Any]] = {}

DEFAULT_TTL = 300


def get(key: Hashable, ttl: float = DEFAULT_TTL) -> Any | None:
    """Return the cached value if present and younger than ``ttl`` seconds."""
    entry = _cache.get(key)
    if entry is None:
        return None
    stored_at, value = entry
    if time.monotonic() - stored_at > ttl:
        _cache.pop(key, None)
        return None
    return value


def put(key: Hashable, value: Any) -> None:
    _cache[key] = (time.monotonic(), value)


def invalidate(key: Hashable) -> None:
    _cache.pop(key, None)


def clear() -> None:
    _cache.clear()
