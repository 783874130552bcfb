"""Simple in-memory TTL cache. No Redis needed for this service.

Entries expire lazily: an expired entry is only dropped when it is read
through get()/has(). Each uvicorn worker owns its own instance, so with
several workers a record may be fetched once per worker.

The cache is constructed by the app lifespan and passed to the services
that use it; there is no module-level instance.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Per data-type TTL (seconds)
TTL = {
    "favorite_counts": 5 * 60,   # favorites change rarely
    "all_games": 5 * 60,
    "batch_games": 10 * 60,
    "batch_vote_stats": 15 * 60,
    "user_vote": 30 * 60,        # upper bound, also capped at end of day
}

_MISSING = object()


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class TTLCache:
    def __init__(self, default_ttl: float = 300, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        # Bumped on every invalidating clear so a fetch started before it
        # does not write its stale result back.
        self._generation = 0

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return default
        if entry.is_expired(self._clock()):
            del self._store[key]
            return default
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        self._store[key] = CacheEntry(value=value, stored_at=self._clock(), ttl=ttl)

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def clear(self, key: str | None = None) -> None:
        self._generation += 1
        if key is None:
            self._store.clear()
        else:
            self._store.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._store.keys())

    def clear_matching(self, predicate: Callable[[str], bool], invalidate_inflight: bool = True) -> int:
        """Remove every entry whose key satisfies predicate. Returns the count removed.

        With invalidate_inflight (the default) fetches already running do not
        store their result, even when nothing matched. Housekeeping that only
        drops dead entries passes False.
        """
        if invalidate_inflight:
            self._generation += 1
        matched = [key for key in self.keys() if predicate(key)]
        for key in matched:
            del self._store[key]
        return len(matched)

    def __len__(self) -> int:
        return len(self._store)

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl_seconds: float | None = None,
    ) -> Any:
        """Return the cached value for key, or await fetch() and cache its result.

        Concurrent callers that miss on the same key share a single fetch.
        A failing fetch caches nothing and its exception reaches every caller.
        None results are returned but not cached.
        """
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(key, fetch, ttl_seconds))
            self._inflight[key] = task
        else:
            logger.debug("Joining in-flight fetch for %s", key)
        return await asyncio.shield(task)

    async def _fetch_and_store(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl_seconds: float | None,
    ) -> Any:
        generation = self._generation
        try:
            value = await fetch()
            if value is not None and generation == self._generation:
                self.set(key, value, ttl_seconds)
            return value
        finally:
            self._inflight.pop(key, None)
