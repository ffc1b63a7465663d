"""
In-process TTL cache for async loaders.

Concurrent misses for the same key share one in-flight load instead of
issuing one backend read each. Invalidation bumps a per-key generation so a
load that started before the invalidation never repopulates the cache with
the stale value.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Tuple

logger = logging.getLogger(__name__)


def _retrieve_exception(task: asyncio.Task) -> None:
    # A load nobody awaits any more must not log "exception was never retrieved"
    if not task.cancelled():
        task.exception()


class AsyncTTLCache:
    """TTL cache keyed by hashable tuples, safe for concurrent coroutines."""

    def __init__(self, ttl_seconds: float, name: str = "cache", clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        # key -> (value, expires_at)
        self._store: Dict[Hashable, Tuple[Any, float]] = {}
        self._inflight: Dict[Hashable, asyncio.Task] = {}
        self._generations: Dict[Hashable, int] = {}
        self._epoch = 0

    def get(self, key: Hashable) -> Tuple[bool, Any]:
        """Return (hit, value) for a fresh entry."""
        entry = self._store.get(key)
        if entry is None:
            return False, None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._store.pop(key, None)
            return False, None
        return True, value

    def put(self, key: Hashable, value: Any) -> None:
        self._store[key] = (value, self._clock() + self.ttl_seconds)

    def _generation(self, key: Hashable) -> Tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Return the cached value or load it once for all concurrent callers.

        Args:
            key: Cache key
            loader: Coroutine factory producing the value on a miss

        Returns:
            The cached or freshly loaded value
        """
        hit, value = self.get(key)
        if hit:
            return value

        inflight = self._inflight.get(key)
        if inflight is None:
            # The load runs in its own task, so cancelling the caller that
            # started it leaves the other waiters unaffected
            inflight = asyncio.create_task(self._load(key, loader, self._generation(key)))
            inflight.add_done_callback(_retrieve_exception)
            self._inflight[key] = inflight
        return await asyncio.shield(inflight)

    async def _load(self, key: Hashable, loader: Callable[[], Awaitable[Any]], generation: Tuple[int, int]) -> Any:
        try:
            value = await loader()
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]
        if self._generation(key) == generation:
            self.put(key, value)
        else:
            logger.debug(f"[{self.name}] Discarding load for {key} invalidated mid-flight")
        return value

    def invalidate(self, key: Hashable) -> None:
        """Drop one key and fence any load already in flight for it."""
        self._store.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1
        self._inflight.pop(key, None)

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every key matching the predicate. Returns count removed."""
        keys = [k for k in set(self._store) | set(self._inflight) if predicate(k)]
        for key in keys:
            self.invalidate(key)
        return len(keys)

    def clear(self) -> None:
        """Drop all entries and fence every in-flight load."""
        self._store.clear()
        self._inflight.clear()
        self._generations.clear()
        self._epoch += 1

    @property
    def entry_count(self) -> int:
        return len(self._store)
