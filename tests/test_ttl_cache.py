"""Tests for the in-process TTL cache.

Covers:
  - Hits, misses and expiry with an injected clock
  - One shared load for concurrent misses
  - Invalidation fencing a load already in flight
  - A cancelled caller leaving the shared load to the other waiters
"""

from __future__ import annotations

import asyncio

import pytest

from receptionist.services.ttl_cache import AsyncTTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestExpiry:
    def test_fresh_entry_is_a_hit(self):
        clock = FakeClock()
        cache = AsyncTTLCache(60, clock=clock)
        cache.put("k", "v")

        assert cache.get("k") == (True, "v")

    def test_expired_entry_is_a_miss(self):
        clock = FakeClock()
        cache = AsyncTTLCache(60, clock=clock)
        cache.put("k", "v")

        clock.now += 60
        assert cache.get("k") == (False, None)
        assert cache.entry_count == 0

    @pytest.mark.asyncio
    async def test_reload_after_expiry(self):
        clock = FakeClock()
        cache = AsyncTTLCache(10, clock=clock)
        values = iter(["first", "second"])

        async def loader():
            return next(values)

        assert await cache.get_or_load("k", loader) == "first"
        assert await cache.get_or_load("k", loader) == "first"
        clock.now += 11
        assert await cache.get_or_load("k", loader) == "second"


class TestStampede:
    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_load(self):
        cache = AsyncTTLCache(60)
        calls = 0
        release = asyncio.Event()

        async def loader():
            nonlocal calls
            calls += 1
            await release.wait()
            return "value"

        tasks = [asyncio.create_task(cache.get_or_load("k", loader)) for _ in range(10)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert results == ["value"] * 10

    @pytest.mark.asyncio
    async def test_failed_load_propagates_and_is_not_cached(self):
        cache = AsyncTTLCache(60)

        async def failing():
            raise RuntimeError("backend down")

        async def working():
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.get_or_load("k", failing)
        assert await cache.get_or_load("k", working) == "ok"


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_during_load_discards_result(self):
        cache = AsyncTTLCache(60)
        release = asyncio.Event()

        async def slow_loader():
            await release.wait()
            return "stale"

        task = asyncio.create_task(cache.get_or_load("k", slow_loader))
        await asyncio.sleep(0)
        cache.invalidate("k")
        release.set()

        # The caller still gets its value, but it is not cached
        assert await task == "stale"
        assert cache.get("k") == (False, None)

    @pytest.mark.asyncio
    async def test_clear_fences_every_key(self):
        cache = AsyncTTLCache(60)
        release = asyncio.Event()

        async def slow_loader():
            await release.wait()
            return "stale"

        task = asyncio.create_task(cache.get_or_load(("org", "web"), slow_loader))
        await asyncio.sleep(0)
        cache.clear()
        release.set()
        await task

        assert cache.entry_count == 0

    def test_invalidate_where_matches_predicate(self):
        cache = AsyncTTLCache(60)
        cache.put(("a", "twilio"), 1)
        cache.put(("a", "web"), 2)
        cache.put(("b", "web"), 3)

        removed = cache.invalidate_where(lambda key: key[0] == "a")

        assert removed == 2
        assert cache.get(("b", "web")) == (True, 3)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_first_caller_does_not_strand_waiters(self):
        cache = AsyncTTLCache(60)
        release = asyncio.Event()
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await release.wait()
            return "value"

        first = asyncio.create_task(cache.get_or_load("k", loader))
        await asyncio.sleep(0)
        second = asyncio.create_task(cache.get_or_load("k", loader))
        await asyncio.sleep(0)

        first.cancel()
        await asyncio.gather(first, return_exceptions=True)
        release.set()

        assert await asyncio.wait_for(second, timeout=1) == "value"
        assert first.cancelled()
        assert calls == 1
        assert cache.get("k") == (True, "value")
