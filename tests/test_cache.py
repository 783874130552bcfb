import asyncio

import pytest

from services.cache import TTLCache


def test_set_then_get_returns_value(cache):
    cache.set("k", {"a": 1}, ttl_seconds=60)
    assert cache.get("k") == {"a": 1}


def test_entry_expires_after_ttl_and_is_evicted(cache, clock):
    cache.set("k", "v", ttl_seconds=60)
    clock.advance(60)
    assert cache.get("k") == "v"  # age == ttl is still fresh

    clock.advance(1)
    assert cache.get("k") is None
    assert "k" not in cache.keys()


def test_read_does_not_renew_ttl(cache, clock):
    cache.set("k", "v", ttl_seconds=10)
    clock.advance(8)
    assert cache.get("k") == "v"
    clock.advance(3)
    assert cache.get("k") is None


def test_default_ttl_used_when_none_given(clock):
    cache = TTLCache(default_ttl=5, clock=clock)
    cache.set("k", "v")
    clock.advance(6)
    assert not cache.has("k")


def test_set_overwrites_and_restarts_clock(cache, clock):
    cache.set("k", "old", ttl_seconds=10)
    clock.advance(8)
    cache.set("k", "new", ttl_seconds=10)
    clock.advance(8)
    assert cache.get("k") == "new"


def test_has_applies_expiry(cache, clock):
    cache.set("k", "v", ttl_seconds=1)
    assert cache.has("k")
    clock.advance(2)
    assert not cache.has("k")
    assert cache.keys() == []


def test_get_returns_default_on_miss(cache):
    assert cache.get("missing", "fallback") == "fallback"


def test_clear_single_key_and_all(cache):
    cache.set("a", 1)
    cache.set("b", 2)
    cache.clear("a")
    assert cache.keys() == ["b"]
    cache.clear("not-there")
    cache.clear()
    assert len(cache) == 0


def test_clear_matching_removes_prefixed_keys(cache):
    for key in ("batch_games_g1", "batch_games_g1,g2", "all_games"):
        cache.set(key, [])
    removed = cache.clear_matching(lambda key: key.startswith("batch_games_"))
    assert removed == 2
    assert cache.keys() == ["all_games"]


def test_concurrent_misses_share_one_fetch(cache):
    calls = []

    async def fetch():
        calls.append(1)
        await asyncio.sleep(0)
        return "value"

    async def main():
        return await asyncio.gather(
            cache.get_or_fetch("k", fetch),
            cache.get_or_fetch("k", fetch),
            cache.get_or_fetch("k", fetch),
        )

    assert asyncio.run(main()) == ["value", "value", "value"]
    assert len(calls) == 1
    assert cache.get("k") == "value"


def test_get_or_fetch_uses_cached_value(cache):
    cache.set("k", "cached")

    async def fetch():
        raise AssertionError("should not fetch")

    assert asyncio.run(cache.get_or_fetch("k", fetch)) == "cached"


def test_failed_fetch_is_not_cached(cache):
    attempts = []

    async def failing():
        attempts.append(1)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(cache.get_or_fetch("k", failing))
    assert not cache.has("k")

    async def working():
        return 42

    assert asyncio.run(cache.get_or_fetch("k", working)) == 42
    assert len(attempts) == 1


def test_invalidation_during_fetch_discards_result(cache):
    async def fetch():
        cache.clear("k")
        return "stale"

    assert asyncio.run(cache.get_or_fetch("k", fetch)) == "stale"
    assert not cache.has("k")


def test_none_results_are_not_cached(cache):
    async def fetch():
        return None

    assert asyncio.run(cache.get_or_fetch("k", fetch)) is None
    assert cache.keys() == []


def test_invalidation_with_no_matching_entry_still_discards_inflight_result(cache):
    async def fetch():
        # nothing is cached yet, so the predicate matches no entry
        assert cache.clear_matching(lambda key: key == "k") == 0
        return "stale"

    assert asyncio.run(cache.get_or_fetch("k", fetch)) == "stale"
    assert not cache.has("k")


def test_housekeeping_clear_keeps_inflight_result(cache):
    cache.set("old", "x")

    async def fetch():
        assert cache.clear_matching(lambda key: key == "old", invalidate_inflight=False) == 1
        return "fresh"

    assert asyncio.run(cache.get_or_fetch("k", fetch)) == "fresh"
    assert cache.get("k") == "fresh"
    assert not cache.has("old")
