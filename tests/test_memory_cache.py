import asyncio

import pytest

from authkeep.storage.memory_cache import SWEEP_INTERVAL_SECONDS, MemoryCache


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


async def test_value_expires_after_ttl(cache, clock):
    await cache.set("k", "v", 10)

    clock.advance(9)
    assert await cache.get("k") == "v"

    clock.advance(1)
    assert await cache.get("k") is None


async def test_delete_is_idempotent(cache):
    await cache.set("k", "v", 10)
    await cache.delete("k")
    await cache.delete("k")

    assert await cache.get("k") is None


async def test_pop_returns_value_once(cache):
    await cache.set("k", "v", 10)

    assert await cache.pop("k") == "v"
    assert await cache.pop("k") is None


async def test_pop_of_expired_value_is_none(cache, clock):
    await cache.set("k", "v", 10)
    clock.advance(10)

    assert await cache.pop("k") is None


async def test_concurrent_pops_have_one_winner(cache):
    await cache.set("k", "v", 10)

    results = await asyncio.gather(*(cache.pop("k") for _ in range(10)))

    assert results.count("v") == 1
    assert results.count(None) == 9


async def test_member_sets(cache):
    await cache.add_member("s", "a", 10)
    await cache.add_member("s", "b", 10)
    await cache.remove_member("s", "a")
    await cache.remove_member("missing", "a")

    assert await cache.pop_members("s") == ["b"]
    assert await cache.pop_members("s") == []


async def test_member_set_expires(cache, clock):
    await cache.add_member("s", "a", 10)
    clock.advance(10)

    assert await cache.pop_members("s") == []


async def test_rate_limit_allows_up_to_limit_then_refills(cache, clock):
    allowed = [await cache.check_rate_limit("ip", 3, 60) for _ in range(4)]
    assert allowed == [True, True, True, False]

    # One token refills every 20 seconds at 3 per minute
    clock.advance(20)
    assert await cache.check_rate_limit("ip", 3, 60) is True
    assert await cache.check_rate_limit("ip", 3, 60) is False


async def test_rate_limit_keys_are_independent(cache):
    assert await cache.check_rate_limit("a", 1, 60) is True
    assert await cache.check_rate_limit("a", 1, 60) is False
    assert await cache.check_rate_limit("b", 1, 60) is True


async def test_unread_expired_entries_are_swept_on_write(cache, clock):
    await cache.set("stale", "v", 10)
    await cache.set("live", "v", 3600)
    await cache.add_member("stale-set", "a", 10)
    await cache.check_rate_limit("idle-ip", 1, 60)

    clock.advance(SWEEP_INTERVAL_SECONDS)
    await cache.set("other", "v", 10)

    assert set(cache._values) == {"live", "other"}
    assert cache._sets == {}
    assert cache._buckets == {}


async def test_sweep_waits_for_interval(cache, clock):
    await cache.set("stale", "v", 10)

    clock.advance(SWEEP_INTERVAL_SECONDS - 1)
    await cache.set("other", "v", 10)

    assert "stale" in cache._values


async def test_close_clears_state(cache):
    await cache.set("k", "v", 10)
    await cache.close()

    assert await cache.get("k") is None
