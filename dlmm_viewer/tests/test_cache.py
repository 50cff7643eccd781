import asyncio

import pytest

from dlmm_viewer.core.cache import cache_key


@pytest.mark.asyncio
async def test_cache_set_get(cache_service):
    """Test basic cache operations"""
    test_data = {"items": [[1, "2.5"]], "address": "abc"}
    await cache_service.set("test_key", test_data, ttl=60)

    result = await cache_service.get("test_key")
    assert result == test_data


@pytest.mark.asyncio
async def test_cache_miss(cache_service):
    """Test cache miss returns None"""
    result = await cache_service.get("nonexistent_key")
    assert result is None


@pytest.mark.asyncio
async def test_expired_entry_is_a_miss(cache_service):
    await cache_service.set("short", "value", ttl=0)
    assert await cache_service.get("short") is None


@pytest.mark.asyncio
async def test_ttl_none_never_expires(cache_service):
    await cache_service.set("decimals", 9, ttl=None)
    assert await cache_service.get("decimals") == 9


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_call(cache_service):
    calls = 0
    release = asyncio.Event()

    async def fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        return "1.25"

    first = asyncio.ensure_future(cache_service.get_or_fetch("price:pair:a:b", fetch))
    second = asyncio.ensure_future(cache_service.get_or_fetch("price:pair:a:b", fetch))
    await asyncio.sleep(0)
    release.set()

    assert await asyncio.gather(first, second) == ["1.25", "1.25"]
    assert calls == 1

    # Served from cache afterwards
    assert await cache_service.get_or_fetch("price:pair:a:b", fetch) == "1.25"
    assert calls == 1


@pytest.mark.asyncio
async def test_concurrent_waiters_share_failure(cache_service):
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0)
        raise RuntimeError("upstream down")

    results = await asyncio.gather(
        cache_service.get_or_fetch("k", fetch),
        cache_service.get_or_fetch("k", fetch),
        return_exceptions=True,
    )
    assert calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)

    # Failures are not cached; the next caller tries again
    with pytest.raises(RuntimeError):
        await cache_service.get_or_fetch("k", fetch)
    assert calls == 2


@pytest.mark.asyncio
async def test_should_cache_filters_values(cache_service):
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        return "-1"

    for _ in range(2):
        assert await cache_service.get_or_fetch("p", fetch, should_cache=lambda v: v != "-1") == "-1"
    assert calls == 2


def test_cache_key_generation():
    assert cache_key("history", "addr", "pair", "1H", 10, 70) == "history:addr:pair:1H:10:70"
