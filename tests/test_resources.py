import asyncio

import pytest

from broker_gateway.resources import TopicResources


@pytest.mark.asyncio
async def test_concurrent_first_use_creates_once():
    cache = TopicResources("test", "queue")
    created = []

    async def factory(topic):
        created.append(topic)
        await asyncio.sleep(0.01)
        return object()

    results = await asyncio.gather(*(cache.get_or_create("orders", factory) for _ in range(20)))

    assert created == ["orders"]
    assert all(r is results[0] for r in results)
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_distinct_topics_do_not_wait_on_each_other():
    cache = TopicResources("test", "queue")
    release_slow = asyncio.Event()

    async def factory(topic):
        if topic == "slow":
            await release_slow.wait()
        return f"resource-{topic}"

    slow = asyncio.create_task(cache.get_or_create("slow", factory))
    await asyncio.sleep(0)
    fast = await asyncio.wait_for(cache.get_or_create("fast", factory), timeout=1)
    assert fast == "resource-fast"
    assert not slow.done()

    release_slow.set()
    assert await slow == "resource-slow"


@pytest.mark.asyncio
async def test_failed_creation_is_not_cached():
    cache = TopicResources("test", "queue")
    calls = 0

    async def flaky(topic):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")
        return "ok"

    with pytest.raises(RuntimeError):
        await cache.get_or_create("orders", flaky)
    assert "orders" not in cache
    assert await cache.get_or_create("orders", flaky) == "ok"
    assert calls == 2


@pytest.mark.asyncio
async def test_clear_returns_items_for_closing():
    cache = TopicResources("test", "queue")

    async def factory(topic):
        return topic.upper()

    await cache.get_or_create("a", factory)
    await cache.get_or_create("b", factory)
    assert cache.clear() == {"a": "A", "b": "B"}
    assert len(cache) == 0
    assert cache.get("a") is None
