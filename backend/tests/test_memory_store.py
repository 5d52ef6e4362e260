"""Tests for the in-process backing store."""
import asyncio

from herald.stores import InMemoryStore, create_store
from herald.config import Settings


async def test_string_expiry(store, clock):
    await store.set("k", "v", ttl_seconds=10)
    assert await store.get("k") == "v"
    clock.advance(10)
    assert await store.get("k") is None


async def test_expire_refreshes_ttl(store, clock):
    await store.set("k", "v", ttl_seconds=10)
    clock.advance(8)
    assert await store.expire("k", 10)
    clock.advance(8)
    assert await store.get("k") == "v"
    assert not await store.expire("missing", 10)


async def test_sorted_set_ranges(store):
    await store.zadd("z", {"a": 1, "b": 2, "c": 3, "d": 3})
    assert await store.zrange("z", 0, -1) == ["a", "b", "c", "d"]
    assert await store.zrange("z", 0, 0, withscores=True) == [("a", 1.0)]
    assert await store.zrange_by_score("z", 2, 3, offset=1, count=1) == ["c"]
    assert await store.zrevrange_by_score("z", 3, 2) == ["d", "c", "b"]
    assert await store.zremrange_by_score("z", float("-inf"), 1) == 1
    assert await store.zcard("z") == 3


async def test_zrem_reports_ownership(store):
    await store.zadd("z", {"a": 1})
    assert await store.zrem("z", "a") == 1
    assert await store.zrem("z", "a") == 0
    assert await store.zcard("z") == 0


async def test_hashes_and_sets(store):
    assert await store.hincrby("h", "n", 2) == 2
    assert await store.hincrbyfloat("h", "f", 1.5) == 1.5
    assert await store.hgetall("h") == {"n": "2", "f": "1.5"}

    assert await store.sadd("s", "a", "b") == 2
    assert await store.srem("s", "a") == 1
    assert await store.smembers("s") == {"b"}


async def test_sweep_removes_expired_keys(store, clock):
    await store.set("a", "1", ttl_seconds=5)
    await store.zadd("z", {"m": 1})
    await store.expire("z", 5)
    await store.set("keep", "1")
    clock.advance(6)

    assert await store.sweep() == 2
    assert await store.get("keep") == "1"


async def test_publish_subscribe(store):
    subscription = await store.subscribe("channel")
    assert await store.publish("channel", "hello") == 1

    received = []

    async def consume():
        async for message in subscription.listen():
            received.append(message)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await subscription.close()
    await asyncio.wait_for(consumer, timeout=1)

    assert received == ["hello"]
    assert await store.publish("channel", "ignored") == 0


async def test_full_mailbox_drops_messages(clock):
    store = InMemoryStore(clock=clock, mailbox_size=1)
    await store.subscribe("channel")
    assert await store.publish("channel", "first") == 1
    assert await store.publish("channel", "second") == 0


def test_create_store_without_redis_url():
    assert isinstance(create_store(Settings(redis_url=None)), InMemoryStore)


async def test_set_if_absent(store, clock):
    assert await store.set_if_absent("k", "first", ttl_seconds=10)
    assert not await store.set_if_absent("k", "second", ttl_seconds=10)
    assert await store.get("k") == "first"

    clock.advance(10)
    assert await store.set_if_absent("k", "third")
    assert await store.get("k") == "third"


async def test_record_if_under_limits(store, clock):
    windows = [("w:minute", 60_000, 2), ("w:hour", 3_600_000, 5)]
    now_ms = int(clock().timestamp() * 1000)

    assert await store.record_if_under_limits(windows, "a", now_ms) == (True, [0, 0])
    assert await store.record_if_under_limits(windows, "b", now_ms) == (True, [1, 1])

    recorded, counts = await store.record_if_under_limits(windows, "c", now_ms)
    assert not recorded
    assert counts == [2, 2]
    # A blocked attempt is recorded in no window
    assert await store.zcard("w:hour") == 2

    # The minute window empties, the hour window keeps its entries
    recorded, counts = await store.record_if_under_limits(windows, "d", now_ms + 60_000)
    assert recorded
    assert counts == [0, 2]
    assert await store.zcard("w:hour") == 3
