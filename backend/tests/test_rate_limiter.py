"""Tests for the sliding-window rate limiter."""
import asyncio

from herald.config import RateLimitConfig
from herald.services.rate_limiter import RateLimiter
from herald.stores.memory import InMemoryStore
from herald.utils.errors import StoreUnavailableError


def make_limiter(store, clock, **config) -> RateLimiter:
    defaults = dict(per_minute=10, per_hour=100, per_day=500, burst=20, global_multiplier=100)
    defaults.update(config)
    return RateLimiter(store, RateLimitConfig(**defaults), clock=clock, rng=lambda: 0.0)


class BrokenStore(InMemoryStore):
    async def record_if_under_limits(self, windows, member, now_ms):
        raise StoreUnavailableError("connection refused")

    async def zremrange_by_score(self, key, min_score, max_score):
        raise StoreUnavailableError("connection refused")

    async def zadd(self, key, mapping):
        raise StoreUnavailableError("connection refused")

    async def ping(self):
        raise StoreUnavailableError("connection refused")


async def test_per_minute_ceiling(store, clock):
    limiter = make_limiter(store, clock)
    results = []
    for _ in range(11):
        results.append(await limiter.check_user_limit("u1"))
        clock.advance(1)

    assert all(result.allowed for result in results[:10])
    blocked = results[10]
    assert not blocked.allowed
    assert blocked.window == "minute"
    assert blocked.retry_after_ms > 0
    assert blocked.remaining == 0


async def test_remaining_counts_down(store, clock):
    limiter = make_limiter(store, clock)
    first = await limiter.check_user_limit("u1")
    second = await limiter.check_user_limit("u1")
    assert first.remaining == 9
    assert second.remaining == 8
    assert first.window == "minute"


async def test_window_slides(store, clock):
    limiter = make_limiter(store, clock)
    for _ in range(10):
        assert (await limiter.check_user_limit("u1")).allowed
    assert not (await limiter.check_user_limit("u1")).allowed

    clock.advance(61)
    assert (await limiter.check_user_limit("u1")).allowed


async def test_burst_window(store, clock):
    limiter = make_limiter(store, clock, burst=3)
    for _ in range(3):
        assert (await limiter.check_user_limit("u1")).allowed
    blocked = await limiter.check_user_limit("u1")
    assert not blocked.allowed
    assert blocked.window == "burst"

    clock.advance(31)
    assert (await limiter.check_user_limit("u1")).allowed


async def test_blocked_attempts_are_not_recorded(store, clock):
    limiter = make_limiter(store, clock, per_minute=2)
    await limiter.check_user_limit("u1")
    await limiter.check_user_limit("u1")
    for _ in range(5):
        await limiter.check_user_limit("u1")

    status = await limiter.get_user_status("u1")
    assert status["minute"].count == 2
    assert status["minute"].limit == 2


async def test_backoff_grows_with_consecutive_blocks(store, clock):
    limiter = make_limiter(store, clock, per_minute=1)
    await limiter.check_user_limit("u1")

    first = await limiter.check_user_limit("u1")
    second = await limiter.check_user_limit("u1")
    assert second.retry_after_ms > first.retry_after_ms
    # Oldest entry leaves in 60s, doubled once
    assert first.retry_after_ms == 120_000


async def test_backoff_is_capped(store, clock):
    limiter = make_limiter(store, clock, per_minute=1, max_backoff_seconds=90)
    await limiter.check_user_limit("u1")
    for _ in range(5):
        result = await limiter.check_user_limit("u1")
    assert result.retry_after_ms == 90_000


async def test_users_are_independent(store, clock):
    limiter = make_limiter(store, clock, per_minute=1)
    assert (await limiter.check_user_limit("u1")).allowed
    assert not (await limiter.check_user_limit("u1")).allowed
    assert (await limiter.check_user_limit("u2")).allowed


async def test_global_limit_uses_multiplier(store, clock):
    limiter = make_limiter(store, clock, per_minute=1, global_multiplier=2)
    assert (await limiter.check_global_limit()).allowed
    assert (await limiter.check_global_limit()).allowed
    blocked = await limiter.check_global_limit()
    assert not blocked.allowed
    assert blocked.window == "minute"


async def test_increment_counters_consumes_quota(store, clock):
    limiter = make_limiter(store, clock, per_minute=2)
    await limiter.increment_counters("u1")
    await limiter.increment_counters("u1")

    assert not (await limiter.check_user_limit("u1")).allowed
    global_status = await limiter.get_global_status()
    assert global_status["minute"].count == 2


async def test_increment_counters_without_global(store, clock):
    limiter = make_limiter(store, clock)
    await limiter.increment_counters("u1", include_global=False)
    assert (await limiter.get_global_status())["minute"].count == 0
    assert (await limiter.get_user_status("u1"))["day"].count == 1


async def test_reset_user_limits(store, clock):
    limiter = make_limiter(store, clock, per_minute=1)
    await limiter.check_user_limit("u1")
    assert not (await limiter.check_user_limit("u1")).allowed

    assert await limiter.reset_user_limits("u1") == 4
    assert (await limiter.check_user_limit("u1")).allowed


async def test_fails_open_when_store_is_down(clock):
    limiter = make_limiter(BrokenStore(clock=clock), clock)
    result = await limiter.check_user_limit("u1")
    assert result.allowed

    # Counter increments are best effort
    await limiter.increment_counters("u1")


async def test_health_check(store, clock):
    assert (await make_limiter(store, clock).health_check()).status == "healthy"

    broken = await make_limiter(BrokenStore(clock=clock), clock).health_check()
    assert broken.status == "unhealthy"
    assert "connection refused" in broken.error


class YieldingStore(InMemoryStore):
    """Suspends on every single-key call, the way a network store does."""

    async def zremrange_by_score(self, key, min_score, max_score):
        await asyncio.sleep(0)
        return await super().zremrange_by_score(key, min_score, max_score)

    async def zcard(self, key):
        await asyncio.sleep(0)
        return await super().zcard(key)

    async def zadd(self, key, mapping):
        await asyncio.sleep(0)
        return await super().zadd(key, mapping)


async def test_workers_sharing_a_store_never_exceed_the_ceiling(clock):
    store = YieldingStore(clock=clock)
    workers = [make_limiter(store, clock), make_limiter(store, clock)]

    results = await asyncio.gather(*(workers[i % 2].check_user_limit("u1") for i in range(20)))
    assert sum(result.allowed for result in results) == 10
    assert (await workers[0].get_user_status("u1"))["minute"].count == 10


async def test_idle_block_streaks_are_pruned(store, clock):
    limiter = make_limiter(store, clock, per_minute=1, max_backoff_seconds=300)
    await limiter.check_user_limit("u1")
    await limiter.check_user_limit("u1")
    await limiter.check_user_limit("u2")

    assert limiter.prune_block_streaks() == 0
    clock.advance(300)
    assert limiter.prune_block_streaks() == 1
    assert limiter.prune_block_streaks() == 0
