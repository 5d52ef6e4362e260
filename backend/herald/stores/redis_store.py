"""
Redis-backed store using redis.asyncio.

Every Redis failure is raised as StoreUnavailableError so callers can apply
their degradation policy (fail open, best effort) without importing redis.
"""
import functools
import math
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple
import redis.asyncio as redis
from redis.exceptions import RedisError
from loguru import logger

from herald.stores.base import BackingStore, RangeResult, Subscription, WindowSpec
from herald.utils.errors import StoreUnavailableError

# KEYS: window keys. ARGV: now_ms, member, then size_ms and limit per key.
# Returns {recorded (0/1), {count per key before recording}}.
RECORD_IF_UNDER_LIMITS = """
local now = tonumber(ARGV[1])
local counts = {}
local allowed = 1
for i, key in ipairs(KEYS) do
    local size = tonumber(ARGV[1 + 2 * i])
    redis.call("ZREMRANGEBYSCORE", key, "-inf", now - size)
    counts[i] = redis.call("ZCARD", key)
    if counts[i] >= tonumber(ARGV[2 + 2 * i]) then
        allowed = 0
    end
end
if allowed == 1 then
    for i, key in ipairs(KEYS) do
        redis.call("ZADD", key, now, ARGV[2])
        redis.call("PEXPIRE", key, tonumber(ARGV[1 + 2 * i]))
    end
end
return {allowed, counts}
"""


def _store_errors(func):
    """Translate redis exceptions into StoreUnavailableError."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Redis {func.__name__} failed: {e}") from e
    return wrapper


def _bound(value: float) -> str:
    """Redis spells infinite score bounds as -inf/+inf."""
    if math.isinf(value):
        return "+inf" if value > 0 else "-inf"
    return repr(value)


class RedisSubscription(Subscription):
    def __init__(self, pubsub: redis.client.PubSub, channel: str):
        self._pubsub = pubsub
        self.channel = channel

    async def listen(self) -> AsyncIterator[str]:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Subscription to '{self.channel}' lost: {e}") from e

    async def close(self):
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing subscription to '{self.channel}': {e}")


class RedisStore(BackingStore):
    """Store backed by a Redis server (responses decoded as str)."""

    name = "redis"

    def __init__(self, url: str):
        self.url = url
        self._client = redis.from_url(url, decode_responses=True)
        self._record_if_under_limits = self._client.register_script(RECORD_IF_UNDER_LIMITS)

    # Keys

    @_store_errors
    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    @_store_errors
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None):
        if ttl_seconds is None:
            await self._client.set(key, value)
        else:
            await self._client.set(key, value, px=max(1, int(ttl_seconds * 1000)))

    @_store_errors
    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        if ttl_seconds is None:
            return bool(await self._client.set(key, value, nx=True))
        return bool(await self._client.set(key, value, nx=True, px=max(1, int(ttl_seconds * 1000))))

    @_store_errors
    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._client.delete(*keys)

    @_store_errors
    async def expire(self, key: str, ttl_seconds: float) -> bool:
        return bool(await self._client.pexpire(key, max(1, int(ttl_seconds * 1000))))

    @_store_errors
    async def incr(self, key: str, amount: int = 1) -> int:
        return await self._client.incrby(key, amount)

    # Sorted sets

    @_store_errors
    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        return await self._client.zadd(key, mapping)

    @_store_errors
    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._client.zrem(key, *members)

    @_store_errors
    async def zcard(self, key: str) -> int:
        return await self._client.zcard(key)

    @_store_errors
    async def zrange(
        self, key: str, start: int, stop: int, desc: bool = False, withscores: bool = False
    ) -> RangeResult:
        return await self._client.zrange(key, start, stop, desc=desc, withscores=withscores)

    @_store_errors
    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
        withscores: bool = False,
    ) -> RangeResult:
        if count is not None and offset is None:
            offset = 0
        return await self._client.zrangebyscore(
            key, _bound(min_score), _bound(max_score), start=offset, num=count, withscores=withscores
        )

    @_store_errors
    async def zrevrange_by_score(
        self,
        key: str,
        max_score: float,
        min_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
        withscores: bool = False,
    ) -> RangeResult:
        if count is not None and offset is None:
            offset = 0
        return await self._client.zrevrangebyscore(
            key, _bound(max_score), _bound(min_score), start=offset, num=count, withscores=withscores
        )

    @_store_errors
    async def zremrange_by_score(self, key: str, min_score: float, max_score: float) -> int:
        return await self._client.zremrangebyscore(key, _bound(min_score), _bound(max_score))

    @_store_errors
    async def record_if_under_limits(self, windows: List[WindowSpec], member: str, now_ms: int) -> Tuple[bool, List[int]]:
        args = [now_ms, member]
        for _, size_ms, limit in windows:
            args.extend([size_ms, limit])
        allowed, counts = await self._record_if_under_limits(keys=[key for key, _, _ in windows], args=args)
        return bool(allowed), [int(count) for count in counts]

    # Hashes

    @_store_errors
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self._client.hincrby(key, field, amount)

    @_store_errors
    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        return float(await self._client.hincrbyfloat(key, field, amount))

    @_store_errors
    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self._client.hgetall(key)

    # Sets

    @_store_errors
    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._client.sadd(key, *members)

    @_store_errors
    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._client.srem(key, *members)

    @_store_errors
    async def smembers(self, key: str) -> Set[str]:
        return set(await self._client.smembers(key))

    # Pub/sub

    @_store_errors
    async def publish(self, channel: str, message: str) -> int:
        return await self._client.publish(channel, message)

    @_store_errors
    async def subscribe(self, channel: str) -> Subscription:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel)

    # Lifecycle

    @_store_errors
    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def sweep(self) -> int:
        # Redis expires keys itself
        return 0

    async def close(self):
        await self._client.aclose()
        logger.debug("Redis connection closed")
