"""
In-process backing store.

Mirrors the subset of Redis semantics the pipeline relies on. Expiry is lazy
(checked on access) plus an explicit sweep() run by the maintenance loop.
"""
import asyncio
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple
from loguru import logger

from herald.stores.base import BackingStore, RangeResult, Subscription, WindowSpec
from herald.utils.timeutil import Clock, utcnow

_CLOSED = object()


class MemorySubscription(Subscription):
    """Subscription backed by a bounded asyncio.Queue."""

    def __init__(self, store: "InMemoryStore", channel: str, maxsize: int):
        self._store = store
        self.channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def deliver(self, message: str) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            # Triggers are signals; a pending one already covers this
            logger.debug(f"Dropping message on '{self.channel}': subscriber mailbox full")
            return False

    async def listen(self) -> AsyncIterator[str]:
        while not self._closed:
            message = await self._queue.get()
            if message is _CLOSED:
                break
            yield message

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass


class InMemoryStore(BackingStore):
    """Single-process store. Not shared between processes."""

    name = "memory"

    def __init__(self, clock: Clock = utcnow, mailbox_size: int = 100):
        self._clock = clock
        self._mailbox_size = mailbox_size
        self._strings: Dict[str, str] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._expiry: Dict[str, float] = {}
        self._subscribers: Dict[str, List[MemorySubscription]] = {}

    def _now(self) -> float:
        return self._clock().timestamp()

    def _drop(self, key: str) -> bool:
        existed = False
        for table in (self._strings, self._zsets, self._hashes, self._sets):
            if key in table:
                del table[key]
                existed = True
        self._expiry.pop(key, None)
        return existed

    def _purge_if_expired(self, key: str):
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._now():
            self._drop(key)

    def _exists(self, key: str) -> bool:
        self._purge_if_expired(key)
        return any(key in table for table in (self._strings, self._zsets, self._hashes, self._sets))

    def _zset(self, key: str) -> Dict[str, float]:
        self._purge_if_expired(key)
        return self._zsets.get(key, {})

    def _sorted(self, key: str, desc: bool = False) -> List[tuple]:
        # Ties broken by member, like Redis
        items = sorted(self._zset(key).items(), key=lambda kv: (kv[1], kv[0]))
        if desc:
            items.reverse()
        return items

    @staticmethod
    def _shape(items: List[tuple], withscores: bool) -> RangeResult:
        if withscores:
            return [(member, score) for member, score in items]
        return [member for member, _ in items]

    @staticmethod
    def _window(items: List[tuple], offset: Optional[int], count: Optional[int]) -> List[tuple]:
        start = offset or 0
        if count is None or count < 0:
            return items[start:]
        return items[start:start + count]

    # Keys

    async def get(self, key: str) -> Optional[str]:
        self._purge_if_expired(key)
        return self._strings.get(key)

    def _set(self, key: str, value: str, ttl_seconds: Optional[float]):
        self._drop(key)
        self._strings[key] = value
        if ttl_seconds is not None:
            self._expiry[key] = self._now() + ttl_seconds

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None):
        self._set(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        if self._exists(key):
            return False
        self._set(key, value, ttl_seconds)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._purge_if_expired(key)
            if self._drop(key):
                removed += 1
        return removed

    async def expire(self, key: str, ttl_seconds: float) -> bool:
        if not self._exists(key):
            return False
        self._expiry[key] = self._now() + ttl_seconds
        return True

    async def incr(self, key: str, amount: int = 1) -> int:
        self._purge_if_expired(key)
        value = int(self._strings.get(key, "0")) + amount
        self._strings[key] = str(value)
        return value

    # Sorted sets

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        self._purge_if_expired(key)
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zrem(self, key: str, *members: str) -> int:
        zset = self._zset(key)
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        if key in self._zsets and not self._zsets[key]:
            self._drop(key)
        return removed

    async def zcard(self, key: str) -> int:
        return len(self._zset(key))

    async def zrange(
        self, key: str, start: int, stop: int, desc: bool = False, withscores: bool = False
    ) -> RangeResult:
        items = self._sorted(key, desc)
        stop = len(items) + stop if stop < 0 else stop
        return self._shape(items[start:stop + 1], withscores)

    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
        withscores: bool = False,
    ) -> RangeResult:
        items = [kv for kv in self._sorted(key) if min_score <= kv[1] <= max_score]
        return self._shape(self._window(items, offset, count), withscores)

    async def zrevrange_by_score(
        self,
        key: str,
        max_score: float,
        min_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
        withscores: bool = False,
    ) -> RangeResult:
        items = [kv for kv in self._sorted(key, desc=True) if min_score <= kv[1] <= max_score]
        return self._shape(self._window(items, offset, count), withscores)

    async def zremrange_by_score(self, key: str, min_score: float, max_score: float) -> int:
        zset = self._zset(key)
        doomed = [member for member, score in zset.items() if min_score <= score <= max_score]
        for member in doomed:
            del zset[member]
        if key in self._zsets and not self._zsets[key]:
            self._drop(key)
        return len(doomed)

    async def record_if_under_limits(self, windows: List[WindowSpec], member: str, now_ms: int) -> Tuple[bool, List[int]]:
        # No awaits below, so the whole check-and-record runs without interleaving
        counts = []
        for key, size_ms, _ in windows:
            zset = self._zset(key)
            for stale in [m for m, score in zset.items() if score <= now_ms - size_ms]:
                del zset[stale]
            counts.append(len(zset))

        if any(count >= limit for count, (_, _, limit) in zip(counts, windows)):
            return False, counts

        now = self._now()
        for key, size_ms, _ in windows:
            self._zsets.setdefault(key, {})[member] = float(now_ms)
            self._expiry[key] = now + size_ms / 1000
        return True, counts

    # Hashes

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._purge_if_expired(key)
        table = self._hashes.setdefault(key, {})
        value = int(table.get(field, "0")) + amount
        table[field] = str(value)
        return value

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        self._purge_if_expired(key)
        table = self._hashes.setdefault(key, {})
        value = float(table.get(field, "0")) + amount
        table[field] = repr(value)
        return value

    async def hgetall(self, key: str) -> Dict[str, str]:
        self._purge_if_expired(key)
        return dict(self._hashes.get(key, {}))

    # Sets

    async def sadd(self, key: str, *members: str) -> int:
        self._purge_if_expired(key)
        target = self._sets.setdefault(key, set())
        added = len(set(members) - target)
        target.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        self._purge_if_expired(key)
        target = self._sets.get(key, set())
        removed = len(target & set(members))
        target.difference_update(members)
        if key in self._sets and not self._sets[key]:
            self._drop(key)
        return removed

    async def smembers(self, key: str) -> Set[str]:
        self._purge_if_expired(key)
        return set(self._sets.get(key, set()))

    # Pub/sub

    async def publish(self, channel: str, message: str) -> int:
        return sum(1 for sub in list(self._subscribers.get(channel, [])) if sub.deliver(message))

    async def subscribe(self, channel: str) -> Subscription:
        subscription = MemorySubscription(self, channel, self._mailbox_size)
        self._subscribers.setdefault(channel, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: MemorySubscription):
        subscribers = self._subscribers.get(subscription.channel, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    # Lifecycle

    async def ping(self) -> bool:
        return True

    async def sweep(self) -> int:
        now = self._now()
        expired = [key for key, expires_at in self._expiry.items() if expires_at <= now]
        for key in expired:
            self._drop(key)
        if expired:
            logger.debug(f"Store sweep removed {len(expired)} expired keys")
        return len(expired)

    async def close(self):
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                await subscription.close()
