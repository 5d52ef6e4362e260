"""
Backing store interface.

Queues, rate-limit windows, dedup keys and metric aggregates all live in a
store offering key/value, sorted-set, hash, set and pub/sub primitives. The
in-process store and the Redis store are interchangeable implementations.
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple, Union

ScoredMember = Tuple[str, float]
RangeResult = Union[List[str], List[ScoredMember]]
# (sorted set key, window size in ms, limit)
WindowSpec = Tuple[str, int, int]


class Subscription(ABC):
    """A subscription to one pub/sub channel."""

    @abstractmethod
    def listen(self) -> AsyncIterator[str]:
        """Yield published messages until the subscription is closed."""
        pass

    @abstractmethod
    async def close(self):
        pass


class BackingStore(ABC):
    """Abstract async store used by the delivery pipeline."""

    name: str = "store"

    # Keys

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None):
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        """Atomically set ``key`` unless it exists. Returns True when this call set it."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: float) -> bool:
        """Set a key's time to live. Returns False when the key does not exist."""
        pass

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int:
        pass

    # Sorted sets

    @abstractmethod
    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        pass

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    async def zcard(self, key: str) -> int:
        pass

    @abstractmethod
    async def zrange(
        self, key: str, start: int, stop: int, desc: bool = False, withscores: bool = False
    ) -> RangeResult:
        """Members by rank, inclusive of ``stop`` (-1 means the last member)."""
        pass

    @abstractmethod
    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
        withscores: bool = False,
    ) -> RangeResult:
        """Members with min_score <= score <= max_score, lowest score first."""
        pass

    @abstractmethod
    async def zrevrange_by_score(
        self,
        key: str,
        max_score: float,
        min_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
        withscores: bool = False,
    ) -> RangeResult:
        """Members with min_score <= score <= max_score, highest score first."""
        pass

    @abstractmethod
    async def zremrange_by_score(self, key: str, min_score: float, max_score: float) -> int:
        pass

    @abstractmethod
    async def record_if_under_limits(self, windows: List[WindowSpec], member: str, now_ms: int) -> Tuple[bool, List[int]]:
        """
        Atomic sliding-window check-and-record.

        For every (key, size_ms, limit) window, entries scored at or before
        ``now_ms - size_ms`` are dropped and the rest counted. When every count
        is below its limit, ``member`` is added to all windows at ``now_ms`` and
        each key expires after its window size. Otherwise nothing is recorded.

        Returns:
            (recorded, counts before recording, in window order)
        """
        pass

    # Hashes

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        pass

    @abstractmethod
    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        pass

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]:
        pass

    # Sets

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]:
        pass

    # Pub/sub

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Signal subscribers without waiting for them. Returns receivers reached."""
        pass

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        pass

    # Lifecycle

    @abstractmethod
    async def ping(self) -> bool:
        pass

    @abstractmethod
    async def sweep(self) -> int:
        """Drop expired keys, returning how many were removed."""
        pass

    async def close(self):
        """Release connections."""
        pass
