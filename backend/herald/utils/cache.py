"""
Small TTL cache used for caller-side caching (e.g. user preferences).

Exposes sweep() and clear() so MemoryGuard can register it.
"""
from typing import Any, Dict, Hashable, Optional, Tuple
from herald.utils.timeutil import Clock, utcnow


class TTLCache:
    """Dict-backed cache whose entries expire after a fixed number of seconds."""

    def __init__(self, ttl_seconds: float, max_entries: int = 10000, clock: Clock = utcnow):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    def _now(self) -> float:
        return self._clock().timestamp()

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._now():
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any):
        if len(self._entries) >= self.max_entries and key not in self._entries:
            self.sweep()
            if len(self._entries) >= self.max_entries:
                # Evict the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
        self._entries[key] = (self._now() + self.ttl_seconds, value)

    def delete(self, key: Hashable):
        self._entries.pop(key, None)

    def sweep(self) -> int:
        """Drop expired entries, returning how many were removed."""
        now = self._now()
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def __len__(self) -> int:
        return len(self._entries)
