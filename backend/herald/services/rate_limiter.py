"""
Multi-window sliding rate limiter.

Each window is a sorted set of attempt timestamps (score = epoch ms) under
``ratelimit:*``. A check purges entries older than the window, counts what is
left, and records the attempt only if every window has room. The store runs
that sequence atomically (a Lua script on Redis), so workers sharing a store
never overshoot a ceiling.
"""
import random
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from loguru import logger

from herald.config import RateLimitConfig
from herald.constants import (
    RATE_LIMIT_KEY_PREFIX,
    RATE_LIMIT_PING_DEGRADED_MS,
    RATE_LIMIT_WINDOWS_SECONDS,
)
from herald.schemas.health import RateLimiterHealth, RateLimitResult, RateLimitWindowState
from herald.stores.base import BackingStore
from herald.utils.errors import StoreUnavailableError
from herald.utils.timeutil import Clock, from_ms, to_ms, utcnow

# (window name, window size in seconds, limit)
Window = Tuple[str, int, int]

# Jitter adds up to 10% on top of the computed delay
BACKOFF_JITTER = 0.1

# Consecutive blocks beyond this stop growing the exponent
MAX_BACKOFF_EXPONENT = 10


class RateLimiter:
    """Per-user and global send ceilings over minute, hour, day and burst windows."""

    def __init__(
        self,
        store: BackingStore,
        config: RateLimitConfig,
        clock: Clock = utcnow,
        rng: Callable[[], float] = random.random,
    ):
        self.store = store
        self.config = config
        self._clock = clock
        self._rng = rng
        # scope -> (consecutive blocked checks, last block), drives the exponential backoff
        self._block_streak: Dict[str, Tuple[int, datetime]] = {}

    # ------------------------------------------------------------------ windows

    def user_windows(self) -> List[Window]:
        return [
            ("minute", RATE_LIMIT_WINDOWS_SECONDS["minute"], self.config.per_minute),
            ("hour", RATE_LIMIT_WINDOWS_SECONDS["hour"], self.config.per_hour),
            ("day", RATE_LIMIT_WINDOWS_SECONDS["day"], self.config.per_day),
            ("burst", RATE_LIMIT_WINDOWS_SECONDS["burst"], self.config.burst),
        ]

    def global_windows(self) -> List[Window]:
        multiplier = self.config.global_multiplier
        return [
            ("minute", RATE_LIMIT_WINDOWS_SECONDS["minute"], self.config.per_minute * multiplier),
            ("hour", RATE_LIMIT_WINDOWS_SECONDS["hour"], self.config.per_hour * multiplier),
        ]

    @staticmethod
    def _user_scope(user_id: str) -> str:
        return f"{RATE_LIMIT_KEY_PREFIX}:user:{user_id}"

    @staticmethod
    def _global_scope() -> str:
        return f"{RATE_LIMIT_KEY_PREFIX}:global"

    # ------------------------------------------------------------------ checks

    async def check_user_limit(self, user_id: str) -> RateLimitResult:
        """
        Check and record one send for a user across all user windows.

        Args:
            user_id: User the notification is for

        Returns:
            The most restrictive result; allowed=True means the attempt was recorded
        """
        return await self._check(self._user_scope(user_id), self.user_windows())

    async def check_global_limit(self) -> RateLimitResult:
        """Check and record one send against the system-wide windows."""
        return await self._check(self._global_scope(), self.global_windows())

    async def _check(self, scope: str, windows: List[Window]) -> RateLimitResult:
        now_ms = to_ms(self._clock())
        member = f"{now_ms}-{uuid.uuid4().hex[:8]}"
        specs = [(f"{scope}:{name}", size * 1000, limit) for name, size, limit in windows]
        try:
            recorded, counts = await self.store.record_if_under_limits(specs, member, now_ms)
            if not recorded:
                return await self._blocked(scope, windows, counts, now_ms)

            self._block_streak.pop(scope, None)
            # Report the window closest to its ceiling
            index = min(range(len(windows)), key=lambda i: windows[i][2] - counts[i])
            name, size, limit = windows[index]
            expires_in_ms = await self._oldest_expiry_ms(specs[index][0], size, now_ms)
            return RateLimitResult(
                allowed=True,
                remaining=limit - counts[index] - 1,
                reset_time=from_ms(now_ms + expires_in_ms),
                window=name,
            )
        except StoreUnavailableError as e:
            logger.warning(f"Rate limiter store unavailable, allowing {scope}: {e}")
            return RateLimitResult(allowed=True, remaining=0, window=None)

    async def _blocked(self, scope: str, windows: List[Window], counts: List[int], now_ms: int) -> RateLimitResult:
        """Most restrictive rejection among the full windows (largest retry delay)."""
        streak = self._block_streak.get(scope, (0, None))[0] + 1
        self._block_streak[scope] = (streak, from_ms(now_ms))

        decision: Optional[RateLimitResult] = None
        for (name, size, limit), count in zip(windows, counts):
            if count < limit:
                continue
            expires_in_ms = await self._oldest_expiry_ms(f"{scope}:{name}", size, now_ms)
            retry_after_ms = self._backoff_ms(expires_in_ms, streak)
            if decision is None or retry_after_ms > decision.retry_after_ms:
                decision = RateLimitResult(
                    allowed=False,
                    retry_after_ms=retry_after_ms,
                    remaining=0,
                    reset_time=from_ms(now_ms + expires_in_ms),
                    window=name,
                )
        logger.debug(
            f"Rate limit hit for {scope} on '{decision.window}' window, "
            f"retry in {decision.retry_after_ms}ms"
        )
        return decision

    def prune_block_streaks(self) -> int:
        """
        Forget backoff streaks of scopes that have not been blocked for
        ``max_backoff_seconds``. Returns the number of scopes dropped.
        """
        cutoff = self._clock() - timedelta(seconds=self.config.max_backoff_seconds)
        stale = [scope for scope, (_, last_blocked) in self._block_streak.items() if last_blocked <= cutoff]
        for scope in stale:
            del self._block_streak[scope]
        return len(stale)

    async def _oldest_expiry_ms(self, key: str, size: int, now_ms: int) -> int:
        """Milliseconds until the oldest entry leaves the window (never below 1)."""
        oldest = await self.store.zrange(key, 0, 0, withscores=True)
        if not oldest:
            return size * 1000
        _, score = oldest[0]
        return max(1, int(score) + size * 1000 - now_ms)

    def _backoff_ms(self, base_ms: int, streak: int) -> int:
        """Exponential backoff on top of the window expiry, with jitter, capped."""
        exponent = min(streak, MAX_BACKOFF_EXPONENT)
        delay = base_ms * (self.config.backoff_multiplier ** exponent)
        delay *= 1 + self._rng() * BACKOFF_JITTER
        cap_ms = self.config.max_backoff_seconds * 1000
        return max(1, int(min(delay, cap_ms)))

    # ------------------------------------------------------------------ counters

    async def increment_counters(self, user_id: str, include_global: bool = True):
        """
        Record a send without gating it (CRITICAL sends, bypassed checks).

        Args:
            user_id: User the notification went to
            include_global: Also record in the global windows
        """
        now_ms = to_ms(self._clock())
        member = f"{now_ms}-{uuid.uuid4().hex[:8]}"
        targets = [(self._user_scope(user_id), self.user_windows())]
        if include_global:
            targets.append((self._global_scope(), self.global_windows()))

        try:
            for scope, windows in targets:
                for name, size, _ in windows:
                    key = f"{scope}:{name}"
                    await self.store.zadd(key, {member: now_ms})
                    await self.store.expire(key, size)
        except StoreUnavailableError as e:
            logger.warning(f"Could not increment rate-limit counters for {user_id}: {e}")

    # ------------------------------------------------------------------ status

    async def _status(self, scope: str, windows: List[Window]) -> Dict[str, RateLimitWindowState]:
        now_ms = to_ms(self._clock())
        states = {}
        for name, size, limit in windows:
            key = f"{scope}:{name}"
            await self.store.zremrange_by_score(key, float("-inf"), now_ms - size * 1000)
            count = await self.store.zcard(key)
            reset_time = from_ms(now_ms + await self._oldest_expiry_ms(key, size, now_ms)) if count else None
            states[name] = RateLimitWindowState(key=key, window=name, count=count, limit=limit, reset_time=reset_time)
        return states

    async def get_user_status(self, user_id: str) -> Dict[str, RateLimitWindowState]:
        """Current count and limit of each user window."""
        return await self._status(self._user_scope(user_id), self.user_windows())

    async def get_global_status(self) -> Dict[str, RateLimitWindowState]:
        return await self._status(self._global_scope(), self.global_windows())

    async def reset_user_limits(self, user_id: str) -> int:
        """Clear every window for a user. Returns the number of keys deleted."""
        scope = self._user_scope(user_id)
        keys = [f"{scope}:{name}" for name, _, _ in self.user_windows()]
        self._block_streak.pop(scope, None)
        deleted = await self.store.delete(*keys)
        logger.info(f"Rate limits reset for user {user_id}")
        return deleted

    async def health_check(self) -> RateLimiterHealth:
        started = time.perf_counter()
        try:
            await self.store.ping()
        except StoreUnavailableError as e:
            return RateLimiterHealth(status="unhealthy", error=str(e))
        latency_ms = (time.perf_counter() - started) * 1000
        status = "degraded" if latency_ms > RATE_LIMIT_PING_DEGRADED_MS else "healthy"
        return RateLimiterHealth(status=status, latency_ms=round(latency_ms, 2))
