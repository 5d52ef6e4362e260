"""
Circuit breaker protecting the delivery transport.

State machine (initial CLOSED):
    CLOSED    -> OPEN       failure_count reaches failure_threshold
    OPEN      -> HALF_OPEN  lazily, on the first execute() after next_attempt_time
    HALF_OPEN -> CLOSED     probe succeeds (failure_count reset to 0)
    HALF_OPEN -> OPEN       probe fails (next_attempt_time re-armed)

While CLOSED, a success only decrements failure_count so isolated failures
heal gradually instead of being forgotten at once.
"""
import asyncio
import math
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, TypeVar
from loguru import logger

from herald.config import CircuitBreakerConfig
from herald.constants import CIRCUIT_DEGRADED_FAILURE_RATE, CIRCUIT_IDLE_HEAL_SECONDS
from herald.schemas.health import CircuitBreakerState, CircuitHealth, CircuitState, CircuitStats
from herald.utils.errors import CircuitOpenError, CircuitTimeoutError
from herald.utils.timeutil import Clock, utcnow

T = TypeVar("T")

_STATE_GAUGE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class CircuitBreaker:
    """One breaker per delivery transport."""

    def __init__(self, config: CircuitBreakerConfig, name: str = "transport", clock: Clock = utcnow):
        self.config = config
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._next_attempt_time: Optional[datetime] = None
        self._half_open_in_flight = 0

        # Lifetime counters for stats()
        self._success_total = 0
        self._failure_total = 0
        self._rejected_total = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_attempt_time(self) -> Optional[datetime]:
        return self._next_attempt_time

    def get_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self._state,
            failure_count=self._failure_count,
            last_failure_time=self._last_failure_time,
            next_attempt_time=self._next_attempt_time,
        )

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` through the breaker.

        Args:
            fn: Zero-argument coroutine factory performing the protected call

        Returns:
            Whatever ``fn`` returns

        Raises:
            CircuitOpenError: The breaker is open (or the probe slot is taken); fn was not called
            CircuitTimeoutError: fn exceeded call_timeout_seconds (counted as a failure)
            Exception: Anything fn raised (counted as a failure)
        """
        self._admit()
        is_probe = self._state == CircuitState.HALF_OPEN
        if is_probe:
            self._half_open_in_flight += 1

        try:
            result = await asyncio.wait_for(fn(), timeout=self.config.call_timeout_seconds)
        except asyncio.TimeoutError as e:
            self._on_failure(f"timed out after {self.config.call_timeout_seconds}s")
            raise CircuitTimeoutError(
                f"{self.name} call timed out after {self.config.call_timeout_seconds}s"
            ) from e
        except asyncio.CancelledError:
            # Cancellation says nothing about the dependency's health
            raise
        except Exception as e:
            self._on_failure(f"{type(e).__name__}: {e}")
            raise
        else:
            self._on_success()
            return result
        finally:
            if is_probe:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def _admit(self):
        """Apply the lazy OPEN -> HALF_OPEN transition and reject calls that may not run."""
        now = self._clock()

        if self._state == CircuitState.OPEN:
            if self._next_attempt_time is not None and now < self._next_attempt_time:
                self._rejected_total += 1
                raise CircuitOpenError(
                    f"Circuit '{self.name}' is open",
                    next_attempt_time=self._next_attempt_time,
                )
            self._transition(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN and self._half_open_in_flight >= self.config.half_open_max_calls:
            self._rejected_total += 1
            raise CircuitOpenError(
                f"Circuit '{self.name}' is half-open and already probing",
                next_attempt_time=now,
            )

    def _on_success(self):
        self._success_total += 1
        if self._state == CircuitState.HALF_OPEN:
            self._failure_count = 0
            self._next_attempt_time = None
            self._transition(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED and self._failure_count > 0:
            self._failure_count -= 1

    def _on_failure(self, reason: str):
        now = self._clock()
        self._failure_total += 1
        self._failure_count += 1
        self._last_failure_time = now

        if self._state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit '{self.name}' probe failed ({reason})")
            self._trip(now)
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
            logger.warning(
                f"Circuit '{self.name}' reached {self._failure_count} failures (last: {reason})"
            )
            self._trip(now)
        else:
            logger.debug(f"Circuit '{self.name}' failure {self._failure_count}/{self.config.failure_threshold}: {reason}")

    def _trip(self, now: datetime):
        self._next_attempt_time = now + timedelta(seconds=self.config.reset_timeout_seconds)
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState):
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            logger.error(
                f"Circuit '{self.name}' {old_state.value} -> OPEN, next attempt at "
                f"{self._next_attempt_time.isoformat() if self._next_attempt_time else '-'}"
            )
        else:
            logger.info(f"Circuit '{self.name}' {old_state.value} -> {new_state.value}")

    def time_until_next_attempt(self) -> float:
        """Seconds until an OPEN breaker admits a probe (0 when not OPEN)."""
        if self._state != CircuitState.OPEN or self._next_attempt_time is None:
            return 0.0
        return max(0.0, (self._next_attempt_time - self._clock()).total_seconds())

    def force_reset(self):
        """Manually close the breaker and forget recorded failures."""
        logger.warning(f"Circuit '{self.name}' manually reset from {self._state.value}")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt_time = None
        self._half_open_in_flight = 0

    def heal_idle(self) -> bool:
        """
        Forgive one failure when a CLOSED breaker has not failed for a while.

        Returns:
            True when the failure count was decremented
        """
        if self._state != CircuitState.CLOSED or self._failure_count == 0 or self._last_failure_time is None:
            return False
        idle = (self._clock() - self._last_failure_time).total_seconds()
        if idle < CIRCUIT_IDLE_HEAL_SECONDS:
            return False
        self._failure_count -= 1
        logger.debug(f"Circuit '{self.name}' idle for {idle:.0f}s, failure count now {self._failure_count}")
        return True

    def stats(self) -> CircuitStats:
        total = self._success_total + self._failure_total
        success_rate = (self._success_total / total * 100) if total else 100.0
        failure_rate = (self._failure_total / total * 100) if total else 0.0
        return CircuitStats(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_total,
            total_calls=total,
            rejected_calls=self._rejected_total,
            success_rate=round(success_rate, 2),
            failure_rate=round(failure_rate, 2),
            last_failure_time=self._last_failure_time,
            next_attempt_time=self._next_attempt_time,
        )

    def health_check(self) -> CircuitHealth:
        stats = self.stats()

        if self._state == CircuitState.OPEN:
            wait = math.ceil(self.time_until_next_attempt())
            return CircuitHealth(
                status="unhealthy",
                state=self._state,
                message=f"Circuit '{self.name}' is open",
                recommendation=f"Service is unavailable. Will retry in {wait}s",
                stats=stats,
            )
        if self._state == CircuitState.HALF_OPEN:
            return CircuitHealth(
                status="degraded",
                state=self._state,
                message=f"Circuit '{self.name}' is half-open",
                recommendation="Service is recovering - monitoring next requests",
                stats=stats,
            )
        if stats.failure_rate > CIRCUIT_DEGRADED_FAILURE_RATE:
            return CircuitHealth(
                status="degraded",
                state=self._state,
                message=f"Failure rate {stats.failure_rate:.1f}%",
                recommendation="High failure rate detected - monitor closely",
                stats=stats,
            )
        return CircuitHealth(
            status="healthy",
            state=self._state,
            message=f"Circuit '{self.name}' is closed",
            recommendation="No action required",
            stats=stats,
        )

    def export_metrics(self) -> Dict[str, float]:
        """Flat gauge values for the text exporter."""
        stats = self.stats()
        return {
            "circuit_breaker_state": _STATE_GAUGE[self._state],
            "circuit_breaker_failure_count": self._failure_count,
            "circuit_breaker_success_total": stats.success_count,
            "circuit_breaker_failure_rate": stats.failure_rate,
            "circuit_breaker_rejected_total": stats.rejected_calls,
        }
