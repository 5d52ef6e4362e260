"""
Process memory monitoring and cache cleanup.

Memory is the resident set size reported by psutil. Anything holding
evictable data registers itself with ``register_cache``; the guard only ever
sweeps or clears those caches and asks the garbage collector to run, so a
cleanup never blocks sends for longer than a cache clear.
"""
import asyncio
import gc
import importlib
import linecache
import os
import re
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple
import psutil
from loguru import logger

from herald.config import MemoryConfig
from herald.constants import BYTES_PER_MB, EMERGENCY_GC_PASSES, EMERGENCY_GC_PAUSE_SECONDS
from herald.schemas.health import CleanupReport, MemoryHealthReport
from herald.utils.timeutil import Clock, utcnow

_process = psutil.Process(os.getpid())


def process_memory_mb() -> float:
    """Resident memory of this process in MB."""
    return _process.memory_info().rss / BYTES_PER_MB


def sample_process_resources() -> Tuple[float, float]:
    """(resident memory MB, CPU percent since the previous call)."""
    return process_memory_mb(), _process.cpu_percent(interval=None)


class Cache(Protocol):
    def sweep(self) -> int: ...

    def clear(self) -> int: ...


class MemoryGuard:
    """Watches process memory and cleans registered caches when thresholds are crossed."""

    def __init__(
        self,
        config: MemoryConfig,
        memory_probe: Callable[[], float] = process_memory_mb,
        clock: Clock = utcnow,
    ):
        self.config = config
        self.memory_probe = memory_probe
        self._clock = clock
        self._caches: Dict[str, Cache] = {}
        self._emergency_running = False
        self.last_cleanup: Optional[datetime] = None
        self.last_report: Optional[CleanupReport] = None

    def register_cache(self, name: str, cache: Cache):
        """Make a cache eligible for cleanup. Re-registering a name replaces it."""
        self._caches[name] = cache
        logger.debug(f"Memory guard tracking cache '{name}'")

    def unregister_cache(self, name: str):
        self._caches.pop(name, None)

    def current_mb(self) -> float:
        return self.memory_probe()

    def is_healthy(self) -> bool:
        return self.current_mb() < self.config.warning_mb

    def check(self) -> CleanupReport:
        """
        Compare memory against the thresholds and clean up accordingly.

        Returns:
            What was done ("none" below the warning threshold)
        """
        before = self.current_mb()
        if before < self.config.warning_mb:
            return CleanupReport(level="none", before_mb=round(before, 1), after_mb=round(before, 1), freed_mb=0.0)

        if before < self.config.cleanup_mb:
            logger.info(f"Memory at {before:.1f}MB (warning {self.config.warning_mb}MB), running light cleanup")
            return self._light_cleanup(before)

        logger.warning(f"Memory at {before:.1f}MB (cleanup {self.config.cleanup_mb}MB), running aggressive cleanup")
        return self._aggressive_cleanup(before)

    def _light_cleanup(self, before: float) -> CleanupReport:
        removed = 0
        for cache in self._caches.values():
            removed += cache.sweep()
        collected = gc.collect(0) + gc.collect(1)
        return self._finish("light", before, collected, removed)

    def _aggressive_cleanup(self, before: float) -> CleanupReport:
        removed = 0
        for name, cache in self._caches.items():
            cleared = cache.clear()
            removed += cleared
            if cleared:
                logger.debug(f"Cleared {cleared} entries from '{name}'")
        self._drop_interpreter_caches()
        collected = gc.collect()
        return self._finish("aggressive", before, collected, removed)

    @staticmethod
    def _drop_interpreter_caches():
        importlib.invalidate_caches()
        linecache.clearcache()
        re.purge()

    def _finish(self, level: str, before: float, collected: int, removed: int) -> CleanupReport:
        after = self.current_mb()
        freed = max(0.0, before - after)
        self.last_cleanup = self._clock()
        report = CleanupReport(
            level=level,
            before_mb=round(before, 1),
            after_mb=round(after, 1),
            freed_mb=round(freed, 1),
            collected_objects=collected,
            cache_entries_removed=removed,
        )
        self.last_report = report
        logger.info(
            f"{level.capitalize()} cleanup freed {freed:.1f}MB "
            f"({removed} cache entries, {collected} objects collected)"
        )
        return report

    async def emergency_cleanup(self) -> Optional[CleanupReport]:
        """
        Clear everything and run several full collections.

        Idempotent: a call made while another emergency cleanup is running
        returns None without doing anything.
        """
        if self._emergency_running:
            logger.debug("Emergency cleanup already running")
            return None

        self._emergency_running = True
        try:
            before = self.current_mb()
            logger.warning(f"Emergency memory cleanup at {before:.1f}MB")
            removed = sum(cache.clear() for cache in self._caches.values())
            self._drop_interpreter_caches()
            collected = 0
            for attempt in range(EMERGENCY_GC_PASSES):
                collected += gc.collect()
                if attempt < EMERGENCY_GC_PASSES - 1:
                    await asyncio.sleep(EMERGENCY_GC_PAUSE_SECONDS)
            return self._finish("emergency", before, collected, removed)
        finally:
            self._emergency_running = False

    def health_report(self) -> MemoryHealthReport:
        current = self.current_mb()
        if current >= self.config.cleanup_mb:
            status, recommendation = "critical", "Immediate memory cleanup required"
        elif current >= self.config.warning_mb:
            status, recommendation = "warning", "Consider reducing notification batches or clearing caches"
        else:
            status, recommendation = "healthy", "Memory usage is optimal"

        efficiency = max(0.0, (self.config.max_mb - current) / self.config.max_mb * 100)
        return MemoryHealthReport(
            status=status,
            current_mb=round(current, 1),
            warning_mb=self.config.warning_mb,
            cleanup_mb=self.config.cleanup_mb,
            max_mb=self.config.max_mb,
            efficiency=round(efficiency, 1),
            recommendation=recommendation,
            registered_caches=sorted(self._caches),
            last_cleanup=self.last_cleanup,
        )
