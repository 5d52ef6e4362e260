"""
Delivery metrics: buffered samples folded into hourly aggregates.

Aggregates live in ``metrics:hourly:{hour}`` hashes (hour = epoch hours) with
integer counters, a float latency sum and one ``type:{name}`` field per
notification type. Recording is best effort: when the store is down samples
stay buffered (bounded) and are retried on the next flush.
"""
import asyncio
from collections import Counter, defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from loguru import logger

from herald.config import MetricsConfig
from herald.constants import (
    METRICS_HOURLY_KEY,
    METRICS_MAX_PENDING_SAMPLES,
    METRICS_RETENTION_SECONDS,
    METRICS_TOP_TYPES_LIMIT,
)
from herald.schemas.health import DeliveryMetrics, PerformanceInsight
from herald.schemas.notification import MetricSample
from herald.services.circuit_breaker import CircuitBreaker
from herald.services.memory_guard import sample_process_resources
from herald.stores.base import BackingStore
from herald.utils.errors import StoreUnavailableError
from herald.utils.timeutil import Clock, utcnow

TYPE_FIELD_PREFIX = "type:"


class _HourTotals:
    """Running totals for one hour bucket."""

    __slots__ = ("total", "successful", "failed", "latency_sum", "batch_size_sum", "types")

    def __init__(self):
        self.total = 0
        self.successful = 0
        self.failed = 0
        self.latency_sum = 0.0
        self.batch_size_sum = 0
        self.types: Counter = Counter()

    def add_sample(self, sample: MetricSample):
        self.total += 1
        if sample.success:
            self.successful += 1
        else:
            self.failed += 1
        self.latency_sum += sample.latency_ms
        self.batch_size_sum += sample.batch_size
        self.types[sample.type] += 1

    def add_hash(self, data: Dict[str, str]):
        self.total += int(data.get("total", 0))
        self.successful += int(data.get("successful", 0))
        self.failed += int(data.get("failed", 0))
        self.latency_sum += float(data.get("latency_sum", 0))
        self.batch_size_sum += int(data.get("batch_size_sum", 0))
        for field, value in data.items():
            if field.startswith(TYPE_FIELD_PREFIX):
                self.types[field[len(TYPE_FIELD_PREFIX):]] += int(value)

    def merge(self, other: "_HourTotals"):
        self.total += other.total
        self.successful += other.successful
        self.failed += other.failed
        self.latency_sum += other.latency_sum
        self.batch_size_sum += other.batch_size_sum
        self.types.update(other.types)


class MetricsCollector:
    """
    Records every delivery attempt and derives health reports.

    Args:
        store: Backing store holding the hourly hashes
        config: Buffer size and flush interval
        clock: Time source
        queue_depth_probe: Coroutine returning the current total queue depth
        resource_probe: Returns (memory MB, CPU percent) of this process
        memory_alert_mb: Memory above which insights report critical
        circuit_breaker: Breaker whose gauges are added to the text export
    """

    def __init__(
        self,
        store: BackingStore,
        config: MetricsConfig,
        clock: Clock = utcnow,
        queue_depth_probe: Optional[Callable[[], Awaitable[int]]] = None,
        resource_probe: Callable[[], Tuple[float, float]] = sample_process_resources,
        memory_alert_mb: float = 384.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.store = store
        self.config = config
        self._clock = clock
        self.queue_depth_probe = queue_depth_probe
        self.resource_probe = resource_probe
        self.memory_alert_mb = memory_alert_mb
        self.circuit_breaker = circuit_breaker
        self._buffer: List[MetricSample] = []
        self._flush_lock = asyncio.Lock()
        self.dropped_samples = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def record_delivery(
        self,
        notification_type: Optional[str],
        success: bool,
        latency_ms: float = 0.0,
        batch_size: int = 1,
    ):
        """
        Buffer one delivery attempt, flushing early when the buffer is full.

        Args:
            notification_type: payload.data.type (None is recorded as "unknown")
            success: Whether the notification reached the transport (or was deliberately queued)
            latency_ms: Time spent on the attempt
            batch_size: Number of notifications the attempt represented
        """
        self._buffer.append(MetricSample(
            timestamp=self._clock(),
            type=notification_type or "unknown",
            success=success,
            latency_ms=max(0.0, latency_ms),
            batch_size=max(1, batch_size),
        ))
        if len(self._buffer) >= self.config.buffer_size:
            await self.flush()

    async def flush(self) -> int:
        """
        Fold buffered samples into the hourly hashes.

        Returns:
            Number of samples persisted
        """
        async with self._flush_lock:
            if not self._buffer:
                return 0

            samples, self._buffer = self._buffer, []
            by_hour: Dict[int, List[MetricSample]] = defaultdict(list)
            for sample in samples:
                by_hour[sample.hour_bucket].append(sample)

            persisted = 0
            for hour in sorted(by_hour):
                hour_samples = by_hour[hour]
                try:
                    await self._write_hour(hour, hour_samples)
                    persisted += len(hour_samples)
                except StoreUnavailableError as e:
                    unsaved = [s for h in sorted(by_hour) if h >= hour for s in by_hour[h]]
                    self._requeue(unsaved)
                    logger.warning(f"Metrics flush failed, {len(unsaved)} samples kept for retry: {e}")
                    break

            if persisted:
                logger.debug(f"Flushed {persisted} metric samples")
            return persisted

    async def _write_hour(self, hour: int, samples: List[MetricSample]):
        totals = _HourTotals()
        for sample in samples:
            totals.add_sample(sample)

        key = METRICS_HOURLY_KEY.format(hour=hour)
        await self.store.hincrby(key, "total", totals.total)
        await self.store.hincrby(key, "successful", totals.successful)
        await self.store.hincrby(key, "failed", totals.failed)
        await self.store.hincrbyfloat(key, "latency_sum", totals.latency_sum)
        await self.store.hincrby(key, "batch_size_sum", totals.batch_size_sum)
        for notification_type, count in totals.types.items():
            await self.store.hincrby(key, f"{TYPE_FIELD_PREFIX}{notification_type}", count)
        await self.store.expire(key, METRICS_RETENTION_SECONDS)

    def _requeue(self, samples: List[MetricSample]):
        self._buffer = samples + self._buffer
        overflow = len(self._buffer) - METRICS_MAX_PENDING_SAMPLES
        if overflow > 0:
            # Oldest samples go first
            self._buffer = self._buffer[overflow:]
            self.dropped_samples += overflow
            logger.warning(f"Metrics buffer full, dropped {overflow} samples")

    async def _collect(self, period_hours: int) -> _HourTotals:
        """Persisted aggregates plus still-buffered samples for the trailing period."""
        current_hour = int(self._clock().timestamp() // 3600)
        first_hour = current_hour - period_hours + 1
        totals = _HourTotals()

        for hour in range(first_hour, current_hour + 1):
            try:
                data = await self.store.hgetall(METRICS_HOURLY_KEY.format(hour=hour))
            except StoreUnavailableError as e:
                logger.warning(f"Could not read metrics for hour {hour}: {e}")
                continue
            if data:
                totals.add_hash(data)

        pending = _HourTotals()
        for sample in self._buffer:
            if first_hour <= sample.hour_bucket <= current_hour:
                pending.add_sample(sample)
        totals.merge(pending)
        return totals

    async def _queue_depth(self) -> int:
        if self.queue_depth_probe is None:
            return 0
        try:
            return await self.queue_depth_probe()
        except StoreUnavailableError as e:
            logger.warning(f"Queue depth unavailable: {e}")
            return 0

    async def get_metrics(self, period_hours: int = 24) -> DeliveryMetrics:
        """
        Delivery statistics for the trailing ``period_hours``.

        Args:
            period_hours: Number of hour buckets to include, current hour included

        Returns:
            DeliveryMetrics (delivery rate is 100 and batch efficiency 1 when there is no data)
        """
        period_hours = max(1, period_hours)
        totals = await self._collect(period_hours)
        memory_mb, cpu_percent = self.resource_probe()

        if totals.total:
            delivery_rate = totals.successful / totals.total * 100
            error_rate = totals.failed / totals.total * 100
            average_latency = totals.latency_sum / totals.total
            batch_efficiency = totals.batch_size_sum / totals.total
        else:
            delivery_rate, error_rate, average_latency, batch_efficiency = 100.0, 0.0, 0.0, 1.0

        return DeliveryMetrics(
            period_hours=period_hours,
            total=totals.total,
            successful=totals.successful,
            failed=totals.failed,
            delivery_rate=round(delivery_rate, 2),
            error_rate=round(error_rate, 2),
            average_latency_ms=round(average_latency, 2),
            throughput_per_hour=round(totals.total / period_hours, 2),
            batch_efficiency=round(batch_efficiency, 2),
            queue_depth=await self._queue_depth(),
            memory_mb=round(memory_mb, 1),
            cpu_percent=round(cpu_percent, 1),
            type_breakdown=dict(totals.types),
        )

    async def get_top_notification_types(self, hours: int = 24) -> List[Dict[str, Any]]:
        """Most frequent notification types with their share of the total."""
        totals = await self._collect(max(1, hours))
        type_total = sum(totals.types.values())
        return [
            {
                "type": notification_type,
                "count": count,
                "percentage": round(count / type_total * 100, 2) if type_total else 0.0,
            }
            for notification_type, count in totals.types.most_common(METRICS_TOP_TYPES_LIMIT)
        ]

    async def get_performance_insights(self) -> List[PerformanceInsight]:
        """Apply fixed thresholds to the last 24 hours and emit leveled recommendations."""
        metrics = await self.get_metrics(24)
        insights: List[PerformanceInsight] = []

        if metrics.delivery_rate < 95:
            insights.append(PerformanceInsight(
                level="critical", metric="delivery_rate", value=metrics.delivery_rate, threshold=95,
                message=f"Low delivery rate: {metrics.delivery_rate:.1f}%",
                recommendation="Check external service connectivity and error logs",
            ))
        elif metrics.delivery_rate < 98:
            insights.append(PerformanceInsight(
                level="warning", metric="delivery_rate", value=metrics.delivery_rate, threshold=98,
                message=f"Delivery rate could be improved: {metrics.delivery_rate:.1f}%",
                recommendation="Monitor error patterns and consider retry logic improvements",
            ))

        if metrics.average_latency_ms > 1000:
            insights.append(PerformanceInsight(
                level="critical", metric="average_latency_ms", value=metrics.average_latency_ms, threshold=1000,
                message=f"High average latency: {metrics.average_latency_ms:.0f}ms",
                recommendation="Optimize notification processing or increase batch sizes",
            ))
        elif metrics.average_latency_ms > 500:
            insights.append(PerformanceInsight(
                level="warning", metric="average_latency_ms", value=metrics.average_latency_ms, threshold=500,
                message=f"Elevated latency: {metrics.average_latency_ms:.0f}ms",
                recommendation="Consider performance optimizations",
            ))

        if metrics.queue_depth > 1000:
            insights.append(PerformanceInsight(
                level="critical", metric="queue_depth", value=metrics.queue_depth, threshold=1000,
                message=f"Large queue backlog: {metrics.queue_depth} notifications",
                recommendation="Increase processing capacity or review batch processing settings",
            ))
        elif metrics.queue_depth > 500:
            insights.append(PerformanceInsight(
                level="warning", metric="queue_depth", value=metrics.queue_depth, threshold=500,
                message=f"Queue building up: {metrics.queue_depth} notifications",
                recommendation="Monitor processing rate and consider scaling",
            ))

        # Without traffic the default efficiency of 1 says nothing
        if metrics.total and metrics.batch_efficiency < 2:
            insights.append(PerformanceInsight(
                level="warning", metric="batch_efficiency", value=metrics.batch_efficiency, threshold=2,
                message=f"Low batch efficiency: {metrics.batch_efficiency:.1f} notifications per batch",
                recommendation="Review batching configuration to improve efficiency",
            ))

        if metrics.memory_mb > self.memory_alert_mb:
            insights.append(PerformanceInsight(
                level="critical", metric="memory_mb", value=metrics.memory_mb, threshold=self.memory_alert_mb,
                message=f"High memory usage: {metrics.memory_mb:.0f}MB",
                recommendation="Trigger memory optimization or restart service",
            ))

        return insights

    async def export_prometheus(self) -> str:
        """Plain-text exposition of the last hour's gauges."""
        metrics = await self.get_metrics(1)
        gauges = [
            ("notification_delivery_rate", "Percentage of successful notification deliveries", metrics.delivery_rate),
            ("notification_error_rate", "Percentage of failed notification deliveries", metrics.error_rate),
            ("notification_average_latency", "Average notification processing latency in milliseconds", metrics.average_latency_ms),
            ("notification_throughput", "Notifications processed per hour", metrics.throughput_per_hour),
            ("notification_queue_depth", "Current number of queued notifications", metrics.queue_depth),
            ("notification_memory_usage", "Memory usage in MB", metrics.memory_mb),
        ]
        if self.circuit_breaker is not None:
            breaker = self.circuit_breaker.export_metrics()
            gauges.append((
                "notification_circuit_breaker_state",
                "Circuit breaker state (0=closed, 1=half-open, 2=open)",
                breaker["circuit_breaker_state"],
            ))
            gauges.append((
                "notification_circuit_breaker_failures",
                "Failures currently counted by the circuit breaker",
                breaker["circuit_breaker_failure_count"],
            ))

        lines = []
        for name, help_text, value in gauges:
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} gauge")
            lines.append(f"{name} {value}")
        return "\n".join(lines) + "\n"
