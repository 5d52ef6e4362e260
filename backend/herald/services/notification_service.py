"""
Notification delivery orchestrator.

``send`` runs every notification through preferences, the priority branch,
batching, rate limiting and the circuit-breaker-protected transport. Failures
never reach the caller as exceptions: they end up queued for retry, or as a
rejected result for validation errors and a full queue.

Background loops (started by ``start``) drain the queue periodically and on
batch triggers published by the queue.
"""
import asyncio
import random
import time
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set, Tuple, Union
from loguru import logger

from herald.clients.base import BaseTransport
from herald.config import DeliveryConfig
from herald.constants import (
    BATCH_TRIGGER_CHANNEL,
    MAINTENANCE_INTERVAL_SECONDS,
    TRIGGER_RESUBSCRIBE_DELAY_SECONDS,
)
from herald.middleware.correlation import bind_correlation_id
from herald.schemas.health import SystemHealth
from herald.schemas.notification import (
    DeliveryResult,
    NotificationBatch,
    NotificationPayload,
    Priority,
    QueueItem,
    SendOptions,
)
from herald.schemas.preferences import DigestMode, NotificationPreferences
from herald.services.circuit_breaker import CircuitBreaker
from herald.services.memory_guard import MemoryGuard, process_memory_mb, sample_process_resources
from herald.services.metrics_collector import MetricsCollector
from herald.services.notification_queue import NotificationQueue
from herald.services.preferences import (
    CachedPreferenceStore,
    InMemoryPreferenceStore,
    PreferenceStore,
    evaluate_preferences,
)
from herald.services.rate_limiter import RateLimiter
from herald.services.task_supervisor import TaskSupervisor
from herald.stores.base import BackingStore, Subscription
from herald.utils.errors import (
    CircuitOpenError,
    ErrorCode,
    QueueFullError,
    StoreUnavailableError,
    ValidationError,
)
from herald.utils.timeutil import Clock, to_ms, utcnow


class NotificationService:
    """
    Owns the queue, rate limiter, circuit breaker, metrics collector and
    memory guard, and wires them into the send path and background loops.
    """

    def __init__(
        self,
        config: DeliveryConfig,
        store: BackingStore,
        transport: BaseTransport,
        preference_store: Optional[PreferenceStore] = None,
        clock: Clock = utcnow,
        memory_probe: Callable[[], float] = process_memory_mb,
        resource_probe: Callable[[], Tuple[float, float]] = sample_process_resources,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config
        self.store = store
        self.transport = transport
        self.preference_store = preference_store or InMemoryPreferenceStore()
        self._clock = clock

        self.queue = NotificationQueue(
            store,
            config.queue,
            clock=clock,
            memory_probe=memory_probe,
            memory_limit_mb=config.memory.max_mb,
        )
        self.rate_limiter = RateLimiter(store, config.rate_limit, clock=clock, rng=rng)
        self.circuit_breaker = CircuitBreaker(config.circuit_breaker, name=transport.name, clock=clock)
        self.metrics = MetricsCollector(
            store,
            config.metrics,
            clock=clock,
            queue_depth_probe=self.queue.total_depth,
            resource_probe=resource_probe,
            memory_alert_mb=config.memory.warning_mb,
            circuit_breaker=self.circuit_breaker,
        )
        self.memory_guard = MemoryGuard(config.memory, memory_probe=memory_probe, clock=clock)
        if isinstance(self.preference_store, CachedPreferenceStore):
            self.memory_guard.register_cache("preferences", self.preference_store.cache)

        self.supervisor = TaskSupervisor()
        self._subscription: Optional[Subscription] = None
        self._trigger_tasks: Set[asyncio.Task] = set()
        self._processing_users: Set[str] = set()
        self._processing_scheduled = False

    # ------------------------------------------------------------------ send

    async def send(
        self,
        user_id: str,
        payload: Union[NotificationPayload, Dict[str, Any]],
        priority: Union[Priority, str] = Priority.NORMAL,
        options: Optional[Union[SendOptions, Dict[str, Any]]] = None,
    ) -> DeliveryResult:
        """
        Deliver a notification now, or queue it for later.

        Args:
            user_id: Recipient
            payload: Notification payload (dicts are validated into NotificationPayload)
            priority: Delivery priority
            options: Batching, deduplication, scheduling and rate-limit bypass

        Returns:
            DeliveryResult with status delivered, queued, blocked or rejected
        """
        started = time.perf_counter()
        try:
            payload, priority, options = self._validate(user_id, payload, priority, options)
        except ValidationError as e:
            logger.warning(f"Rejected notification for '{user_id}': {e.message}")
            return DeliveryResult.rejected(ErrorCode.VALIDATION_ERROR, e.message)

        try:
            return await self._send(user_id, payload, priority, options, started)
        except QueueFullError as e:
            await self._record(payload.type, False, started)
            return DeliveryResult.rejected(ErrorCode.QUEUE_FULL, e.message)
        except StoreUnavailableError as e:
            logger.error(f"Notification for {user_id} could not be queued: {e}")
            await self._record(payload.type, False, started)
            return DeliveryResult.rejected(ErrorCode.STORE_UNAVAILABLE, e.message)

    @staticmethod
    def _validate(
        user_id: str,
        payload: Union[NotificationPayload, Dict[str, Any]],
        priority: Union[Priority, str],
        options: Optional[Union[SendOptions, Dict[str, Any]]],
    ) -> Tuple[NotificationPayload, Priority, SendOptions]:
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        try:
            if not isinstance(payload, NotificationPayload):
                payload = NotificationPayload.model_validate(payload)
            priority = Priority(priority)
            if options is None:
                options = SendOptions()
            elif not isinstance(options, SendOptions):
                options = SendOptions.model_validate(options)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if options.schedule_for is not None and options.schedule_for.tzinfo is None:
            raise ValidationError("schedule_for must be timezone-aware")
        return payload, priority, options

    async def _send(
        self,
        user_id: str,
        payload: NotificationPayload,
        priority: Priority,
        options: SendOptions,
        started: float,
    ) -> DeliveryResult:
        prefs = await self._load_preferences(user_id)
        reason = evaluate_preferences(payload, priority, prefs, self._clock())
        if reason:
            logger.info(f"Notification for {user_id} blocked by preferences: {reason}")
            await self._record(payload.type, False, 0.0)
            return DeliveryResult.blocked(reason)

        now = self._clock()
        item = QueueItem(
            user_id=user_id,
            payload=payload,
            priority=priority,
            scheduled_for=options.schedule_for or now,
            created_at=now,
            batchable=options.batchable,
            dedup_key=options.dedup_key,
        )

        if item.scheduled_for > now:
            if priority == Priority.CRITICAL:
                item = item.model_copy(update={"payload": self._critical_payload(payload)})
            item_id = await self.queue.enqueue(item)
            await self._record(payload.type, True, started)
            return DeliveryResult.queued_for(item_id, retry_at=item.scheduled_for)

        if priority == Priority.CRITICAL:
            return await self._send_critical(item, started)

        if self._should_batch(payload, priority, prefs):
            item_id = await self.queue.enqueue(item)
            await self._record(payload.type, True, started)
            return DeliveryResult.queued_for(item_id, retry_at=item.scheduled_for)

        if options.bypass_rate_limit:
            await self.rate_limiter.increment_counters(user_id, include_global=False)
            global_check = await self.rate_limiter.check_global_limit()
            if not global_check.allowed:
                logger.warning(f"Global rate limit blocked bypassed send for {user_id}")
                await self._record(payload.type, False, started)
                return DeliveryResult.rejected(
                    ErrorCode.RATE_LIMITED,
                    f"Global rate limit exceeded, retry in {global_check.retry_after_ms}ms",
                )
        else:
            limit = await self.rate_limiter.check_user_limit(user_id)
            if limit.allowed:
                limit = await self.rate_limiter.check_global_limit()
            if not limit.allowed:
                retry_at = now + timedelta(milliseconds=limit.retry_after_ms)
                item_id = await self.queue.enqueue(item.model_copy(update={"scheduled_for": retry_at}))
                await self._record(payload.type, False, started)
                return DeliveryResult.queued_for(
                    item_id,
                    retry_at=retry_at,
                    retry_after_ms=limit.retry_after_ms,
                    reason=f"Rate limited, scheduled for {retry_at.isoformat()}",
                )

        return await self._deliver_now(item, started)

    async def _send_critical(self, item: QueueItem, started: float) -> DeliveryResult:
        """CRITICAL sends skip batching and rate-limit gating but still count."""
        item = item.model_copy(update={"payload": self._critical_payload(item.payload)})
        await self.rate_limiter.increment_counters(item.user_id)
        return await self._deliver_now(item, started)

    def _critical_payload(self, payload: NotificationPayload) -> NotificationPayload:
        # A unique tag keeps transports from collapsing critical alerts together
        tag = f"critical-{to_ms(self._clock())}-{uuid.uuid4().hex[:6]}"
        return payload.model_copy(update={"require_interaction": True, "tag": tag})

    def _should_batch(self, payload: NotificationPayload, priority: Priority, prefs: NotificationPreferences) -> bool:
        if priority in (Priority.CRITICAL, Priority.HIGH):
            return False
        if not prefs.batching_enabled or prefs.digest_mode == DigestMode.IMMEDIATE:
            return False
        return payload.type in self.config.batching.batchable_types

    async def _deliver_now(self, item: QueueItem, started: float) -> DeliveryResult:
        """Call the transport for a not-yet-queued item, queueing it on failure."""
        try:
            await self.circuit_breaker.execute(lambda: self.transport.send(item.user_id, item.payload))
        except CircuitOpenError as e:
            retry_at = e.next_attempt_time or self._retry_at(1)
            item_id = await self.queue.enqueue(item.model_copy(update={"scheduled_for": retry_at}))
            await self._record(item.type, False, started)
            return DeliveryResult.queued_for(
                item_id,
                retry_at=retry_at,
                retry_after_ms=self._ms_until(retry_at),
                reason="Service temporarily unavailable, queued for retry",
            )
        except Exception as e:
            logger.warning(f"Delivery to {item.user_id} failed: {e}")
            await self._record(item.type, False, started)
            failed = item.model_copy(update={"attempts": item.attempts + 1})
            if failed.attempts >= self.config.retry.max_delivery_attempts:
                await self.queue.dead_letter(failed, str(e))
                return DeliveryResult.rejected(ErrorCode.TRANSPORT_ERROR, f"Delivery failed: {e}")
            retry_at = self._retry_at(failed.attempts)
            item_id = await self.queue.enqueue(failed.model_copy(update={"scheduled_for": retry_at}))
            return DeliveryResult.queued_for(
                item_id,
                retry_at=retry_at,
                retry_after_ms=self._ms_until(retry_at),
                reason=f"Delivery failed, queued for retry: {e}",
            )

        latency_ms = (time.perf_counter() - started) * 1000
        await self.metrics.record_delivery(item.type, True, latency_ms)
        logger.debug(f"Delivered {item.priority.value} notification to {item.user_id} in {latency_ms:.0f}ms")
        return DeliveryResult.delivered(round(latency_ms, 2))

    async def _load_preferences(self, user_id: str) -> NotificationPreferences:
        try:
            return await self.preference_store.get_preferences(user_id)
        except Exception as e:
            logger.warning(f"Preferences unavailable for {user_id}, using defaults: {e}")
            return NotificationPreferences()

    # ------------------------------------------------------------------ helpers

    def retry_delay_seconds(self, attempts: int) -> float:
        """Exponential redelivery delay after ``attempts`` failed attempts, capped."""
        retry = self.config.retry
        delay = retry.base_retry_delay_seconds * (2 ** max(0, attempts - 1))
        return min(delay, retry.max_retry_delay_seconds)

    def _retry_at(self, attempts: int) -> datetime:
        return self._clock() + timedelta(seconds=self.retry_delay_seconds(attempts))

    def _ms_until(self, when: datetime) -> int:
        return max(0, int((when - self._clock()).total_seconds() * 1000))

    async def _record(self, notification_type: Optional[str], success: bool, started: float, batch_size: int = 1):
        latency_ms = (time.perf_counter() - started) * 1000 if started else 0.0
        await self.metrics.record_delivery(notification_type, success, latency_ms, batch_size)

    # ------------------------------------------------------------------ batches

    async def process_batch_for_user(self, user_id: str) -> int:
        """
        Drain one user's queue. Skipped while that user's batch is already running.

        Returns:
            Number of deliveries attempted
        """
        if user_id in self._processing_users:
            logger.debug(f"Batch for user {user_id} already in progress")
            return 0

        self._processing_users.add(user_id)
        try:
            batch = await self.queue.dequeue_batch(user_id)
            if batch is None:
                return 0
            await self.process_batch(batch)
            return batch.size
        except StoreUnavailableError as e:
            logger.error(f"Batch processing error for user {user_id}: {e}")
            return 0
        finally:
            self._processing_users.discard(user_id)

    async def process_scheduled_batches(self) -> int:
        """Drain due items across all queues. Skipped while a previous run is in progress."""
        if self._processing_scheduled:
            return 0

        self._processing_scheduled = True
        try:
            batch = await self.queue.dequeue_batch()
            if batch is None:
                return 0
            await self.process_batch(batch)
            return batch.size
        except StoreUnavailableError as e:
            logger.error(f"Scheduled batch processing error: {e}")
            return 0
        finally:
            self._processing_scheduled = False

    async def process_batch(self, batch: NotificationBatch) -> Dict[str, int]:
        """
        Deliver a dequeued batch in chunks of ``concurrency_limit``.

        Returns:
            Outcome counts (delivered, rate_limited, circuit_open, retry, dead_letter, lost)
        """
        with bind_correlation_id(batch.id):
            logger.info(f"Processing notification batch {batch.id} with {batch.size} notifications")
            started = time.perf_counter()
            outcomes: Counter = Counter()
            chunk_size = self.config.batching.concurrency_limit

            for offset in range(0, batch.size, chunk_size):
                chunk = batch.items[offset:offset + chunk_size]
                results = await asyncio.gather(*(self._deliver_queued(item) for item in chunk), return_exceptions=True)
                for item, result in zip(chunk, results):
                    if isinstance(result, Exception):
                        logger.error(f"Notification {item.id} for {item.user_id} lost: {type(result).__name__}: {result}")
                        outcomes["lost"] += 1
                    else:
                        outcomes[result] += 1

                if offset + chunk_size < batch.size and self.config.batching.chunk_delay_seconds:
                    await asyncio.sleep(self.config.batching.chunk_delay_seconds)

            total_notifications = sum(item.size for item in batch.items)
            await self._record("batch", True, started, batch_size=total_notifications)
            logger.info(
                f"Batch {batch.id} completed in {(time.perf_counter() - started) * 1000:.0f}ms: "
                + ", ".join(f"{count} {outcome}" for outcome, count in sorted(outcomes.items()))
            )
            return dict(outcomes)

    async def _deliver_queued(self, item: QueueItem) -> str:
        started = time.perf_counter()

        # Conditions may have changed while the item waited
        if item.priority == Priority.CRITICAL:
            await self.rate_limiter.increment_counters(item.user_id)
        else:
            limit = await self.rate_limiter.check_user_limit(item.user_id)
            if not limit.allowed:
                await self.queue.requeue(item, self._clock() + timedelta(milliseconds=limit.retry_after_ms))
                await self._record(item.type, False, started, item.size)
                return "rate_limited"

        try:
            await self.circuit_breaker.execute(lambda: self.transport.send(item.user_id, item.payload))
        except CircuitOpenError as e:
            await self.queue.requeue(item, e.next_attempt_time or self._retry_at(1))
            await self._record(item.type, False, started, item.size)
            return "circuit_open"
        except Exception as e:
            await self._record(item.type, False, started, item.size)
            failed = item.model_copy(update={"attempts": item.attempts + 1})
            if failed.attempts >= self.config.retry.max_delivery_attempts:
                await self.queue.dead_letter(failed, str(e))
                return "dead_letter"
            logger.warning(f"Delivery of {item.id} failed (attempt {failed.attempts}): {e}")
            await self.queue.requeue(failed, self._retry_at(failed.attempts))
            return "retry"

        await self._record(item.type, True, started, item.size)
        return "delivered"

    # ------------------------------------------------------------------ background

    async def start(self):
        """Start the background loops under supervision."""
        self.supervisor.register_task("batch_processor", self._batch_loop)
        self.supervisor.register_task("batch_trigger_listener", self._trigger_loop)
        self.supervisor.register_task("metrics_flush", self._metrics_loop)
        self.supervisor.register_task("memory_guard", self._memory_loop)
        self.supervisor.register_task("maintenance", self._maintenance_loop)
        await self.supervisor.start_monitoring()
        logger.info("Notification background processors started")

    async def stop(self):
        """Stop background work, flush buffered metrics and close the transport."""
        await self.supervisor.stop()

        for task in list(self._trigger_tasks):
            task.cancel()
        if self._trigger_tasks:
            await asyncio.gather(*self._trigger_tasks, return_exceptions=True)
        await self._close_subscription()

        try:
            await self.metrics.flush()
        except StoreUnavailableError as e:
            logger.warning(f"Final metrics flush failed: {e}")
        await self.transport.close()
        logger.info("Notification service stopped")

    async def _close_subscription(self):
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def _batch_loop(self):
        while True:
            try:
                await asyncio.sleep(self.config.batching.interval_seconds)
                await self.process_scheduled_batches()
            except asyncio.CancelledError:
                logger.debug("Batch processor cancelled")
                raise
            except Exception as e:
                logger.error(f"Batch processor error: {e}")

    async def _trigger_loop(self):
        while True:
            try:
                self._subscription = await self.store.subscribe(BATCH_TRIGGER_CHANNEL)
                async for user_id in self._subscription.listen():
                    task = asyncio.create_task(self.process_batch_for_user(user_id), name=f"batch:{user_id}")
                    self._trigger_tasks.add(task)
                    task.add_done_callback(self._trigger_tasks.discard)
            except asyncio.CancelledError:
                await self._close_subscription()
                raise
            except Exception as e:
                logger.error(f"Batch trigger subscription error: {e}")
            await self._close_subscription()
            await asyncio.sleep(TRIGGER_RESUBSCRIBE_DELAY_SECONDS)

    async def _metrics_loop(self):
        while True:
            try:
                await asyncio.sleep(self.config.metrics.flush_interval_seconds)
                await self.metrics.flush()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Metrics flush error: {e}")

    async def _memory_loop(self):
        while True:
            try:
                await asyncio.sleep(self.config.memory.check_interval_seconds)
                await self.check_memory()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Memory guard error: {e}")

    async def check_memory(self):
        report = self.memory_guard.check()
        if report.after_mb >= self.config.memory.max_mb:
            await self.memory_guard.emergency_cleanup()
        return report

    async def _maintenance_loop(self):
        while True:
            try:
                await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)
                await self.run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Maintenance error: {e}")

    async def run_maintenance(self):
        """Expire stale store entries and forget failures and backoff streaks that went idle."""
        swept = await self.store.sweep()
        if swept:
            logger.debug(f"Swept {swept} expired store keys")
        self.circuit_breaker.heal_idle()
        pruned = self.rate_limiter.prune_block_streaks()
        if pruned:
            logger.debug(f"Forgot rate-limit backoff for {pruned} idle scopes")

    # ------------------------------------------------------------------ health

    async def get_system_health(self) -> SystemHealth:
        queue = await self.queue.get_health()
        store_health = await self.rate_limiter.health_check()
        try:
            global_limits = await self.rate_limiter.get_global_status()
        except StoreUnavailableError as e:
            logger.warning(f"Global rate limit status unavailable: {e}")
            global_limits = {}
        circuit = self.circuit_breaker.health_check()
        metrics = await self.metrics.get_metrics(1)
        memory = self.memory_guard.health_report()

        statuses = [store_health.status, circuit.status, memory.status]
        if "unhealthy" in statuses or "critical" in statuses:
            status = "unhealthy"
        elif "degraded" in statuses or "warning" in statuses or queue.backlog > 0:
            status = "degraded"
        else:
            status = "healthy"

        return SystemHealth(
            status=status,
            queue=queue,
            rate_limits={"store": store_health, "global": global_limits},
            circuit_breaker=circuit,
            metrics=metrics,
            memory=memory,
        )
