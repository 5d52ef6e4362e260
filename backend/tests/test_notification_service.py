"""End-to-end tests of the delivery orchestrator against the in-process store."""
import asyncio
from datetime import datetime, timedelta

import pytest

from herald.config import DeliveryConfig, QueueConfig, RateLimitConfig, RetryConfig
from herald.constants import BATCH_TRIGGER_CHANNEL
from herald.schemas.health import CircuitState
from herald.schemas.notification import DeliveryStatus, Priority, SendOptions
from herald.schemas.preferences import DigestMode, NotificationPreferences
from herald.services.notification_service import NotificationService
from herald.utils.errors import ErrorCode

from conftest import make_payload

DIGEST_PREFS = NotificationPreferences(digest_mode=DigestMode.HOURLY)


def build_service(config, store, transport, preference_store, clock) -> NotificationService:
    return NotificationService(
        config,
        store,
        transport,
        preference_store=preference_store,
        clock=clock,
        memory_probe=lambda: 100.0,
        resource_probe=lambda: (100.0, 1.5),
        rng=lambda: 0.0,
    )


async def test_burst_beyond_minute_limit_is_queued(service, transport):
    results = [await service.send("u1", make_payload(f"n{i}")) for i in range(12)]

    delivered = [r for r in results if r.status == DeliveryStatus.DELIVERED]
    queued = [r for r in results if r.status == DeliveryStatus.QUEUED]
    assert len(delivered) == 10
    assert len(queued) == 2
    assert all(r.success and r.queued and r.retry_after_ms > 0 for r in queued)
    assert len(transport.sent) == 10

    metrics = await service.metrics.get_metrics(24)
    assert metrics.total == 12
    assert metrics.failed == 2


async def test_rate_limited_items_are_delivered_later(service, transport, clock):
    results = [await service.send("u1", make_payload(f"n{i}")) for i in range(12)]
    assert results[-1].retry_after_ms == 240_000

    clock.advance(241)
    assert await service.process_scheduled_batches() == 1
    # Both deferred notifications went out as one merged delivery
    assert len(transport.sent) == 11
    assert transport.sent[-1][1].title == "2 Notifications"


async def test_circuit_breaker_recovery(service, transport, clock):
    transport.fail = True
    for i in range(5):
        result = await service.send("u1", make_payload(f"fail {i}"))
        assert result.status == DeliveryStatus.QUEUED
    assert service.circuit_breaker.state == CircuitState.OPEN

    result = await service.send("u1", make_payload("while open"))
    assert result.status == DeliveryStatus.QUEUED
    assert result.retry_at == service.circuit_breaker.next_attempt_time
    assert transport.calls == 5

    transport.fail = False
    clock.advance(60)
    result = await service.send("u1", make_payload("probe"))
    assert result.status == DeliveryStatus.DELIVERED
    assert service.circuit_breaker.state == CircuitState.CLOSED


async def test_batchable_notifications_merge(service, transport, preference_store, clock):
    await preference_store.update_preferences("u1", DIGEST_PREFS)
    for name in ("Write report", "Call bank", "Pay rent"):
        result = await service.send("u1", make_payload(f"Task Deadline Reminder: {name}", "TASK_DEADLINE"))
        assert result.status == DeliveryStatus.QUEUED
        clock.advance(1)
    assert transport.sent == []

    assert await service.process_batch_for_user("u1") == 1
    assert len(transport.sent) == 1
    user_id, payload = transport.sent[0]
    assert user_id == "u1"
    assert "3" in payload.title
    assert payload.data.type == "TASK_DEADLINE_BATCH"


async def test_high_priority_is_never_batched(service, transport, preference_store):
    await preference_store.update_preferences("u1", DIGEST_PREFS)
    result = await service.send("u1", make_payload("urgent", "TASK_DEADLINE"), Priority.HIGH)
    assert result.status == DeliveryStatus.DELIVERED
    assert len(transport.sent) == 1


async def test_critical_bypasses_gating_but_counts(service, transport):
    for i in range(10):
        await service.send("u1", make_payload(f"n{i}"))

    result = await service.send("u1", make_payload("server on fire"), Priority.CRITICAL)
    assert result.status == DeliveryStatus.DELIVERED

    _, payload = transport.sent[-1]
    assert payload.require_interaction
    assert payload.tag.startswith("critical-")
    status = await service.rate_limiter.get_user_status("u1")
    assert status["minute"].count == 11


async def test_critical_tags_are_unique(service, transport):
    await service.send("u1", make_payload("a"), Priority.CRITICAL)
    await service.send("u1", make_payload("b"), Priority.CRITICAL)
    assert transport.sent[0][1].tag != transport.sent[1][1].tag


async def test_critical_is_requeued_while_circuit_open(service, transport, clock):
    transport.fail = True
    for i in range(5):
        await service.send("u1", make_payload(f"fail {i}"))
    transport.fail = False

    result = await service.send("u1", make_payload("alert"), Priority.CRITICAL)
    assert result.status == DeliveryStatus.QUEUED
    assert (await service.queue.get_health()).critical == 1

    clock.advance(60)
    await service.process_scheduled_batches()
    delivered = [payload for _, payload in transport.sent]
    assert [p.title for p in delivered if p.require_interaction] == ["alert"]


async def test_preferences_block(service, transport, preference_store):
    await preference_store.update_preferences("u1", NotificationPreferences(push_enabled=False))
    result = await service.send("u1", make_payload())
    assert result.status == DeliveryStatus.BLOCKED
    assert not result.success
    assert transport.sent == []
    assert (await service.metrics.get_metrics(1)).failed == 1


async def test_preference_store_failure_uses_defaults(service, transport, preference_store):
    async def broken(user_id):
        raise ConnectionError("database gone")

    preference_store.get_preferences = broken
    result = await service.send("u1", make_payload())
    assert result.status == DeliveryStatus.DELIVERED


@pytest.mark.parametrize(
    ("user_id", "payload", "options"),
    [
        ("", {"title": "t", "body": "b"}, None),
        ("u1", {"title": "", "body": "b"}, None),
        ("u1", {"title": "t", "body": "b"}, {"schedule_for": datetime(2026, 1, 1, 12, 0)}),
    ],
)
async def test_validation_errors_are_rejected(service, user_id, payload, options):
    result = await service.send(user_id, payload, options=options)
    assert result.status == DeliveryStatus.REJECTED
    assert result.error_code == ErrorCode.VALIDATION_ERROR


async def test_payload_dicts_are_accepted(service, transport):
    result = await service.send("u1", {"title": "From dict", "body": "b", "data": {"type": "SYSTEM_ALERT"}}, "HIGH")
    assert result.status == DeliveryStatus.DELIVERED
    assert transport.sent[0][1].type == "SYSTEM_ALERT"


async def test_queue_full_is_surfaced(store, transport, preference_store, clock):
    config = DeliveryConfig(queue=QueueConfig(max_queue_size=1))
    service = build_service(config, store, transport, preference_store, clock)
    await preference_store.update_preferences("u1", DIGEST_PREFS)

    assert (await service.send("u1", make_payload("a", "HABIT_REMINDER"))).status == DeliveryStatus.QUEUED
    result = await service.send("u1", make_payload("b", "HABIT_REMINDER"))
    assert result.status == DeliveryStatus.REJECTED
    assert result.error_code == ErrorCode.QUEUE_FULL


async def test_bypass_skips_user_limit(service, transport):
    for i in range(10):
        await service.send("u1", make_payload(f"n{i}"))

    result = await service.send("u1", make_payload("bypass"), options=SendOptions(bypass_rate_limit=True))
    assert result.status == DeliveryStatus.DELIVERED
    assert (await service.rate_limiter.get_user_status("u1"))["minute"].count == 11


async def test_bypass_still_honours_global_limit(store, transport, preference_store, clock):
    config = DeliveryConfig(rate_limit=RateLimitConfig(per_minute=2, burst=20, global_multiplier=1))
    service = build_service(config, store, transport, preference_store, clock)
    await service.send("u1", make_payload("a"))
    await service.send("u2", make_payload("b"))

    result = await service.send("u3", make_payload("c"), options=SendOptions(bypass_rate_limit=True))
    assert result.status == DeliveryStatus.REJECTED
    assert result.error_code == ErrorCode.RATE_LIMITED


async def test_exhausted_retries_are_dead_lettered(store, transport, preference_store, clock):
    config = DeliveryConfig(retry=RetryConfig(max_delivery_attempts=2, base_retry_delay_seconds=5))
    service = build_service(config, store, transport, preference_store, clock)
    transport.fail = True

    result = await service.send("u1", make_payload("doomed"))
    assert result.status == DeliveryStatus.QUEUED
    assert result.retry_after_ms == 5000

    clock.advance(5)
    await service.process_scheduled_batches()
    health = await service.queue.get_health()
    assert health.dead_letter == 1
    assert health.queue_size == 0


def test_retry_delay_is_exponential_and_capped(service):
    assert service.retry_delay_seconds(1) == 5
    assert service.retry_delay_seconds(3) == 20
    assert service.retry_delay_seconds(20) == 300


async def test_scheduled_send_waits_until_due(service, transport, clock):
    options = SendOptions(schedule_for=clock() + timedelta(minutes=10))
    result = await service.send("u1", make_payload("later"), options=options)
    assert result.status == DeliveryStatus.QUEUED

    await service.process_scheduled_batches()
    assert transport.sent == []

    clock.advance(minutes=10)
    await service.process_scheduled_batches()
    assert [p.title for _, p in transport.sent] == ["later"]


async def test_future_critical_waits_until_due(service, transport, clock):
    options = SendOptions(schedule_for=clock() + timedelta(hours=2))
    result = await service.send("u1", make_payload("maintenance window"), Priority.CRITICAL, options=options)
    assert result.status == DeliveryStatus.QUEUED
    assert transport.sent == []
    assert (await service.queue.get_health()).critical == 1

    clock.advance(hours=2)
    await service.process_scheduled_batches()
    _, payload = transport.sent[0]
    assert payload.title == "maintenance window"
    assert payload.require_interaction
    assert payload.tag.startswith("critical-")


async def test_duplicate_sends_collapse(service, preference_store):
    await preference_store.update_preferences("u1", DIGEST_PREFS)
    options = SendOptions(dedup_key="habit-7-today")
    first = await service.send("u1", make_payload("a", "HABIT_REMINDER"), options=options)
    second = await service.send("u1", make_payload("a", "HABIT_REMINDER"), options=options)
    assert first.batch_id == second.batch_id
    assert (await service.queue.get_health()).queue_size == 1


async def test_per_user_batch_does_not_run_twice(service, transport, preference_store, clock):
    await preference_store.update_preferences("u1", DIGEST_PREFS)
    await service.send("u1", make_payload("a", "HABIT_REMINDER"))
    transport.delay = 0.05

    first, second = await asyncio.gather(
        service.process_batch_for_user("u1"),
        service.process_batch_for_user("u1"),
    )
    assert sorted([first, second]) == [0, 1]
    assert len(transport.sent) == 1


async def test_system_health(service):
    await service.send("u1", make_payload())
    health = await service.get_system_health()
    assert health.status == "healthy"
    assert health.circuit_breaker.state == CircuitState.CLOSED
    assert health.rate_limits["store"].status == "healthy"
    assert health.rate_limits["global"]["minute"].count == 1
    assert health.metrics.total == 1
    assert health.memory.status == "healthy"


async def test_trigger_drives_user_batch(service, transport, preference_store, store):
    await preference_store.update_preferences("u1", DIGEST_PREFS)
    await service.send("u1", make_payload("queued", "HABIT_REMINDER"))
    await service.start()
    try:
        for _ in range(100):
            if await store.publish(BATCH_TRIGGER_CHANNEL, "u1"):
                break
            await asyncio.sleep(0.01)
        for _ in range(100):
            if transport.sent:
                break
            await asyncio.sleep(0.01)
    finally:
        await service.stop()

    assert [p.title for _, p in transport.sent] == ["queued"]
    assert service.supervisor.task_names == []


async def test_maintenance_heals_idle_breaker(service, transport, clock):
    transport.fail = True
    await service.send("u1", make_payload())
    assert service.circuit_breaker.failure_count == 1

    clock.advance(600)
    await service.run_maintenance()
    assert service.circuit_breaker.failure_count == 0


async def test_maintenance_forgets_idle_backoff_streaks(service, clock):
    for i in range(11):
        await service.send("u1", make_payload(f"n{i}"))
    assert service.rate_limiter._block_streak

    clock.advance(300)
    await service.run_maintenance()
    assert service.rate_limiter._block_streak == {}
