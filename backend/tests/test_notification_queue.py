"""Tests for the priority notification queue."""
import asyncio
from datetime import timedelta

import pytest

from herald.config import QueueConfig
from herald.constants import (
    ACTIVE_USERS_KEY,
    BATCH_TRIGGER_CHANNEL,
    CRITICAL_QUEUE_KEY,
    GLOBAL_QUEUE_KEY,
    USER_QUEUE_OVERFLOW_THRESHOLD,
)
from herald.schemas.notification import Priority, QueueItem
from herald.services.notification_queue import (
    NotificationQueue,
    build_batch_payload,
    priority_score,
    user_queue_key,
)
from herald.stores.memory import InMemoryStore
from herald.utils.errors import QueueFullError

from conftest import make_payload


def make_queue(store, clock, memory_mb=100.0, **config) -> NotificationQueue:
    return NotificationQueue(store, QueueConfig(**config), clock=clock, memory_probe=lambda: memory_mb)


def make_item(clock, user_id="u1", priority=Priority.NORMAL, notification_type=None, title="Item", **kwargs) -> QueueItem:
    return QueueItem(
        user_id=user_id,
        payload=make_payload(title, notification_type),
        priority=priority,
        scheduled_for=kwargs.pop("scheduled_for", clock()),
        created_at=clock(),
        **kwargs,
    )


def test_priority_tiers_never_interleave(clock):
    now = clock()
    earliest_low = priority_score(Priority.LOW, now - timedelta(days=3650))
    latest_normal = priority_score(Priority.NORMAL, now + timedelta(days=3650))
    assert latest_normal > earliest_low
    assert priority_score(Priority.CRITICAL, now) > priority_score(Priority.HIGH, now - timedelta(days=365))


def test_earlier_schedule_scores_higher_within_tier(clock):
    now = clock()
    assert priority_score(Priority.NORMAL, now) > priority_score(Priority.NORMAL, now + timedelta(seconds=1))


async def test_enqueue_routes_by_priority(store, clock):
    queue = make_queue(store, clock)
    await queue.enqueue(make_item(clock, priority=Priority.CRITICAL))
    await queue.enqueue(make_item(clock, priority=Priority.LOW))

    assert await store.zcard(CRITICAL_QUEUE_KEY) == 1
    assert await store.zcard(user_queue_key("u1")) == 1
    assert await store.smembers(ACTIVE_USERS_KEY) == {"u1"}


async def test_user_queue_overflows_to_global(store, clock):
    queue = make_queue(store, clock, batch_size=1000, max_batch_wait_seconds=10000)
    for i in range(USER_QUEUE_OVERFLOW_THRESHOLD + 1):
        await queue.enqueue(make_item(clock, title=f"n{i}"))
    assert await store.zcard(GLOBAL_QUEUE_KEY) == 0

    await queue.enqueue(make_item(clock, title="overflow"))
    assert await store.zcard(GLOBAL_QUEUE_KEY) == 1


async def test_queue_full_raises(store, clock):
    queue = make_queue(store, clock, max_queue_size=2)
    await queue.enqueue(make_item(clock))
    await queue.enqueue(make_item(clock))
    with pytest.raises(QueueFullError):
        await queue.enqueue(make_item(clock))


async def test_dedup_returns_existing_id_within_window(store, clock):
    queue = make_queue(store, clock)
    first_id = await queue.enqueue(make_item(clock, dedup_key="task-42"))

    clock.advance(200)
    second_id = await queue.enqueue(make_item(clock, dedup_key="task-42"))
    assert second_id == first_id
    assert await store.zcard(user_queue_key("u1")) == 1

    # The duplicate refreshed the 300s window
    clock.advance(200)
    assert await queue.enqueue(make_item(clock, dedup_key="task-42")) == first_id


async def test_dedup_expires_after_window(store, clock):
    queue = make_queue(store, clock)
    first_id = await queue.enqueue(make_item(clock, dedup_key="task-42"))
    clock.advance(301)
    second_id = await queue.enqueue(make_item(clock, dedup_key="task-42"))
    assert second_id != first_id
    assert await store.zcard(user_queue_key("u1")) == 2


class YieldingStore(InMemoryStore):
    """Gives other tasks a turn on every read, as a networked store would."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def zcard(self, key):
        await asyncio.sleep(0)
        return await super().zcard(key)


async def test_concurrent_duplicates_collapse_into_one_item(clock):
    store = YieldingStore(clock=clock)
    queue = make_queue(store, clock)

    first_id, second_id = await asyncio.gather(
        queue.enqueue(make_item(clock, dedup_key="k")),
        queue.enqueue(make_item(clock, dedup_key="k")),
    )
    assert first_id == second_id
    assert await store.zcard(user_queue_key("u1")) == 1


async def test_rejected_item_releases_its_dedup_key(store, clock):
    queue = make_queue(store, clock, max_queue_size=1)
    await queue.enqueue(make_item(clock))
    with pytest.raises(QueueFullError):
        await queue.enqueue(make_item(clock, dedup_key="k"))
    assert await store.get("dedup:k") is None


async def test_dequeue_orders_by_priority_then_schedule(store, clock):
    queue = make_queue(store, clock)
    low = make_item(clock, priority=Priority.LOW, title="low", batchable=False)
    clock.advance(1)
    normal_late = make_item(clock, title="normal-late", batchable=False)
    normal_early = make_item(clock, title="normal-early", batchable=False, scheduled_for=clock() - timedelta(seconds=5))
    high = make_item(clock, priority=Priority.HIGH, title="high", batchable=False)
    for item in (low, normal_late, normal_early, high):
        await queue.enqueue(item)

    batch = await queue.dequeue_batch("u1")
    assert [item.payload.title for item in batch.items] == ["high", "normal-early", "normal-late", "low"]


async def test_future_items_are_not_dequeued(store, clock):
    queue = make_queue(store, clock)
    await queue.enqueue(make_item(clock, scheduled_for=clock() + timedelta(minutes=5)))

    assert await queue.dequeue_batch("u1") is None
    clock.advance(minutes=5)
    batch = await queue.dequeue_batch("u1")
    assert batch is not None and batch.size == 1


async def test_dequeue_removes_items_and_forgets_empty_users(store, clock):
    queue = make_queue(store, clock)
    await queue.enqueue(make_item(clock, batchable=False))

    batch = await queue.dequeue_batch()
    assert batch.size == 1
    assert await store.zcard(user_queue_key("u1")) == 0
    assert await store.smembers(ACTIVE_USERS_KEY) == set()
    assert await queue.dequeue_batch() is None


async def test_batchable_items_of_same_type_merge(store, clock):
    queue = make_queue(store, clock)
    for title in ("Write report", "Call bank", "Pay rent"):
        await queue.enqueue(make_item(clock, notification_type="TASK_DEADLINE", title=f"Task Deadline Reminder: {title}"))
        clock.advance(10)

    batch = await queue.dequeue_batch("u1")
    assert batch.size == 1
    merged = batch.items[0]
    assert "3" in merged.payload.title
    assert merged.payload.title == "3 Task Deadlines Approaching"
    assert merged.payload.body == '"Write report", "Call bank" and 1 other are due soon'
    assert merged.payload.type == "TASK_DEADLINE_BATCH"
    assert len(merged.merged_ids) == 3
    assert merged.size == 3
    assert not merged.batchable


async def test_critical_items_are_never_merged(store, clock):
    queue = make_queue(store, clock)
    for i in range(3):
        await queue.enqueue(make_item(clock, priority=Priority.CRITICAL, notification_type="SYSTEM_ALERT", title=f"alert {i}"))
        clock.advance(1)

    batch = await queue.dequeue_batch()
    assert batch.size == 3
    assert all(not item.merged_ids for item in batch.items)


async def test_items_spread_too_far_apart_stay_separate(store, clock):
    queue = make_queue(store, clock)
    await queue.enqueue(make_item(clock, notification_type="HABIT_REMINDER", scheduled_for=clock() - timedelta(minutes=10)))
    await queue.enqueue(make_item(clock, notification_type="HABIT_REMINDER"))

    batch = await queue.dequeue_batch("u1")
    assert batch.size == 2


async def test_non_batchable_item_prevents_merge(store, clock):
    queue = make_queue(store, clock)
    await queue.enqueue(make_item(clock, notification_type="HABIT_REMINDER"))
    await queue.enqueue(make_item(clock, notification_type="HABIT_REMINDER", batchable=False))

    batch = await queue.dequeue_batch("u1")
    assert batch.size == 2


async def test_adaptive_batch_size(store, clock):
    queue = make_queue(store, clock, batch_size=10)
    assert queue.adaptive_batch_size(0) == 10
    assert queue.adaptive_batch_size(600) == 20
    assert queue.adaptive_batch_size(1500) == 30

    pressured = make_queue(store, clock, memory_mb=500.0, batch_size=10)
    assert pressured.adaptive_batch_size(0) == 5
    assert pressured.adaptive_batch_size(1500) == 15


async def test_dequeue_respects_adaptive_size(store, clock):
    queue = make_queue(store, clock, batch_size=4, max_batch_wait_seconds=10000)
    for i in range(10):
        await queue.enqueue(make_item(clock, title=f"n{i}", batchable=False))
        clock.advance(1)

    batch = await queue.dequeue_batch("u1")
    assert batch.size == 4
    assert await store.zcard(user_queue_key("u1")) == 6


def test_trigger_thresholds_follow_load(store, clock):
    queue = make_queue(store, clock, batch_size=10, max_batch_wait_seconds=30)
    assert queue.trigger_thresholds(0.9) == (5, 15)
    assert queue.trigger_thresholds(0.5) == (10, 30)
    assert queue.trigger_thresholds(0.1) == (20, 45)


async def test_enqueue_publishes_trigger_when_threshold_reached(store, clock):
    queue = make_queue(store, clock, batch_size=2, max_batch_wait_seconds=10000)
    subscription = await store.subscribe(BATCH_TRIGGER_CHANNEL)
    messages = subscription.listen()

    for i in range(4):
        await queue.enqueue(make_item(clock, title=f"n{i}"))

    # Low load doubles the count trigger to 4
    assert await messages.__anext__() == "u1"
    await subscription.close()


async def test_requeue_keeps_id_and_reschedules(store, clock):
    queue = make_queue(store, clock)
    item = make_item(clock, dedup_key="once")
    await queue.enqueue(item)
    batch = await queue.dequeue_batch("u1")

    retry_at = clock() + timedelta(seconds=30)
    assert await queue.requeue(batch.items[0], retry_at) == item.id
    assert await queue.dequeue_batch("u1") is None

    clock.advance(30)
    batch = await queue.dequeue_batch("u1")
    assert batch.items[0].id == item.id


async def test_dead_letter_and_health(store, clock):
    queue = make_queue(store, clock)
    await queue.enqueue(make_item(clock, user_id="u1"))
    await queue.enqueue(make_item(clock, user_id="u2", priority=Priority.CRITICAL))
    await queue.dead_letter(make_item(clock, user_id="u3"), "gave up")
    clock.advance(20)

    health = await queue.get_health()
    assert health.queue_size == 2
    assert health.critical == 1
    assert health.users == {"u1": 1}
    assert health.dead_letter == 1
    assert health.oldest_item_age_seconds == 20.0
    assert health.backlog == 0


async def test_unreadable_entries_are_discarded(store, clock):
    queue = make_queue(store, clock)
    await store.zadd(user_queue_key("u1"), {"not json": priority_score(Priority.NORMAL, clock())})
    await store.sadd(ACTIVE_USERS_KEY, "u1")

    assert await queue.dequeue_batch("u1") is None
    assert await store.zcard(user_queue_key("u1")) == 0


def test_batch_payload_wording(clock):
    habits = [make_item(clock, notification_type="HABIT_REMINDER", title=f"Habit Reminder: {name}") for name in ("Read", "Run")]
    payload = build_batch_payload("HABIT_REMINDER", habits)
    assert payload.title == "2 Habit Reminders"
    assert payload.body == 'Time to complete "Read" and "Run"'
    assert [action.action for action in payload.actions] == ["check-in-all", "view-habits"]

    general = build_batch_payload("PROJECT_UPDATE", habits)
    assert general.title == "2 Notifications"
    assert general.data.type == "GENERAL_BATCH"
