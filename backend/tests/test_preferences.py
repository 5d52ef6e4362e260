"""Tests for preference evaluation and storage."""
from datetime import datetime, time, timezone

import pytest
from pydantic import ValidationError

from herald.schemas.notification import Priority
from herald.schemas.preferences import DndWindow, NotificationPreferences
from herald.services.preferences import (
    CachedPreferenceStore,
    InMemoryPreferenceStore,
    evaluate_preferences,
    is_within_window,
)

from conftest import make_payload

# Monday 2026-01-05
MONDAY_NOON = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
MONDAY_LATE = datetime(2026, 1, 5, 23, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("start", "end", "now", "expected"),
    [
        ("09:00", "17:00", time(12, 0), True),
        ("09:00", "17:00", time(16, 59), True),
        ("09:00", "17:00", time(17, 0), False),
        ("09:00", "17:00", time(18, 0), False),
        ("22:00", "06:00", time(23, 30), True),
        ("22:00", "06:00", time(5, 59), True),
        ("22:00", "06:00", time(6, 0), False),
        ("22:00", "06:00", time(12, 0), False),
    ],
)
def test_is_within_window(start, end, now, expected):
    assert is_within_window(start, end, now) is expected


def test_defaults_allow_everything():
    assert evaluate_preferences(make_payload(), Priority.LOW, NotificationPreferences(), MONDAY_NOON) is None


def test_push_disabled_blocks():
    prefs = NotificationPreferences(push_enabled=False)
    assert evaluate_preferences(make_payload(), Priority.CRITICAL, prefs, MONDAY_NOON) == "Push notifications disabled"


def test_priority_floor():
    prefs = NotificationPreferences(minimum_priority=Priority.HIGH)
    assert evaluate_preferences(make_payload(), Priority.NORMAL, prefs, MONDAY_NOON) is not None
    assert evaluate_preferences(make_payload(), Priority.HIGH, prefs, MONDAY_NOON) is None


def test_type_toggle():
    prefs = NotificationPreferences(habit_reminders=False)
    blocked = evaluate_preferences(make_payload(notification_type="HABIT_REMINDER"), Priority.NORMAL, prefs, MONDAY_NOON)
    assert blocked == "HABIT_REMINDER notifications disabled"
    assert evaluate_preferences(make_payload(notification_type="TASK_DEADLINE"), Priority.NORMAL, prefs, MONDAY_NOON) is None


def test_dnd_window_blocks_all_but_critical():
    # Monday is day 1 when Sunday is 0
    prefs = NotificationPreferences(
        dnd_enabled=True,
        dnd_schedule=[DndWindow(day_of_week=1, start_time="22:00", end_time="23:59")],
    )
    assert evaluate_preferences(make_payload(), Priority.HIGH, prefs, MONDAY_LATE) == "Do not disturb until 23:59"
    assert evaluate_preferences(make_payload(), Priority.CRITICAL, prefs, MONDAY_LATE) is None
    assert evaluate_preferences(make_payload(), Priority.HIGH, prefs, MONDAY_NOON) is None


def test_dnd_uses_user_timezone():
    # 12:00 UTC is 21:00 in Tokyo
    prefs = NotificationPreferences(
        dnd_enabled=True,
        timezone="Asia/Tokyo",
        dnd_schedule=[DndWindow(day_of_week=1, start_time="20:00", end_time="22:00")],
    )
    assert evaluate_preferences(make_payload(), Priority.NORMAL, prefs, MONDAY_NOON) is not None


def test_quiet_hours_cross_midnight():
    prefs = NotificationPreferences(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")
    assert evaluate_preferences(make_payload(), Priority.NORMAL, prefs, MONDAY_LATE) == "Quiet hours until 08:00"
    assert evaluate_preferences(make_payload(), Priority.CRITICAL, prefs, MONDAY_LATE) is None
    assert evaluate_preferences(make_payload(), Priority.NORMAL, prefs, MONDAY_NOON) is None


def test_quiet_hours_end_minute_is_free():
    prefs = NotificationPreferences(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")
    tuesday_eight = datetime(2026, 1, 6, 8, 0, 30, tzinfo=timezone.utc)
    assert evaluate_preferences(make_payload(), Priority.NORMAL, prefs, tuesday_eight) is None


def test_invalid_times_and_timezone_rejected():
    with pytest.raises(ValidationError):
        DndWindow(day_of_week=1, start_time="25:00", end_time="08:00")
    with pytest.raises(ValidationError):
        NotificationPreferences(timezone="Mars/Olympus_Mons")


async def test_in_memory_store_defaults_and_updates():
    store = InMemoryPreferenceStore()
    assert await store.get_preferences("u1") == NotificationPreferences()

    updated = NotificationPreferences(batching_enabled=False)
    await store.update_preferences("u1", updated)
    assert (await store.get_preferences("u1")).batching_enabled is False


class CountingStore(InMemoryPreferenceStore):
    def __init__(self):
        super().__init__()
        self.reads = 0

    async def get_preferences(self, user_id):
        self.reads += 1
        return await super().get_preferences(user_id)


async def test_cached_store_reads_through_once(clock):
    inner = CountingStore()
    cached = CachedPreferenceStore(inner, ttl_seconds=60, clock=clock)

    await cached.get_preferences("u1")
    await cached.get_preferences("u1")
    assert inner.reads == 1

    clock.advance(61)
    await cached.get_preferences("u1")
    assert inner.reads == 2


async def test_cached_store_update_refreshes_cache(clock):
    cached = CachedPreferenceStore(InMemoryPreferenceStore(), clock=clock)
    await cached.get_preferences("u1")
    await cached.update_preferences("u1", NotificationPreferences(push_enabled=False))
    assert (await cached.get_preferences("u1")).push_enabled is False
