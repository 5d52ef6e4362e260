"""
User preference lookup and evaluation.

The delivery pipeline only reads preferences. Storage is pluggable: an
in-memory store for tests and single-process use, and a SQL store backed by
the ``notification_preferences`` table. Either can be wrapped in
``CachedPreferenceStore`` so hot users are not read from the database on
every send.
"""
from abc import ABC, abstractmethod
from datetime import datetime, time
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from herald.constants import PREFERENCE_CACHE_TTL_SECONDS
from herald.models.preference import NotificationPreferenceRecord
from herald.schemas.notification import NotificationPayload, Priority
from herald.schemas.preferences import NotificationPreferences
from herald.utils.cache import TTLCache
from herald.utils.timeutil import Clock, utcnow

# Notification type -> preference toggle
TYPE_TOGGLES: Dict[str, str] = {
    "TASK_DEADLINE": "task_deadlines",
    "HABIT_REMINDER": "habit_reminders",
    "WEEKLY_REPORT": "weekly_reports",
    "PROJECT_UPDATE": "project_updates",
    "TEAM_MENTION": "team_mentions",
    "SYSTEM_ALERT": "system_alerts",
}


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def is_within_window(start: str, end: str, now: time) -> bool:
    """
    Check if a time of day falls inside a HH:MM window.

    Handles windows that cross midnight (e.g., 22:00 to 06:00). The end is exclusive.
    """
    start_time = parse_hhmm(start)
    end_time = parse_hhmm(end)

    if start_time <= end_time:
        # Same day window (e.g., 09:00 to 17:00)
        return start_time <= now < end_time
    # Crosses midnight (e.g., 22:00 to 06:00)
    return now >= start_time or now < end_time


def localize(now: datetime, timezone_name: str) -> datetime:
    """Convert ``now`` into the user's timezone, falling back to UTC."""
    if timezone_name == "UTC":
        return now
    try:
        return now.astimezone(ZoneInfo(timezone_name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{timezone_name}', evaluating preferences in UTC")
        return now


def evaluate_preferences(
    payload: NotificationPayload,
    priority: Priority,
    prefs: NotificationPreferences,
    now: datetime,
) -> Optional[str]:
    """
    Decide whether preferences allow a notification.

    Args:
        payload: Notification about to be sent
        priority: Its priority
        prefs: The recipient's preferences
        now: Current time (aware)

    Returns:
        None when allowed, otherwise the reason it is blocked
    """
    if not prefs.push_enabled:
        return "Push notifications disabled"

    if priority.rank < prefs.minimum_priority.rank:
        return f"Priority {priority.value} below user minimum {prefs.minimum_priority.value}"

    local_now = localize(now, prefs.timezone)
    local_time = local_now.time().replace(second=0, microsecond=0)

    if prefs.dnd_enabled and priority != Priority.CRITICAL:
        # Windows number days from Sunday = 0, weekday() from Monday = 0
        today = (local_now.weekday() + 1) % 7
        for window in prefs.dnd_schedule:
            if window.day_of_week == today and is_within_window(window.start_time, window.end_time, local_time):
                return f"Do not disturb until {window.end_time}"

    if prefs.quiet_hours_enabled and priority != Priority.CRITICAL:
        if is_within_window(prefs.quiet_hours_start, prefs.quiet_hours_end, local_time):
            return f"Quiet hours until {prefs.quiet_hours_end}"

    toggle = TYPE_TOGGLES.get(payload.type or "")
    if toggle and not getattr(prefs, toggle):
        return f"{payload.type} notifications disabled"

    return None


class PreferenceStore(ABC):
    """Source of per-user preferences. Unknown users get the defaults."""

    @abstractmethod
    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        ...

    @abstractmethod
    async def update_preferences(self, user_id: str, prefs: NotificationPreferences) -> NotificationPreferences:
        ...


class InMemoryPreferenceStore(PreferenceStore):
    def __init__(self, initial: Optional[Dict[str, NotificationPreferences]] = None):
        self._prefs: Dict[str, NotificationPreferences] = dict(initial or {})

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        return self._prefs.get(user_id) or NotificationPreferences()

    async def update_preferences(self, user_id: str, prefs: NotificationPreferences) -> NotificationPreferences:
        self._prefs[user_id] = prefs
        return prefs


class SqlPreferenceStore(PreferenceStore):
    """Preferences persisted in the notification_preferences table."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        async with self.session_factory() as db:
            result = await db.execute(
                select(NotificationPreferenceRecord).where(NotificationPreferenceRecord.user_id == user_id)
            )
            record = result.scalar_one_or_none()

        if record is None:
            return NotificationPreferences()
        return NotificationPreferences.model_validate(record.data)

    async def update_preferences(self, user_id: str, prefs: NotificationPreferences) -> NotificationPreferences:
        async with self.session_factory() as db:
            record = await db.get(NotificationPreferenceRecord, user_id)
            if record is None:
                record = NotificationPreferenceRecord(user_id=user_id)
                db.add(record)
            record.data = prefs.model_dump(mode="json")
            await db.commit()

        logger.info(f"Updated notification preferences for user {user_id}")
        return prefs


class CachedPreferenceStore(PreferenceStore):
    """Read-through TTL cache in front of another store."""

    def __init__(self, inner: PreferenceStore, ttl_seconds: float = PREFERENCE_CACHE_TTL_SECONDS, clock: Clock = utcnow):
        self.inner = inner
        self.cache = TTLCache(ttl_seconds, clock=clock)

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached
        prefs = await self.inner.get_preferences(user_id)
        self.cache.set(user_id, prefs)
        return prefs

    async def update_preferences(self, user_id: str, prefs: NotificationPreferences) -> NotificationPreferences:
        saved = await self.inner.update_preferences(user_id, prefs)
        self.cache.set(user_id, saved)
        return saved
