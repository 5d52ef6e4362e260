"""
Per-user notification preference models.
"""
import re
from enum import Enum
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import BaseModel, Field, field_validator

from herald.schemas.notification import Priority

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _validate_hhmm(value: str) -> str:
    if not _TIME_PATTERN.match(value):
        raise ValueError(f"Time must be in 24-hour HH:MM format, got {value!r}")
    return value


class DigestMode(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


class DndWindow(BaseModel):
    """Weekly recurring do-not-disturb window. May cross midnight (22:00 to 07:00)."""
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    start_time: str = Field(..., description="Start time in 24-hour format (HH:MM)")
    end_time: str = Field(..., description="End time in 24-hour format (HH:MM)")

    @field_validator("start_time", "end_time")
    @classmethod
    def check_times(cls, value: str) -> str:
        return _validate_hhmm(value)


class NotificationPreferences(BaseModel):
    """Per-user configuration. Read-only to the delivery pipeline."""

    # Channels
    push_enabled: bool = True
    email_enabled: bool = True
    in_app_enabled: bool = True

    # Per-type toggles
    task_deadlines: bool = True
    habit_reminders: bool = True
    weekly_reports: bool = True
    project_updates: bool = True
    team_mentions: bool = True
    system_alerts: bool = True

    # Legacy quiet hours
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"

    # Batching
    batching_enabled: bool = True
    max_batch_size: int = Field(5, ge=1, le=50)
    batch_window_minutes: int = Field(30, ge=1, le=1440)
    max_notifications_per_hour: int = Field(10, ge=1)
    digest_mode: DigestMode = DigestMode.IMMEDIATE
    minimum_priority: Priority = Priority.LOW

    # Do not disturb
    dnd_enabled: bool = False
    dnd_schedule: List[DndWindow] = Field(default_factory=list)
    timezone: str = "UTC"

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def check_quiet_hours(cls, value: str) -> str:
        return _validate_hhmm(value)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        if value == "UTC":
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value
