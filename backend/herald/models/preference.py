"""
Notification preference storage model.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, JSON, DateTime
from herald.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationPreferenceRecord(Base):
    """One row per user; the preference document is stored as JSON."""

    __tablename__ = "notification_preferences"

    user_id = Column(String(255), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
