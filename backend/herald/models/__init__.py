"""
Database models for Herald.
"""
from herald.models.preference import NotificationPreferenceRecord

__all__ = [
    "NotificationPreferenceRecord",
]
