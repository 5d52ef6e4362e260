"""
Service layer for Herald notification delivery.
"""
from herald.services.circuit_breaker import CircuitBreaker
from herald.services.memory_guard import MemoryGuard
from herald.services.metrics_collector import MetricsCollector
from herald.services.notification_queue import NotificationQueue
from herald.services.notification_service import NotificationService
from herald.services.preferences import (
    CachedPreferenceStore,
    InMemoryPreferenceStore,
    PreferenceStore,
    SqlPreferenceStore,
)
from herald.services.rate_limiter import RateLimiter
from herald.services.task_supervisor import TaskSupervisor

__all__ = [
    "CircuitBreaker",
    "MemoryGuard",
    "MetricsCollector",
    "NotificationQueue",
    "NotificationService",
    "PreferenceStore",
    "InMemoryPreferenceStore",
    "SqlPreferenceStore",
    "CachedPreferenceStore",
    "RateLimiter",
    "TaskSupervisor",
]
