"""
Pydantic models shared by the services and the API.
"""
from herald.schemas.notification import (
    DeliveryResult,
    DeliveryStatus,
    MetricSample,
    NotificationAction,
    NotificationBatch,
    NotificationData,
    NotificationPayload,
    Priority,
    QueueItem,
    SendOptions,
    SendRequest,
)
from herald.schemas.preferences import DigestMode, DndWindow, NotificationPreferences
from herald.schemas.health import (
    CircuitBreakerState,
    CircuitHealth,
    CircuitState,
    CircuitStats,
    CleanupReport,
    DeliveryMetrics,
    MemoryHealthReport,
    PerformanceInsight,
    QueueHealth,
    RateLimiterHealth,
    RateLimitResult,
    RateLimitWindowState,
    SystemHealth,
)

__all__ = [
    "DeliveryResult",
    "DeliveryStatus",
    "MetricSample",
    "NotificationAction",
    "NotificationBatch",
    "NotificationData",
    "NotificationPayload",
    "Priority",
    "QueueItem",
    "SendOptions",
    "SendRequest",
    "DigestMode",
    "DndWindow",
    "NotificationPreferences",
    "CircuitBreakerState",
    "CircuitHealth",
    "CircuitState",
    "CircuitStats",
    "CleanupReport",
    "DeliveryMetrics",
    "MemoryHealthReport",
    "PerformanceInsight",
    "QueueHealth",
    "RateLimiterHealth",
    "RateLimitResult",
    "RateLimitWindowState",
    "SystemHealth",
]
