"""
Status, health and metrics report models.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


class RateLimitResult(BaseModel):
    """Decision for one rate-limit check."""
    allowed: bool
    retry_after_ms: int = 0
    remaining: int = 0
    reset_time: Optional[datetime] = None
    window: Optional[str] = None


class RateLimitWindowState(BaseModel):
    """Counter state of one sliding window."""
    key: str
    window: str
    count: int
    limit: int
    reset_time: Optional[datetime] = None


class RateLimiterHealth(BaseModel):
    status: HealthStatus
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerState(BaseModel):
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[datetime] = None
    next_attempt_time: Optional[datetime] = None


class CircuitStats(BaseModel):
    state: CircuitState
    failure_count: int
    success_count: int
    total_calls: int
    rejected_calls: int
    success_rate: float
    failure_rate: float
    last_failure_time: Optional[datetime] = None
    next_attempt_time: Optional[datetime] = None


class CircuitHealth(BaseModel):
    status: HealthStatus
    state: CircuitState
    message: str
    recommendation: str
    stats: CircuitStats


class QueueHealth(BaseModel):
    queue_size: int
    critical: int
    global_queue: int = 0
    users: Dict[str, int] = Field(default_factory=dict)
    oldest_item_age_seconds: float = 0.0
    backlog: int = 0
    dead_letter: int = 0


class DeliveryMetrics(BaseModel):
    period_hours: int
    total: int
    successful: int
    failed: int
    delivery_rate: float
    error_rate: float
    average_latency_ms: float
    throughput_per_hour: float
    batch_efficiency: float
    queue_depth: int
    memory_mb: float
    cpu_percent: float
    type_breakdown: Dict[str, int] = Field(default_factory=dict)


class PerformanceInsight(BaseModel):
    level: Literal["info", "warning", "critical"]
    metric: str
    value: float
    threshold: float
    message: str
    recommendation: str


class MemoryHealthReport(BaseModel):
    status: Literal["healthy", "warning", "critical"]
    current_mb: float
    warning_mb: float
    cleanup_mb: float
    max_mb: float
    efficiency: float
    recommendation: str
    registered_caches: List[str] = Field(default_factory=list)
    last_cleanup: Optional[datetime] = None


class CleanupReport(BaseModel):
    level: Literal["none", "light", "aggressive", "emergency"]
    before_mb: float
    after_mb: float
    freed_mb: float
    collected_objects: int = 0
    cache_entries_removed: int = 0


class SystemHealth(BaseModel):
    status: HealthStatus
    queue: QueueHealth
    rate_limits: Dict[str, Any]
    circuit_breaker: CircuitHealth
    metrics: DeliveryMetrics
    memory: MemoryHealthReport
