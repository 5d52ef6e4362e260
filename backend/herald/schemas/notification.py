"""
Notification, queue and delivery result models.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from herald.utils.errors import ErrorCode
from herald.utils.timeutil import utcnow


class Priority(str, Enum):
    """Delivery priority tiers, strictly ordered CRITICAL > HIGH > NORMAL > LOW."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """4 for CRITICAL down to 1 for LOW."""
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.NORMAL: 2,
    Priority.LOW: 1,
}


class NotificationAction(BaseModel):
    """User-facing action button."""
    model_config = ConfigDict(frozen=True)

    action: str
    title: str
    icon: Optional[str] = None


class NotificationData(BaseModel):
    """Structured data carried with a notification; extra keys are kept."""
    model_config = ConfigDict(frozen=True, extra="allow")

    type: Optional[str] = None
    entity_id: Optional[str] = None
    action_url: Optional[str] = None


class NotificationPayload(BaseModel):
    """What the transport ultimately delivers. Immutable once constructed."""
    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1, max_length=100)
    body: str = Field(..., min_length=1, max_length=500)
    icon: Optional[str] = None
    image: Optional[str] = None
    badge: Optional[str] = None
    tag: Optional[str] = None
    require_interaction: bool = False
    silent: bool = False
    timestamp: Optional[datetime] = None
    data: NotificationData = Field(default_factory=NotificationData)
    actions: List[NotificationAction] = Field(default_factory=list)

    @property
    def type(self) -> Optional[str]:
        return self.data.type


class QueueItem(BaseModel):
    """A payload waiting in the queue, owned by the queue from enqueue to dequeue."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    payload: NotificationPayload
    priority: Priority = Priority.NORMAL
    scheduled_for: datetime = Field(default_factory=utcnow)
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    batchable: bool = True
    dedup_key: Optional[str] = None
    # Ids of the items folded into a synthesized batch item
    merged_ids: List[str] = Field(default_factory=list)

    @property
    def type(self) -> Optional[str]:
        return self.payload.type

    @property
    def size(self) -> int:
        return len(self.merged_ids) or 1


class NotificationBatch(BaseModel):
    """Items produced by one dequeue. Never persisted."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    items: List[QueueItem]
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def size(self) -> int:
        return len(self.items)


class SendOptions(BaseModel):
    """Per-send options supplied by the caller."""
    batchable: bool = True
    dedup_key: Optional[str] = Field(None, max_length=200)
    schedule_for: Optional[datetime] = None
    bypass_rate_limit: bool = False

    @field_validator("schedule_for")
    @classmethod
    def _require_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("schedule_for must be timezone-aware")
        return value


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    BLOCKED = "blocked"
    REJECTED = "rejected"


class DeliveryResult(BaseModel):
    """Outcome of NotificationService.send."""
    status: DeliveryStatus
    success: bool
    queued: bool = False
    batch_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    retry_at: Optional[datetime] = None
    retry_after_ms: Optional[int] = None
    latency_ms: Optional[float] = None

    @classmethod
    def delivered(cls, latency_ms: float) -> "DeliveryResult":
        return cls(status=DeliveryStatus.DELIVERED, success=True, latency_ms=latency_ms)

    @classmethod
    def queued_for(
        cls,
        item_id: str,
        retry_at: Optional[datetime] = None,
        retry_after_ms: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> "DeliveryResult":
        return cls(
            status=DeliveryStatus.QUEUED,
            success=True,
            queued=True,
            batch_id=item_id,
            retry_at=retry_at,
            retry_after_ms=retry_after_ms,
            error=reason,
        )

    @classmethod
    def blocked(cls, reason: str) -> "DeliveryResult":
        return cls(status=DeliveryStatus.BLOCKED, success=False, error=reason)

    @classmethod
    def rejected(cls, code: ErrorCode, message: str) -> "DeliveryResult":
        return cls(status=DeliveryStatus.REJECTED, success=False, error=message, error_code=code)


class SendRequest(BaseModel):
    """Body of POST /api/notifications/send."""
    user_id: str = Field(..., min_length=1)
    payload: NotificationPayload
    priority: Priority = Priority.NORMAL
    options: SendOptions = Field(default_factory=SendOptions)


class MetricSample(BaseModel):
    """One delivery attempt as seen by the metrics collector."""
    timestamp: datetime
    type: str = "unknown"
    success: bool
    latency_ms: float = 0.0
    batch_size: int = 1

    @property
    def hour_bucket(self) -> int:
        return int(self.timestamp.timestamp() // 3600)
