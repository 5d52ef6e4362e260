"""
Configuration management for Herald.

Settings are read from the environment (and an optional .env file). Nested
sections use a double underscore, e.g. DELIVERY__RATE_LIMIT__PER_MINUTE=20.
"""
from typing import Optional, Dict, List
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class QueueConfig(BaseModel):
    """Notification queue configuration."""
    max_queue_size: int = Field(10000, ge=1, description="Maximum items held by any single queue")
    batch_size: int = Field(10, ge=1, description="Base number of items dequeued per batch")
    max_batch_wait_seconds: float = Field(
        30.0,
        gt=0,
        description="Oldest item age that forces a batch trigger"
    )
    memory_pressure_mb: float = Field(
        384.0,
        description="Process memory above which the batch size is halved"
    )


class RateLimitConfig(BaseModel):
    """Per-user and global send ceilings."""
    per_minute: int = Field(10, ge=1)
    per_hour: int = Field(100, ge=1)
    per_day: int = Field(500, ge=1)
    burst: int = Field(5, ge=1, description="Sends allowed within the 30s burst window")
    global_multiplier: int = Field(100, ge=1, description="Global limits are per-user limits times this")
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_seconds: float = Field(300.0, gt=0)


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker protecting the delivery transport."""
    failure_threshold: int = Field(5, ge=1)
    reset_timeout_seconds: float = Field(60.0, gt=0)
    half_open_max_calls: int = Field(1, ge=1, description="Concurrent probes admitted while HALF_OPEN")
    call_timeout_seconds: float = Field(5.0, gt=0)


class MetricsConfig(BaseModel):
    """Delivery metrics configuration."""
    buffer_size: int = Field(1000, ge=1, description="Samples buffered before an early flush")
    flush_interval_seconds: float = Field(30.0, gt=0)


class MemoryConfig(BaseModel):
    """Process memory thresholds (MB of resident memory)."""
    warning_mb: float = 384.0
    cleanup_mb: float = 448.0
    max_mb: float = 512.0
    check_interval_seconds: float = Field(60.0, gt=0)


class RetryConfig(BaseModel):
    """Redelivery policy for queued items."""
    max_delivery_attempts: int = Field(5, ge=1)
    base_retry_delay_seconds: float = Field(5.0, gt=0)
    max_retry_delay_seconds: float = Field(300.0, gt=0)


class BatchingConfig(BaseModel):
    """Background batch processing."""
    interval_seconds: float = Field(15.0, gt=0)
    concurrency_limit: int = Field(5, ge=1)
    chunk_delay_seconds: float = Field(0.1, ge=0)
    batchable_types: List[str] = Field(
        default_factory=lambda: ["TASK_DEADLINE", "HABIT_REMINDER", "WEEKLY_REPORT"]
    )


class DeliveryConfig(BaseModel):
    """Everything the delivery pipeline needs, grouped by component."""
    queue: QueueConfig = Field(default_factory=QueueConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    batching: BatchingConfig = Field(default_factory=BatchingConfig)


class TransportConfig(BaseModel):
    """Delivery transport selection."""
    type: str = Field("log", description="Transport type: log, webhook, ntfy")
    url: str = Field("", description="Webhook URL or ntfy server URL")
    headers: Dict[str, str] = Field(default_factory=dict)
    topic_prefix: str = Field("herald", description="ntfy topic prefix, the user id is appended")
    timeout_seconds: float = Field(10.0, gt=0)


class Settings(BaseSettings):
    """Application settings loaded from environment and config file."""

    # Application
    app_name: str = "Herald"
    app_version: str = Field(default_factory=lambda: __import__('herald').__version__)
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 9595

    # Database (SQLite holds user preferences)
    database_url: str = Field(
        "sqlite+aiosqlite:///./herald.db",
        description="Database connection URL"
    )

    # Backing store for queues, counters and metrics (empty = in-process store)
    redis_url: Optional[str] = None

    # Logging
    log_dir: Optional[str] = Field(None, description="Directory for rotated log files (console only when unset)")

    transport: TransportConfig = Field(default_factory=TransportConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        env_nested_delimiter = "__"


# Global settings instance
settings = Settings()
