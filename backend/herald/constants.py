"""
Application constants with documented reasoning.

This file centralizes "magic numbers" used throughout the codebase,
providing clear documentation for why each value was chosen.
Anything an operator is expected to tune lives in config.py instead.
"""

# =============================================================================
# QUEUE KEYS
# =============================================================================

# Sorted set holding CRITICAL items regardless of user
CRITICAL_QUEUE_KEY = "notifications:critical"

# Overflow sorted set used once a user's own queue is saturated
GLOBAL_QUEUE_KEY = "notifications:global"

# Per-user sorted set, formatted with the user id
USER_QUEUE_KEY = "notifications:user:{user_id}"

# Set of user ids that currently own a non-empty user queue
ACTIVE_USERS_KEY = "notifications:active_users"

# Sorted set of items that exhausted their delivery attempts
DEAD_LETTER_KEY = "notifications:dead_letter"

# Dedup mapping key, formatted with the caller-supplied dedup key
DEDUP_KEY = "dedup:{key}"

# Pub/sub channel used to wake the batch processor
BATCH_TRIGGER_CHANNEL = "notification:batch-trigger"

# =============================================================================
# QUEUE BEHAVIOUR
# =============================================================================

# Dedup window - identical notifications within 5 minutes collapse into one
DEDUP_TTL_SECONDS = 300

# A user queue holding more than this many items spills into the global queue
USER_QUEUE_OVERFLOW_THRESHOLD = 100

# Backlog is reported relative to this healthy queue size
QUEUE_HEALTHY_SIZE = 100

# Items are grouped into 15 minute buckets when building batches
BATCH_GROUPING_WINDOW_SECONDS = 15 * 60

# A group only merges when its scheduled times span at most 5 minutes
BATCH_MAX_SPREAD_SECONDS = 5 * 60

# Global depth that counts as full load when computing adaptive triggers
QUEUE_LOAD_REFERENCE_DEPTH = 1000

# Global depth thresholds for growing the adaptive batch size
BATCH_SIZE_DEPTH_HIGH = 1000
BATCH_SIZE_DEPTH_MEDIUM = 500

# Smallest batch size allowed under memory pressure
BATCH_SIZE_FLOOR = 5

# Priority tier weights, spaced wider than MAX_TIMESTAMP_MS so tiers never mix
PRIORITY_WEIGHT_STEP = 10_000_000_000_000
MAX_TIMESTAMP_MS = 10_000_000_000_000

# Notification types whose merged payloads get dedicated wording
BATCHABLE_TYPES = ("TASK_DEADLINE", "HABIT_REMINDER", "WEEKLY_REPORT")

# =============================================================================
# RATE LIMITING
# =============================================================================

# Sliding window sizes
RATE_LIMIT_WINDOWS_SECONDS = {
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "burst": 30,
}

# Key prefix for every rate-limit sorted set
RATE_LIMIT_KEY_PREFIX = "ratelimit"

# A store ping slower than this marks the limiter as degraded
RATE_LIMIT_PING_DEGRADED_MS = 1000

# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

# A breaker idle for 10 minutes forgives one recorded failure per check
CIRCUIT_IDLE_HEAL_SECONDS = 600

# Failure rate (percent) above which a closed breaker reports degraded
CIRCUIT_DEGRADED_FAILURE_RATE = 20.0

# =============================================================================
# METRICS
# =============================================================================

# Hourly aggregate hash key, formatted with the hour bucket (epoch hours)
METRICS_HOURLY_KEY = "metrics:hourly:{hour}"

# Aggregates are retained for 30 days
METRICS_RETENTION_SECONDS = 30 * 24 * 3600

# Buffered samples kept while the store is down, beyond this the oldest drop
METRICS_MAX_PENDING_SAMPLES = 10_000

# Number of entries returned by the top-types report
METRICS_TOP_TYPES_LIMIT = 10

# =============================================================================
# BACKGROUND PROCESSING
# =============================================================================

# Items processed concurrently within one batch
BATCH_CONCURRENCY_LIMIT = 5

# Pause between concurrency chunks so the transport is not hammered
BATCH_CHUNK_DELAY_SECONDS = 0.1

# Store sweep and breaker healing cadence
MAINTENANCE_INTERVAL_SECONDS = 60

# Background task health check interval
# 60 seconds is frequent enough to catch crashes quickly
# without adding unnecessary overhead
TASK_MONITOR_CHECK_INTERVAL_SECONDS = 60

# Delay before retrying a subscription that failed to open
TRIGGER_RESUBSCRIBE_DELAY_SECONDS = 5

# =============================================================================
# MEMORY
# =============================================================================

# Emergency cleanup runs several collection passes with a short pause
EMERGENCY_GC_PASSES = 3
EMERGENCY_GC_PAUSE_SECONDS = 0.1

BYTES_PER_MB = 1024 * 1024

# =============================================================================
# HTTP CLIENT TIMEOUTS
# =============================================================================

# Webhook timeout - shorter because webhooks should be fast
WEBHOOK_TIMEOUT_SECONDS = 10

# =============================================================================
# DATABASE
# =============================================================================

# SQLite busy timeout - wait for locks before failing
# 5 seconds handles most concurrent access without long hangs
SQLITE_BUSY_TIMEOUT_MS = 5000

# Preference lookups are cached briefly by the caller side wrapper
PREFERENCE_CACHE_TTL_SECONDS = 60
