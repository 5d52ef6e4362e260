"""
Backing stores for queues, counters and metrics.
"""
from typing import TYPE_CHECKING
from loguru import logger
from herald.stores.base import BackingStore, Subscription
from herald.stores.memory import InMemoryStore
from herald.stores.redis_store import RedisStore

if TYPE_CHECKING:
    from herald.config import Settings

__all__ = [
    "BackingStore",
    "Subscription",
    "InMemoryStore",
    "RedisStore",
    "create_store",
]


def create_store(settings: "Settings") -> BackingStore:
    """
    Factory function to create the backing store from settings.

    Args:
        settings: Application settings

    Returns:
        RedisStore when a redis_url is configured, otherwise an InMemoryStore
    """
    if settings.redis_url:
        logger.info("Using Redis backing store")
        return RedisStore(settings.redis_url)

    logger.info("No redis_url configured - using in-process backing store")
    return InMemoryStore()
