"""
Shared fixtures: a controllable clock, an in-process store and a fake transport.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest

from herald.clients.base import BaseTransport
from herald.config import (
    BatchingConfig,
    CircuitBreakerConfig,
    DeliveryConfig,
    QueueConfig,
    RateLimitConfig,
)
from herald.schemas.notification import NotificationPayload
from herald.services.notification_service import NotificationService
from herald.services.preferences import InMemoryPreferenceStore
from herald.stores.memory import InMemoryStore
from herald.utils.errors import TransportError

# Monday 2026-01-05 12:00 UTC
START = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeTransport(BaseTransport):
    """Records deliveries; can be told to fail or stall."""

    def __init__(self):
        super().__init__("fake")
        self.sent: List[Tuple[str, NotificationPayload]] = []
        self.fail = False
        self.delay = 0.0
        self.calls = 0

    @property
    def transport_type(self) -> str:
        return "fake"

    async def send(self, user_id: str, payload: NotificationPayload):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TransportError("fake transport down")
        self.sent.append((user_id, payload))


def make_payload(title: str = "Hello", notification_type: str = None, **kwargs) -> NotificationPayload:
    data = {"type": notification_type} if notification_type else {}
    data.update(kwargs.pop("data", {}))
    return NotificationPayload(title=title, body=kwargs.pop("body", "Body text"), data=data, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def preference_store() -> InMemoryPreferenceStore:
    return InMemoryPreferenceStore()


@pytest.fixture
def delivery_config() -> DeliveryConfig:
    return DeliveryConfig(
        queue=QueueConfig(batch_size=10),
        rate_limit=RateLimitConfig(per_minute=10, per_hour=100, per_day=500, burst=20),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=5, reset_timeout_seconds=60, call_timeout_seconds=1),
        batching=BatchingConfig(chunk_delay_seconds=0),
    )


@pytest.fixture
def service(delivery_config, store, transport, preference_store, clock) -> NotificationService:
    return NotificationService(
        delivery_config,
        store,
        transport,
        preference_store=preference_store,
        clock=clock,
        memory_probe=lambda: 100.0,
        resource_probe=lambda: (100.0, 1.5),
        rng=lambda: 0.0,
    )
