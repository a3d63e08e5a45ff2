"""
Shared fixtures: a throwaway SQLite database per test, in-memory broker,
and a controllable clock.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from healthlink_events.core.database import build_session_factory, dispose_session_factory, init_db
from healthlink_events.delivery.publisher import EventPublisher
from healthlink_events.delivery.repository import SqlPublishedEventRepository, SqlSubscriptionRepository
from healthlink_events.messaging.broker import InMemoryBroker
from healthlink_events.models.subscription import Subscription
from healthlink_events.schemas import DeliveryChannel, EventType, SubscriptionCreate

SECRET = "whsec_0123456789abcdef"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
async def session_factory(tmp_path):
    factory = build_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'healthlink.db'}")
    await init_db(factory)
    yield factory
    await dispose_session_factory(factory)


@pytest.fixture
def subscriptions(session_factory) -> SqlSubscriptionRepository:
    return SqlSubscriptionRepository(session_factory)


@pytest.fixture
def events(session_factory) -> SqlPublishedEventRepository:
    return SqlPublishedEventRepository(session_factory)


@pytest.fixture
async def broker():
    b = InMemoryBroker(max_attempts=5)
    yield b
    await b.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def publisher(subscriptions, events, broker, clock) -> EventPublisher:
    return EventPublisher(subscriptions, events, broker, clock=clock)


@pytest.fixture
def make_subscription(subscriptions, session_factory):
    """Factory creating a subscription through the repository."""

    async def _make(
        event_type: EventType = EventType.PAYMENT_VERIFIED,
        *,
        channel: DeliveryChannel = DeliveryChannel.WEBHOOK,
        target: str | None = None,
        secret: str = SECRET,
        active: bool = True,
        owner_id: uuid.UUID | None = None,
    ) -> Subscription:
        if target is None:
            target = (
                f"https://hooks.example.com/{uuid.uuid4().hex[:8]}"
                if channel is DeliveryChannel.WEBHOOK
                else f"device-{uuid.uuid4().hex[:12]}"
            )
        sub = await subscriptions.create(
            owner_id or uuid.uuid4(),
            SubscriptionCreate(event_type=event_type, channel=channel, target=target, secret=secret),
        )
        if not active:
            sub = await subscriptions.deactivate(sub.id)
        return sub

    return _make


async def blank_secret(session_factory, subscription_id: uuid.UUID) -> None:
    """Simulate a subscription whose secret was wiped out of band."""
    async with session_factory() as session:
        await session.execute(
            update(Subscription).where(Subscription.id == subscription_id).values(secret="")
        )
        await session.commit()
