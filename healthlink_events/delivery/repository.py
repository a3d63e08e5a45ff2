"""
Persistence for subscriptions and published event records.

Repositories are injected into the publisher, the workers and the API. Every
mutation of a published event record is a conditional update guarded by
``delivery_status = 'PENDING'``; a terminal record is never modified again and
``delivery_attempts`` only ever grows.
"""

from __future__ import annotations

import abc
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from healthlink_events.core.database import get_session_context
from healthlink_events.core.phi import scrub
from healthlink_events.models.base import utcnow
from healthlink_events.models.published_event import LAST_ERROR_MAX_LENGTH, PublishedEvent
from healthlink_events.models.subscription import Subscription
from healthlink_events.schemas import DeliveryStatus, EventType, SubscriptionCreate

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionRepository(abc.ABC):
    @abc.abstractmethod
    async def list_active(self, event_type: EventType) -> list[Subscription]:
        ...

    @abc.abstractmethod
    async def get(self, subscription_id: uuid.UUID) -> Subscription | None:
        ...

    @abc.abstractmethod
    async def create(self, owner_id: uuid.UUID, data: SubscriptionCreate) -> Subscription:
        ...

    @abc.abstractmethod
    async def deactivate(self, subscription_id: uuid.UUID, owner_id: uuid.UUID | None = None) -> Subscription | None:
        """Soft-delete. ``owner_id`` restricts the update to that owner's subscription."""

    @abc.abstractmethod
    async def list_for_owner(self, owner_id: uuid.UUID | None) -> list[Subscription]:
        """All subscriptions of ``owner_id``; every subscription when it is None."""


class SqlSubscriptionRepository(SubscriptionRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    async def list_active(self, event_type: EventType) -> list[Subscription]:
        async with get_session_context(self._session_factory) as session:
            result = await session.execute(
                select(Subscription).where(
                    Subscription.event_type == EventType(event_type).value,
                    Subscription.active == True,  # noqa: E712
                )
            )
            return list(result.scalars().all())

    async def get(self, subscription_id: uuid.UUID) -> Subscription | None:
        async with get_session_context(self._session_factory) as session:
            return await session.get(Subscription, subscription_id)

    async def create(self, owner_id: uuid.UUID, data: SubscriptionCreate) -> Subscription:
        subscription = Subscription(
            owner_id=owner_id,
            event_type=data.event_type.value,
            channel=data.channel.value,
            target=data.target,
            secret=data.secret,
        )
        async with get_session_context(self._session_factory) as session:
            session.add(subscription)
        log.info(
            "subscription.created",
            subscription_id=str(subscription.id),
            event_type=subscription.event_type,
            channel=subscription.channel,
        )
        return subscription

    async def deactivate(self, subscription_id: uuid.UUID, owner_id: uuid.UUID | None = None) -> Subscription | None:
        async with get_session_context(self._session_factory) as session:
            subscription = await session.get(Subscription, subscription_id)
            if subscription is None or (owner_id is not None and subscription.owner_id != owner_id):
                return None
            subscription.active = False
            subscription.updated_at = utcnow()
            session.add(subscription)
        log.info("subscription.deactivated", subscription_id=str(subscription_id))
        return subscription

    async def list_for_owner(self, owner_id: uuid.UUID | None) -> list[Subscription]:
        stmt = select(Subscription).order_by(Subscription.created_at.desc())
        if owner_id is not None:
            stmt = stmt.where(Subscription.owner_id == owner_id)
        async with get_session_context(self._session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


class CachedSubscriptionRepository(SubscriptionRepository):
    """
    Read-through cache over another repository.

    Writes made through this wrapper invalidate the cache immediately; writes
    made by other processes become visible once ``ttl_seconds`` elapses.
    """

    def __init__(
        self,
        inner: SubscriptionRepository,
        *,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._inner = inner
        self._ttl = ttl_seconds
        self._clock = clock
        self._active: dict[str, tuple[float, list[Subscription]]] = {}
        self._by_id: dict[uuid.UUID, tuple[float, Subscription | None]] = {}

    def invalidate(self) -> None:
        self._active.clear()
        self._by_id.clear()

    def _fresh(self, stored_at: float) -> bool:
        return self._clock() - stored_at < self._ttl

    async def list_active(self, event_type: EventType) -> list[Subscription]:
        key = EventType(event_type).value
        cached = self._active.get(key)
        if cached is not None and self._fresh(cached[0]):
            return list(cached[1])
        subscriptions = await self._inner.list_active(event_type)
        self._active[key] = (self._clock(), subscriptions)
        return list(subscriptions)

    async def get(self, subscription_id: uuid.UUID) -> Subscription | None:
        cached = self._by_id.get(subscription_id)
        if cached is not None and self._fresh(cached[0]):
            return cached[1]
        subscription = await self._inner.get(subscription_id)
        self._by_id[subscription_id] = (self._clock(), subscription)
        return subscription

    async def create(self, owner_id: uuid.UUID, data: SubscriptionCreate) -> Subscription:
        subscription = await self._inner.create(owner_id, data)
        self.invalidate()
        return subscription

    async def deactivate(self, subscription_id: uuid.UUID, owner_id: uuid.UUID | None = None) -> Subscription | None:
        subscription = await self._inner.deactivate(subscription_id, owner_id)
        self.invalidate()
        return subscription

    async def list_for_owner(self, owner_id: uuid.UUID | None) -> list[Subscription]:
        return await self._inner.list_for_owner(owner_id)


# ---------------------------------------------------------------------------
# Published event records
# ---------------------------------------------------------------------------


class PublishedEventRepository(abc.ABC):
    @abc.abstractmethod
    async def create_pending(
        self,
        subscription: Subscription,
        event_type: EventType,
        reference_id: str,
        payload: dict[str, Any],
    ) -> PublishedEvent:
        """Insert a PENDING record with zero attempts and commit it."""

    @abc.abstractmethod
    async def get(self, event_id: uuid.UUID) -> PublishedEvent | None:
        ...

    @abc.abstractmethod
    async def mark_delivered(self, event_id: uuid.UUID, attempt: int) -> bool:
        ...

    @abc.abstractmethod
    async def record_attempt_failure(self, event_id: uuid.UUID, attempt: int, error: str) -> bool:
        """Store a failed attempt; the record stays PENDING."""

    @abc.abstractmethod
    async def mark_failed(self, event_id: uuid.UUID, error: str, attempt: int | None = None) -> bool:
        """Terminal failure. ``attempt`` is None when no attempt was consumed."""

    @abc.abstractmethod
    async def touch(self, event_id: uuid.UUID) -> bool:
        """Bump updated_at on a PENDING record."""

    @abc.abstractmethod
    async def list_stale_pending(self, older_than: datetime, limit: int = 200) -> list[PublishedEvent]:
        ...

    @abc.abstractmethod
    async def list_records(
        self,
        *,
        owner_id: uuid.UUID | None = None,
        status: DeliveryStatus | None = None,
        limit: int = 50,
    ) -> Sequence[PublishedEvent]:
        ...


def _bounded_error(error: str) -> str:
    return scrub(error, max_length=LAST_ERROR_MAX_LENGTH)


class SqlPublishedEventRepository(PublishedEventRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    async def create_pending(
        self,
        subscription: Subscription,
        event_type: EventType,
        reference_id: str,
        payload: dict[str, Any],
    ) -> PublishedEvent:
        record = PublishedEvent(
            event_type=EventType(event_type).value,
            reference_id=reference_id,
            subscription_id=subscription.id,
            channel=subscription.channel,
            target=subscription.target,
            payload=dict(payload),
            delivery_status=DeliveryStatus.PENDING.value,
            delivery_attempts=0,
        )
        async with get_session_context(self._session_factory) as session:
            session.add(record)
        return record

    async def get(self, event_id: uuid.UUID) -> PublishedEvent | None:
        async with get_session_context(self._session_factory) as session:
            return await session.get(PublishedEvent, event_id)

    async def _update_pending(self, event_id: uuid.UUID, **values: Any) -> bool:
        now = utcnow()
        stmt = (
            update(PublishedEvent)
            .where(
                PublishedEvent.id == event_id,
                PublishedEvent.delivery_status == DeliveryStatus.PENDING.value,
            )
            .values(updated_at=now, **values)
        )
        async with get_session_context(self._session_factory) as session:
            result = await session.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    def _raise_attempts(attempt: int):
        # Never lowers the counter, whatever order attempts are reported in.
        return case(
            (PublishedEvent.delivery_attempts < attempt, attempt),
            else_=PublishedEvent.delivery_attempts,
        )

    async def mark_delivered(self, event_id: uuid.UUID, attempt: int) -> bool:
        return await self._update_pending(
            event_id,
            delivery_status=DeliveryStatus.DELIVERED.value,
            delivery_attempts=self._raise_attempts(attempt),
            delivered_at=utcnow(),
            last_error=None,
        )

    async def record_attempt_failure(self, event_id: uuid.UUID, attempt: int, error: str) -> bool:
        return await self._update_pending(
            event_id,
            delivery_attempts=self._raise_attempts(attempt),
            last_error=_bounded_error(error),
        )

    async def mark_failed(self, event_id: uuid.UUID, error: str, attempt: int | None = None) -> bool:
        values: dict[str, Any] = {
            "delivery_status": DeliveryStatus.FAILED.value,
            "last_error": _bounded_error(error),
        }
        if attempt is not None:
            values["delivery_attempts"] = self._raise_attempts(attempt)
        return await self._update_pending(event_id, **values)

    async def touch(self, event_id: uuid.UUID) -> bool:
        return await self._update_pending(event_id)

    async def list_stale_pending(self, older_than: datetime, limit: int = 200) -> list[PublishedEvent]:
        stmt = (
            select(PublishedEvent)
            .where(
                PublishedEvent.delivery_status == DeliveryStatus.PENDING.value,
                PublishedEvent.updated_at < older_than,
            )
            .order_by(PublishedEvent.updated_at)
            .limit(limit)
        )
        async with get_session_context(self._session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_records(
        self,
        *,
        owner_id: uuid.UUID | None = None,
        status: DeliveryStatus | None = None,
        limit: int = 50,
    ) -> Sequence[PublishedEvent]:
        stmt = select(PublishedEvent).order_by(PublishedEvent.published_at.desc()).limit(limit)
        if owner_id is not None:
            stmt = stmt.join(Subscription, Subscription.id == PublishedEvent.subscription_id).where(
                Subscription.owner_id == owner_id
            )
        if status is not None:
            stmt = stmt.where(PublishedEvent.delivery_status == DeliveryStatus(status).value)
        async with get_session_context(self._session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
