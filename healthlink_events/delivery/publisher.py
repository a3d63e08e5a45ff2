"""
Event publisher: fan a domain event out to every active subscription.

For each subscription the tracking record is committed before the delivery
message is enqueued, so a message never exists without its record. A record
without a message (enqueue failed, process died) stays PENDING and is picked up
by the reconciliation sweep.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from healthlink_events.core.errors import (
    PublishError,
    PublishResult,
    SignatureError,
    SubscriptionFailure,
)
from healthlink_events.core.phi import scrub
from healthlink_events.delivery.repository import PublishedEventRepository, SubscriptionRepository
from healthlink_events.delivery.signer import canonical_body, sign
from healthlink_events.messaging.broker import MessageBroker
from healthlink_events.models.base import utcnow
from healthlink_events.models.published_event import PublishedEvent
from healthlink_events.schemas import (
    DeliveryChannel,
    DeliveryMessage,
    EventType,
    validate_payload,
    validate_reference_id,
)

log = structlog.get_logger()


def delivery_message_for(
    record: PublishedEvent,
    secret: str,
    *,
    attempt: int,
    scheduled_at: datetime,
) -> DeliveryMessage:
    """Build the signed queue message for ``record``. Raises SignatureError on an empty secret."""
    body = canonical_body(record.id, record.event_type, record.reference_id, record.payload)
    return DeliveryMessage(
        event_id=record.id,
        subscription_id=record.subscription_id,
        channel=DeliveryChannel(record.channel),
        target=record.target,
        event_type=EventType(record.event_type),
        reference_id=record.reference_id,
        payload=record.payload or {},
        signature=sign(secret, body),
        attempt=attempt,
        scheduled_at=scheduled_at,
    )


class EventPublisher:
    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        events: PublishedEventRepository,
        broker: MessageBroker,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._subscriptions = subscriptions
        self._events = events
        self._broker = broker
        self._clock = clock

    async def publish(
        self,
        event_type: EventType | str,
        reference_id: str,
        payload: dict[str, Any] | None = None,
    ) -> PublishResult:
        """
        Record and enqueue one delivery per active subscription of ``event_type``.

        Raises ValueError for an invalid reference id or payload before anything
        is written. Raises PublishError after all subscriptions were processed
        if any of them could not be persisted or enqueued.
        """
        event_type = EventType(event_type)
        validate_reference_id(reference_id)
        clean_payload = validate_payload(payload)

        subscriptions = await self._subscriptions.list_active(event_type)
        if not subscriptions:
            log.info("publisher.no_subscribers", event_type=event_type.value, reference_id=reference_id)
            return PublishResult()

        result = PublishResult()
        persistence_failures: list[SubscriptionFailure] = []
        enqueue_failures: list[SubscriptionFailure] = []

        for subscription in subscriptions:
            try:
                record = await self._events.create_pending(subscription, event_type, reference_id, clean_payload)
            except Exception as exc:
                log.error(
                    "publisher.persist_failed",
                    subscription_id=str(subscription.id),
                    event_type=event_type.value,
                    error=str(exc),
                )
                persistence_failures.append(SubscriptionFailure(subscription.id, scrub(str(exc))))
                continue

            result.event_ids.append(record.id)

            try:
                message = delivery_message_for(
                    record, subscription.secret, attempt=1, scheduled_at=self._clock()
                )
            except SignatureError as exc:
                await self._events.mark_failed(record.id, exc.reason)
                log.warning(
                    "publisher.config_failed",
                    event_id=str(record.id),
                    subscription_id=str(subscription.id),
                    reason=exc.reason,
                )
                continue

            try:
                await self._broker.publish(message)
            except Exception as exc:
                log.error(
                    "publisher.enqueue_failed",
                    event_id=str(record.id),
                    subscription_id=str(subscription.id),
                    error=str(exc),
                )
                enqueue_failures.append(SubscriptionFailure(subscription.id, scrub(str(exc)), record.id))
                continue

            log.info(
                "publisher.enqueued",
                event_id=str(record.id),
                subscription_id=str(subscription.id),
                event_type=event_type.value,
                channel=record.channel,
            )

        if persistence_failures or enqueue_failures:
            raise PublishError(result, persistence_failures, enqueue_failures)
        return result
