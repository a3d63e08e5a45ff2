"""
Delivery worker base: one queue message in, one outcome out.

Subclasses implement ``deliver`` for their sink and raise
``TransientDeliveryError`` / ``PermanentDeliveryError`` / ``DeliveryConfigError``.
The base class owns everything around the outbound call: deferral of early
messages, idempotency against terminal records, configuration checks, the
hard deadline, record updates and retry scheduling.

The record's ``delivery_attempts`` is the attempt authority. The broker's
delivery limit only catches messages whose handler keeps crashing.
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from healthlink_events.core.errors import (
    DeliveryConfigError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from healthlink_events.delivery.repository import PublishedEventRepository, SubscriptionRepository
from healthlink_events.delivery.signer import canonical_body, verify
from healthlink_events.messaging.broker import MessageBroker, Outcome
from healthlink_events.metrics import MetricsCollector
from healthlink_events.models.base import utcnow
from healthlink_events.models.subscription import Subscription
from healthlink_events.schemas import DeliveryChannel, DeliveryMessage, DeliveryStatus

log = structlog.get_logger()

RETRYABLE_STATUSES = frozenset({408, 425, 429})


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before the attempt following ``attempt``: ``min(cap, base * 2**(attempt-1))``."""
    return min(cap, base * (2 ** (attempt - 1)))


def classify_status(status_code: int, reason: str = "") -> None:
    """Raise the delivery error matching an HTTP status; return for 2xx."""
    if 200 <= status_code < 300:
        return
    detail = f"HTTP {status_code} {reason}".strip()
    if status_code >= 500 or status_code in RETRYABLE_STATUSES:
        raise TransientDeliveryError(detail)
    raise PermanentDeliveryError(detail)


def message_body(message: DeliveryMessage) -> bytes:
    return canonical_body(message.event_id, message.event_type, message.reference_id, message.payload)


class DeliveryWorker(abc.ABC):
    channel: DeliveryChannel

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        events: PublishedEventRepository,
        broker: MessageBroker,
        *,
        max_attempts: int = 5,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 300.0,
        schedule_tolerance_seconds: float = 1.0,
        deadline_seconds: float = 10.0,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._subscriptions = subscriptions
        self._events = events
        self._broker = broker
        self.max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._backoff_cap = backoff_max_seconds
        self._tolerance = schedule_tolerance_seconds
        self._deadline = deadline_seconds
        self._metrics = metrics or MetricsCollector()
        self._clock = clock

    async def open(self) -> None:
        """Acquire sink resources."""

    async def close(self) -> None:
        """Release sink resources."""

    @abc.abstractmethod
    async def deliver(self, message: DeliveryMessage, subscription: Subscription) -> None:
        """Perform the outbound call. Return on success, raise a DeliveryError otherwise."""

    def validate_target(self, target: str) -> None:
        if not target or not target.strip():
            raise DeliveryConfigError("target is empty")

    async def _check_configuration(self, message: DeliveryMessage) -> Subscription:
        subscription = await self._subscriptions.get(message.subscription_id)
        if subscription is None:
            raise DeliveryConfigError("subscription not found")
        if not subscription.active:
            raise DeliveryConfigError("subscription is inactive")
        if subscription.channel != self.channel.value:
            raise DeliveryConfigError(f"subscription channel is {subscription.channel}")
        self.validate_target(message.target)
        if not verify(subscription.secret, message_body(message), message.signature):
            raise DeliveryConfigError("signature mismatch")
        return subscription

    async def handle(self, message: DeliveryMessage) -> Outcome:
        """Process one delivery attempt and return the broker outcome."""
        event_id = str(message.event_id)
        now = self._clock()

        remaining = (message.scheduled_at - now).total_seconds()
        if remaining > self._tolerance:
            await self._broker.publish(message, delay=remaining)
            self._metrics.delivery("deferred", self.channel)
            log.info("delivery.deferred", event_id=event_id, attempt=message.attempt, delay=remaining)
            return Outcome.ACK

        record = await self._events.get(message.event_id)
        if record is None:
            log.warning("delivery.record_missing", event_id=event_id)
            return Outcome.ACK
        if record.delivery_status != DeliveryStatus.PENDING.value:
            self._metrics.delivery("duplicate", self.channel)
            log.info("delivery.duplicate", event_id=event_id, status=record.delivery_status)
            return Outcome.ACK

        try:
            subscription = await self._check_configuration(message)
        except DeliveryConfigError as exc:
            return await self._fail(message, exc.reason, consumed_attempt=False)

        try:
            await asyncio.wait_for(self.deliver(message, subscription), timeout=self._deadline)
        except asyncio.TimeoutError:
            return await self._retry_or_fail(message, f"deadline of {self._deadline}s exceeded")
        except TransientDeliveryError as exc:
            return await self._retry_or_fail(message, exc.reason)
        except DeliveryConfigError as exc:
            return await self._fail(message, exc.reason, consumed_attempt=False)
        except PermanentDeliveryError as exc:
            return await self._fail(message, exc.reason, consumed_attempt=True)

        await self._events.mark_delivered(message.event_id, message.attempt)
        self._metrics.delivery("succeeded", self.channel)
        log.info(
            "delivery.succeeded",
            event_id=event_id,
            channel=self.channel.value,
            attempt=message.attempt,
        )
        return Outcome.ACK

    async def _retry_or_fail(self, message: DeliveryMessage, reason: str) -> Outcome:
        if message.attempt >= self.max_attempts:
            return await self._fail(message, reason, consumed_attempt=True)

        await self._events.record_attempt_failure(message.event_id, message.attempt, reason)
        delay = backoff_delay(message.attempt, self._backoff_base, self._backoff_cap)
        next_message = message.next_attempt(self._clock() + timedelta(seconds=delay))
        await self._broker.publish(next_message, delay=delay)
        self._metrics.delivery("retried", self.channel)
        log.info(
            "delivery.retry_scheduled",
            event_id=str(message.event_id),
            attempt=message.attempt,
            next_attempt=next_message.attempt,
            delay=delay,
            reason=reason,
        )
        return Outcome.ACK

    async def _fail(self, message: DeliveryMessage, reason: str, *, consumed_attempt: bool) -> Outcome:
        await self._events.mark_failed(
            message.event_id, reason, message.attempt if consumed_attempt else None
        )
        self._metrics.delivery("failed", self.channel)
        log.warning(
            "delivery.failed",
            event_id=str(message.event_id),
            channel=self.channel.value,
            attempt=message.attempt,
            reason=reason,
            attempt_consumed=consumed_attempt,
        )
        return Outcome.REJECT
