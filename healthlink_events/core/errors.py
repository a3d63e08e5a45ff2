"""Exception taxonomy for publishing, delivery and admission control."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field


class DeliveryError(Exception):
    """Base class for outbound delivery failures."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TransientDeliveryError(DeliveryError):
    """Timeout, connection error, 5xx or provider throttling. Retried."""


class PermanentDeliveryError(DeliveryError):
    """The sink refused the delivery for good. Never retried."""


class DeliveryConfigError(PermanentDeliveryError):
    """Missing secret, inactive subscription or malformed target.

    Classified immediately, without consuming an attempt.
    """


class CounterStoreUnavailable(Exception):
    """The shared rate-limit counter store could not answer in time."""


@dataclass
class SubscriptionFailure:
    subscription_id: uuid.UUID
    error: str
    event_id: uuid.UUID | None = None


@dataclass
class PublishResult:
    event_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def published(self) -> int:
        return len(self.event_ids)


class PublishError(Exception):
    """Raised after a publish when any subscription could not be persisted or enqueued.

    ``persistence_failures`` never got a record; ``enqueue_failures`` have a
    PENDING record without a queue message and are picked up by reconciliation.
    """

    def __init__(
        self,
        result: PublishResult,
        persistence_failures: list[SubscriptionFailure],
        enqueue_failures: list[SubscriptionFailure],
    ):
        self.result = result
        self.persistence_failures = persistence_failures
        self.enqueue_failures = enqueue_failures
        super().__init__(
            f"publish incomplete: {len(persistence_failures)} persistence failure(s), "
            f"{len(enqueue_failures)} enqueue failure(s)"
        )


class SignatureError(DeliveryConfigError):
    """Signing was attempted without a usable secret."""
