"""
Notification delivery: push/email through an opaque sink.

The sink contract is ``send(target, title, body, metadata)``. Titles and
bodies come from a template catalog keyed by event type and never carry
personal data; the receiving app resolves details from ``reference_id``.
"""

from __future__ import annotations

import enum
import string
import uuid
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

import httpx
import structlog

from healthlink_events.core.errors import DeliveryConfigError, PermanentDeliveryError, TransientDeliveryError
from healthlink_events.delivery.worker import DeliveryWorker, classify_status
from healthlink_events.models.subscription import Subscription
from healthlink_events.schemas import DeliveryChannel, DeliveryMessage, EventType

log = structlog.get_logger()


class NotificationSink(Protocol):
    async def send(self, target: str, title: str, body: str, metadata: dict[str, str]) -> None:
        """Deliver one notification. Raise TransientDeliveryError or PermanentDeliveryError on failure."""


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

DEFAULT_TEMPLATES: dict[EventType, tuple[str, str]] = {
    EventType.APPOINTMENT_CREATED: ("Appointment booked", "Your appointment {reference_id} has been booked."),
    EventType.APPOINTMENT_UPDATED: ("Appointment updated", "Appointment {reference_id} has changed. Open the app for details."),
    EventType.APPOINTMENT_CANCELED: ("Appointment cancelled", "Appointment {reference_id} has been cancelled."),
    EventType.PAYMENT_INITIATED: ("Payment received", "We received payment {reference_id} and are verifying it."),
    EventType.PAYMENT_VERIFIED: ("Payment verified", "Payment {reference_id} has been verified."),
    EventType.PAYMENT_FAILED: ("Payment not verified", "Payment {reference_id} could not be verified."),
    EventType.PAYMENT_DISPUTED: ("Payment disputed", "Payment {reference_id} is under review. Open the app for details."),
    EventType.PRESCRIPTION_CREATED: ("New prescription", "A new prescription is available in the app."),
    EventType.LAB_RESULT_UPLOADED: ("Lab result ready", "A new lab result is available in the app."),
    EventType.USER_APPROVED: ("Account approved", "Your HealthLink account has been approved."),
    EventType.USER_REJECTED: ("Account review", "Your HealthLink account application needs attention."),
}

FALLBACK_TEMPLATE = ("HealthLink update", "You have a new update in the app.")


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


class TemplateCatalog:
    """Title/body templates per event type. Placeholders resolve from the reference id and payload."""

    def __init__(self, templates: Mapping[EventType, tuple[str, str]] | None = None):
        self._templates = dict(DEFAULT_TEMPLATES if templates is None else templates)
        self._formatter = string.Formatter()

    def render(self, event_type: EventType, reference_id: str, payload: Mapping[str, Any]) -> tuple[str, str]:
        title, body = self._templates.get(EventType(event_type), FALLBACK_TEMPLATE)
        values = _Blank({key: "" if value is None else str(value) for key, value in payload.items()})
        values["reference_id"] = reference_id
        return (
            self._formatter.vformat(title, (), values),
            self._formatter.vformat(body, (), values),
        )


# ---------------------------------------------------------------------------
# Recipient preferences
# ---------------------------------------------------------------------------


class NotificationCategory(str, enum.Enum):
    APPOINTMENT_CONFIRMATIONS = "appointment_confirmations"
    APPOINTMENT_CANCELLATIONS = "appointment_cancellations"
    PAYMENT_UPDATES = "payment_updates"
    PRESCRIPTIONS = "prescriptions"
    SYSTEM = "system"


EVENT_CATEGORIES: dict[EventType, NotificationCategory] = {
    EventType.APPOINTMENT_CREATED: NotificationCategory.APPOINTMENT_CONFIRMATIONS,
    EventType.APPOINTMENT_UPDATED: NotificationCategory.APPOINTMENT_CONFIRMATIONS,
    EventType.APPOINTMENT_CANCELED: NotificationCategory.APPOINTMENT_CANCELLATIONS,
    EventType.PAYMENT_INITIATED: NotificationCategory.PAYMENT_UPDATES,
    EventType.PAYMENT_VERIFIED: NotificationCategory.PAYMENT_UPDATES,
    EventType.PAYMENT_FAILED: NotificationCategory.PAYMENT_UPDATES,
    EventType.PAYMENT_DISPUTED: NotificationCategory.PAYMENT_UPDATES,
    EventType.PRESCRIPTION_CREATED: NotificationCategory.PRESCRIPTIONS,
}


def category_for(event_type: EventType) -> NotificationCategory:
    return EVENT_CATEGORIES.get(EventType(event_type), NotificationCategory.SYSTEM)


class NotificationPreferences(Protocol):
    async def allows(self, owner_id: uuid.UUID, category: NotificationCategory) -> bool:
        """Whether the subscription owner still wants notifications of ``category``."""


class OptOutPreferences:
    """In-process preference store: owner id to the categories they opted out of."""

    def __init__(self, opt_outs: Mapping[uuid.UUID, Iterable[NotificationCategory]] | None = None):
        self._opt_outs: dict[uuid.UUID, set[NotificationCategory]] = {
            owner: {NotificationCategory(c) for c in categories}
            for owner, categories in (opt_outs or {}).items()
        }

    def opt_out(self, owner_id: uuid.UUID, category: NotificationCategory) -> None:
        self._opt_outs.setdefault(owner_id, set()).add(NotificationCategory(category))

    def opt_in(self, owner_id: uuid.UUID, category: NotificationCategory) -> None:
        self._opt_outs.get(owner_id, set()).discard(NotificationCategory(category))

    async def allows(self, owner_id: uuid.UUID, category: NotificationCategory) -> bool:
        return category not in self._opt_outs.get(owner_id, ())


# ---------------------------------------------------------------------------
# Push gateway sink
# ---------------------------------------------------------------------------


class HttpPushSink:
    """Push-gateway client. Unknown or unregistered targets are permanent failures."""

    PERMANENT_TARGET_STATUSES = frozenset({404, 410})

    def __init__(
        self,
        gateway_url: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._gateway_url = gateway_url
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
            self._owns_client = True

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, target: str, title: str, body: str, metadata: dict[str, str]) -> None:
        assert self._client, "sink is not open"
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            resp = await self._client.post(
                self._gateway_url,
                json={"target": target, "title": title, "body": body, "data": metadata},
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"push gateway timeout: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"push gateway unreachable: {type(exc).__name__}") from exc

        if resp.status_code in self.PERMANENT_TARGET_STATUSES:
            raise PermanentDeliveryError("target is not registered with the push provider")
        classify_status(resp.status_code, resp.reason_phrase)


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

MAX_TARGET_LENGTH = 500


class NotificationWorker(DeliveryWorker):
    channel = DeliveryChannel.NOTIFICATION

    def __init__(
        self,
        *args,
        sink: NotificationSink,
        templates: TemplateCatalog | None = None,
        preferences: NotificationPreferences | None = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self._sink = sink
        self._templates = templates or TemplateCatalog()
        self._preferences = preferences

    async def open(self) -> None:
        opener = getattr(self._sink, "open", None)
        if opener is not None:
            await opener()

    async def close(self) -> None:
        closer = getattr(self._sink, "close", None)
        if closer is not None:
            await closer()

    def validate_target(self, target: str) -> None:
        super().validate_target(target)
        if len(target) > MAX_TARGET_LENGTH or any(ch.isspace() for ch in target):
            raise DeliveryConfigError("malformed notification target")

    async def deliver(self, message: DeliveryMessage, subscription: Subscription) -> None:
        category = category_for(message.event_type)
        if (
            category is not NotificationCategory.SYSTEM
            and self._preferences is not None
            and not await self._preferences.allows(subscription.owner_id, category)
        ):
            # the record still ends DELIVERED
            self._metrics.delivery("suppressed", self.channel)
            log.info(
                "notification.suppressed_by_preference",
                event_id=str(message.event_id),
                category=category.value,
            )
            return

        title, body = self._templates.render(message.event_type, message.reference_id, message.payload)
        metadata = {
            "event_id": str(message.event_id),
            "event_type": message.event_type.value,
            "reference_id": message.reference_id,
            "signature": message.signature,
            "attempt": str(message.attempt),
        }
        await self._sink.send(message.target, title, body, metadata)
