"""
Shared enumerations, the queue wire model and API request/response schemas.
"""

from __future__ import annotations

import enum
import re
import uuid
from datetime import datetime, timezone
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter, field_validator

from healthlink_events.core.phi import looks_sensitive


class EventType(str, enum.Enum):
    APPOINTMENT_CREATED = "APPOINTMENT_CREATED"
    APPOINTMENT_UPDATED = "APPOINTMENT_UPDATED"
    APPOINTMENT_CANCELED = "APPOINTMENT_CANCELED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_DISPUTED = "PAYMENT_DISPUTED"
    PRESCRIPTION_CREATED = "PRESCRIPTION_CREATED"
    LAB_RESULT_UPLOADED = "LAB_RESULT_UPLOADED"
    USER_APPROVED = "USER_APPROVED"
    USER_REJECTED = "USER_REJECTED"


class DeliveryChannel(str, enum.Enum):
    WEBHOOK = "webhook"
    NOTIFICATION = "notification"


class DeliveryStatus(str, enum.Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED})

Scalar = Union[str, int, float, bool, None]

# ---------------------------------------------------------------------------
# Restricted payload
# ---------------------------------------------------------------------------

PAYLOAD_KEY = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
MAX_PAYLOAD_KEYS = 32
MAX_REFERENCE_LENGTH = 100

_HTTP_URL = TypeAdapter(HttpUrl)

# Never allowed on the wire, whatever the value looks like.
DENIED_PAYLOAD_KEYS = frozenset({
    "name", "first_name", "last_name", "full_name", "patient_name",
    "email", "phone", "phone_number", "mobile", "address",
    "dob", "date_of_birth", "ssn", "national_id", "cnic",
    "diagnosis", "notes", "symptoms", "medications", "prescription_text",
})


def validate_reference_id(reference_id: str) -> str:
    if not reference_id or not reference_id.strip():
        raise ValueError("reference_id must not be empty")
    if len(reference_id) > MAX_REFERENCE_LENGTH:
        raise ValueError(f"reference_id exceeds {MAX_REFERENCE_LENGTH} characters")
    if looks_sensitive(reference_id):
        raise ValueError("reference_id looks like personal data")
    return reference_id


def validate_payload(payload: dict | None) -> dict[str, Scalar]:
    """Accept only a small map of scalar, non-identifying values."""
    if not payload:
        return {}
    if len(payload) > MAX_PAYLOAD_KEYS:
        raise ValueError(f"payload exceeds {MAX_PAYLOAD_KEYS} keys")
    clean: dict[str, Scalar] = {}
    for key, value in payload.items():
        if not isinstance(key, str) or not PAYLOAD_KEY.match(key):
            raise ValueError(f"invalid payload key: {key!r}")
        if key in DENIED_PAYLOAD_KEYS:
            raise ValueError(f"payload key not permitted: {key}")
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValueError(f"payload value for {key} must be a scalar")
        if isinstance(value, str) and looks_sensitive(value):
            raise ValueError(f"payload value for {key} looks like personal data")
        clean[key] = value
    return clean


# ---------------------------------------------------------------------------
# Queue wire model
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryMessage(BaseModel):
    """One delivery attempt as carried by the queue."""

    model_config = ConfigDict(frozen=True)

    event_id: uuid.UUID
    subscription_id: uuid.UUID
    channel: DeliveryChannel
    target: str
    event_type: EventType
    reference_id: str
    payload: dict[str, Scalar] = Field(default_factory=dict)
    signature: str
    attempt: int = Field(default=1, ge=1)
    scheduled_at: datetime = Field(default_factory=_utcnow)

    @field_validator("scheduled_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def next_attempt(self, scheduled_at: datetime) -> "DeliveryMessage":
        return self.model_copy(update={"attempt": self.attempt + 1, "scheduled_at": scheduled_at})


# ---------------------------------------------------------------------------
# API schemas
# ---------------------------------------------------------------------------

class SubscriptionCreate(BaseModel):
    event_type: EventType
    channel: DeliveryChannel = DeliveryChannel.WEBHOOK
    target: str = Field(min_length=1, max_length=500)
    secret: str = Field(min_length=16, max_length=255)

    @field_validator("target")
    @classmethod
    def _check_target(cls, value: str, info) -> str:
        if info.data.get("channel", DeliveryChannel.WEBHOOK) == DeliveryChannel.WEBHOOK:
            url = _HTTP_URL.validate_python(value)
            if url.scheme != "https" and url.host not in ("localhost", "127.0.0.1"):
                raise ValueError("webhook targets must use https")
        return value


class SubscriptionRead(BaseModel):
    """Subscription as returned by the API. The secret is never included."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: uuid.UUID
    event_type: EventType
    channel: DeliveryChannel
    target: str
    active: bool
    created_at: datetime
    updated_at: datetime


class PublishedEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: EventType
    reference_id: str
    subscription_id: uuid.UUID
    channel: DeliveryChannel
    delivery_status: DeliveryStatus
    delivery_attempts: int
    last_error: str | None = None
    published_at: datetime
    delivered_at: datetime | None = None


class PublishRequest(BaseModel):
    event_type: EventType
    reference_id: str
    payload: dict[str, Scalar] | None = None


class PublishResponse(BaseModel):
    event_ids: list[uuid.UUID]
    published: int


class OtpRequest(BaseModel):
    recipient: str = Field(min_length=3, max_length=255)


class OtpResponse(BaseModel):
    status: str
    message: str
