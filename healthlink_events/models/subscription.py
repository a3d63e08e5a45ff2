"""Subscription model: one external consumer of one event type."""

import uuid

import sqlalchemy as sa
from sqlmodel import Field

from healthlink_events.models.base import TimestampMixin, UUIDMixin


class Subscription(UUIDMixin, TimestampMixin, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        sa.Index("ix_subscriptions_event_type_active", "event_type", "active"),
    )

    owner_id: uuid.UUID = Field(nullable=False, index=True)
    event_type: str = Field(sa_type=sa.String(64), nullable=False)
    channel: str = Field(default="webhook", sa_type=sa.String(32), nullable=False)  # webhook | notification
    target: str = Field(sa_type=sa.String(500), nullable=False)
    # HMAC signing key; never serialized by the API
    secret: str = Field(sa_type=sa.String(255), nullable=False)
    active: bool = Field(default=True, nullable=False)
