"""Published event record: delivery tracking for one (event, subscription) pair."""

import uuid
from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlmodel import Field

from healthlink_events.models.base import TimestampMixin, UUIDMixin, utcnow

LAST_ERROR_MAX_LENGTH = 1000


class PublishedEvent(UUIDMixin, TimestampMixin, table=True):
    __tablename__ = "published_events"
    __table_args__ = (
        sa.Index("ix_published_events_status_updated", "delivery_status", "updated_at"),
    )

    event_type: str = Field(sa_type=sa.String(64), nullable=False)
    reference_id: str = Field(sa_type=sa.String(100), nullable=False, index=True)
    subscription_id: uuid.UUID = Field(nullable=False, index=True)
    channel: str = Field(sa_type=sa.String(32), nullable=False)
    # Snapshot of the subscription target at publish time
    target: str = Field(sa_type=sa.String(500), nullable=False)
    payload: dict[str, Any] = Field(default_factory=dict, sa_type=sa.JSON, nullable=False)
    delivery_status: str = Field(default="PENDING", sa_type=sa.String(16), nullable=False)
    delivery_attempts: int = Field(default=0, nullable=False)
    last_error: Optional[str] = Field(default=None, sa_type=sa.String(LAST_ERROR_MAX_LENGTH))
    published_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    delivered_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
