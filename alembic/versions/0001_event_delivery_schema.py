"""Event delivery schema: subscriptions and published event records.

Revision ID: 0001_event_delivery
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_event_delivery"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(32), nullable=False, server_default="webhook"),
        sa.Column("target", sa.String(500), nullable=False),
        sa.Column("secret", sa.String(255), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("channel IN ('webhook', 'notification')", name="ck_subscriptions_channel"),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
    op.create_index("ix_subscriptions_owner_id", "subscriptions", ["owner_id"])
    op.create_index("ix_subscriptions_event_type_active", "subscriptions", ["event_type", "active"])

    op.create_table(
        "published_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("reference_id", sa.String(100), nullable=False),
        # No foreign key: the record snapshots the subscription at publish time.
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("channel", sa.String(32), nullable=False),
        sa.Column("target", sa.String(500), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("delivery_status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(1000), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "delivery_status IN ('PENDING', 'DELIVERED', 'FAILED')",
            name="ck_published_events_status",
        ),
        sa.CheckConstraint("delivery_attempts >= 0", name="ck_published_events_attempts"),
    )
    op.create_index("ix_published_events_id", "published_events", ["id"])
    op.create_index("ix_published_events_reference_id", "published_events", ["reference_id"])
    op.create_index("ix_published_events_subscription_id", "published_events", ["subscription_id"])
    op.create_index(
        "ix_published_events_status_updated",
        "published_events",
        ["delivery_status", "updated_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_published_events_status_updated", table_name="published_events")
    op.drop_index("ix_published_events_subscription_id", table_name="published_events")
    op.drop_index("ix_published_events_reference_id", table_name="published_events")
    op.drop_index("ix_published_events_id", table_name="published_events")
    op.drop_table("published_events")
    op.drop_index("ix_subscriptions_event_type_active", table_name="subscriptions")
    op.drop_index("ix_subscriptions_owner_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_id", table_name="subscriptions")
    op.drop_table("subscriptions")
