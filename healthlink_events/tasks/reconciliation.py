"""
ARQ background task: re-drive published event records stuck in PENDING.

A record can be left PENDING without a queue message when the enqueue after
its insert failed, or when a retry message was lost. Records untouched for
``reconcile_after_seconds`` are re-enqueued with the next attempt number, or
marked FAILED when their attempts are already exhausted.

Scheduled every 5 minutes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from arq import cron
from arq.connections import RedisSettings

from healthlink_events.core.config import get_settings
from healthlink_events.core.database import close_db
from healthlink_events.core.errors import SignatureError
from healthlink_events.core.logging import configure_logging
from healthlink_events.delivery.publisher import delivery_message_for
from healthlink_events.delivery.repository import (
    PublishedEventRepository,
    SqlPublishedEventRepository,
    SqlSubscriptionRepository,
    SubscriptionRepository,
)
from healthlink_events.messaging.broker import MessageBroker, RabbitBroker
from healthlink_events.models.base import utcnow

log = structlog.get_logger()


@dataclass
class ReconcileReport:
    requeued: int = 0
    failed: int = 0
    skipped: int = 0


async def reconcile(
    subscriptions: SubscriptionRepository,
    events: PublishedEventRepository,
    broker: MessageBroker,
    *,
    max_attempts: int,
    stale_after_seconds: int,
    batch_size: int = 200,
    clock: Callable[[], datetime] = utcnow,
) -> ReconcileReport:
    """Re-enqueue or fail every stale PENDING record in one batch."""
    now = clock()
    report = ReconcileReport()
    stale = await events.list_stale_pending(now - timedelta(seconds=stale_after_seconds), batch_size)

    for record in stale:
        if record.delivery_attempts >= max_attempts:
            if await events.mark_failed(record.id, "attempts exhausted without a final outcome"):
                report.failed += 1
            continue

        subscription = await subscriptions.get(record.subscription_id)
        if subscription is None or not subscription.active:
            if await events.mark_failed(record.id, "subscription is inactive"):
                report.failed += 1
            continue

        try:
            message = delivery_message_for(
                record,
                subscription.secret,
                attempt=record.delivery_attempts + 1,
                scheduled_at=now,
            )
        except SignatureError as exc:
            if await events.mark_failed(record.id, exc.reason):
                report.failed += 1
            continue

        # Claim the record first so an overlapping sweep skips it.
        if not await events.touch(record.id):
            report.skipped += 1
            continue
        await broker.publish(message)
        report.requeued += 1
        log.info(
            "reconciliation.requeued",
            event_id=str(record.id),
            attempt=message.attempt,
        )

    return report


async def reconcile_pending_deliveries(ctx: dict) -> int:
    """ARQ entry point. Returns the number of records re-enqueued or failed."""
    settings = get_settings()
    report = await reconcile(
        ctx["subscriptions"],
        ctx["events"],
        ctx["broker"],
        max_attempts=settings.delivery_max_attempts,
        stale_after_seconds=settings.reconcile_after_seconds,
        batch_size=settings.reconcile_batch_size,
    )
    if report.requeued or report.failed:
        log.info(
            "reconciliation.batch_finished",
            requeued=report.requeued,
            failed=report.failed,
            skipped=report.skipped,
        )
    return report.requeued + report.failed


async def startup(ctx: dict) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    broker = RabbitBroker(
        settings.broker_url,
        prefix=settings.queue_prefix,
        max_attempts=settings.delivery_max_attempts,
    )
    await broker.start()
    ctx["broker"] = broker
    ctx["subscriptions"] = SqlSubscriptionRepository()
    ctx["events"] = SqlPublishedEventRepository()


async def shutdown(ctx: dict) -> None:
    broker = ctx.get("broker")
    if broker is not None:
        await broker.close()
    await close_db()


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [reconcile_pending_deliveries]
    cron_jobs = [
        cron(reconcile_pending_deliveries, minute=set(range(0, 60, 5)), run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
