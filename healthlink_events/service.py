"""
Delivery worker process orchestrator.

Coordinates the broker connection, the webhook and notification workers and
the health server. Handles lifecycle: startup, shutdown, signal handling.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Iterable

import structlog

from healthlink_events.core.config import Settings
from healthlink_events.core.database import build_session_factory, dispose_session_factory
from healthlink_events.delivery.notification import (
    HttpPushSink,
    NotificationPreferences,
    NotificationSink,
    NotificationWorker,
)
from healthlink_events.delivery.repository import (
    CachedSubscriptionRepository,
    PublishedEventRepository,
    SqlPublishedEventRepository,
    SqlSubscriptionRepository,
    SubscriptionRepository,
)
from healthlink_events.delivery.webhook import WebhookWorker
from healthlink_events.delivery.worker import DeliveryWorker
from healthlink_events.health import HealthServer
from healthlink_events.messaging.broker import MessageBroker, RabbitBroker
from healthlink_events.metrics import MetricsCollector
from healthlink_events.schemas import DeliveryChannel

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
HEALTH_INTERVAL = 30.0


class DeliveryService:
    """
    Worker process: consumes the delivery queues and reports health.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        channels: Iterable[DeliveryChannel] = tuple(DeliveryChannel),
        broker: MessageBroker | None = None,
        subscriptions: SubscriptionRepository | None = None,
        events: PublishedEventRepository | None = None,
        sink: NotificationSink | None = None,
        preferences: NotificationPreferences | None = None,
    ):
        self._settings = settings
        self._channels = [DeliveryChannel(c) for c in channels]
        self._metrics = MetricsCollector()
        self._broker = broker or RabbitBroker(
            settings.broker_url,
            prefix=settings.queue_prefix,
            max_attempts=settings.delivery_max_attempts,
        )
        self._session_factory = None
        if subscriptions is None or events is None:
            self._session_factory = build_session_factory(settings.database_url, echo=settings.debug)
        self._subscriptions = subscriptions or CachedSubscriptionRepository(
            SqlSubscriptionRepository(self._session_factory),
            ttl_seconds=settings.subscription_cache_ttl_seconds,
        )
        self._events = events or SqlPublishedEventRepository(self._session_factory)
        self._sink = sink
        self._preferences = preferences
        self._health = HealthServer(
            host=settings.health_host,
            port=settings.health_port,
            metrics=self._metrics,
        )
        self._workers: dict[DeliveryChannel, DeliveryWorker] = {}
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def workers(self) -> dict[DeliveryChannel, DeliveryWorker]:
        return dict(self._workers)

    def _build_worker(self, channel: DeliveryChannel) -> DeliveryWorker:
        s = self._settings
        common = dict(
            max_attempts=s.delivery_max_attempts,
            backoff_base_seconds=s.delivery_backoff_base_seconds,
            backoff_max_seconds=s.delivery_backoff_max_seconds,
            schedule_tolerance_seconds=s.delivery_schedule_tolerance_seconds,
            metrics=self._metrics,
        )
        if channel is DeliveryChannel.WEBHOOK:
            return WebhookWorker(
                self._subscriptions,
                self._events,
                self._broker,
                timeout_seconds=s.webhook_timeout_seconds,
                **common,
            )
        sink = self._sink or HttpPushSink(
            s.push_gateway_url,
            api_key=s.push_gateway_api_key,
            timeout_seconds=s.notification_timeout_seconds,
        )
        return NotificationWorker(
            self._subscriptions,
            self._events,
            self._broker,
            sink=sink,
            preferences=self._preferences,
            deadline_seconds=s.notification_timeout_seconds,
            **common,
        )

    def _concurrency(self, channel: DeliveryChannel) -> int:
        if channel is DeliveryChannel.WEBHOOK:
            return self._settings.webhook_concurrency
        return self._settings.notification_concurrency

    async def start(self) -> None:
        """Connect the broker, open the workers and start consuming."""
        log.info("service.starting", channels=[c.value for c in self._channels])

        await self._broker.start()

        if self._settings.metrics_enabled:
            try:
                await self._health.start()
                log.info(
                    "service.health_started",
                    host=self._settings.health_host,
                    port=self._settings.health_port,
                )
            except Exception as exc:
                log.warning("service.health_start_failed", error=str(exc))

        for channel in self._channels:
            worker = self._build_worker(channel)
            await worker.open()
            await self._broker.consume(channel, worker.handle, self._concurrency(channel))
            self._workers[channel] = worker
            self._metrics.set_gauge("consumer_concurrency", self._concurrency(channel), channel=channel)
            log.info("service.consumer_started", channel=channel.value)

        self._running = True
        self._update_health()
        log.info("service.started", consumers=len(self._workers))

    async def stop(self) -> None:
        """Graceful shutdown: stop consuming, close sinks, release connections."""
        if not self._running:
            return
        self._running = False
        log.info("service.stopping")

        await self._broker.close()
        for worker in self._workers.values():
            await worker.close()
        self._workers.clear()

        await self._health.stop()
        if self._session_factory is not None:
            await dispose_session_factory(self._session_factory)
        log.info("service.stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run_forever(self) -> None:
        """Run until shutdown signal."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        await self.start()

        try:
            while not self._shutdown_event.is_set():
                self._update_health()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=HEALTH_INTERVAL)
                except asyncio.TimeoutError:
                    pass
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    def _update_health(self) -> None:
        connected = getattr(self._broker, "is_connected", True)
        self._metrics.set_gauge("broker_connected", 1 if connected else 0)
        self._health.update_status(connected, [c.value for c in self._workers])
