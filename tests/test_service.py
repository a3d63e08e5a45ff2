"""Tests for the worker process: service lifecycle, health server and CLI."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from aiohttp import test_utils

from healthlink_events.core.config import Settings
from healthlink_events.delivery.notification import NotificationWorker
from healthlink_events.health import HealthServer
from healthlink_events.metrics import MetricsCollector
from healthlink_events.schemas import DeliveryChannel, DeliveryStatus, EventType
from healthlink_events.service import DeliveryService
from healthlink_events.worker import build_parser, run


async def wait_for_status(events, event_id, status: DeliveryStatus, timeout: float = 2.0):
    async def _poll():
        while (await events.get(event_id)).delivery_status != status.value:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


class TestDeliveryService:
    async def test_consumes_and_delivers_notifications(
        self, subscriptions, events, broker, publisher, make_subscription
    ):
        sink = AsyncMock()
        service = DeliveryService(
            Settings(metrics_enabled=False),
            channels=[DeliveryChannel.NOTIFICATION],
            broker=broker,
            subscriptions=subscriptions,
            events=events,
            sink=sink,
        )
        await make_subscription(EventType.PRESCRIPTION_CREATED, channel=DeliveryChannel.NOTIFICATION)

        await service.start()
        try:
            assert isinstance(service.workers[DeliveryChannel.NOTIFICATION], NotificationWorker)
            assert service.metrics.get("broker_connected") == 1

            result = await publisher.publish(EventType.PRESCRIPTION_CREATED, "rx-31")
            await wait_for_status(events, result.event_ids[0], DeliveryStatus.DELIVERED)
        finally:
            await service.stop()

        sink.send.assert_awaited_once()
        assert service.metrics.get("deliveries_succeeded_total", channel="notification") == 1
        assert service.metrics.get("consumer_concurrency", channel="notification") == 8
        assert service.workers == {}

    async def test_stop_without_start_is_a_noop(self, subscriptions, events, broker):
        service = DeliveryService(Settings(), broker=broker, subscriptions=subscriptions, events=events)
        await service.stop()

    async def test_run_forever_exits_on_shutdown_request(self, subscriptions, events, broker):
        service = DeliveryService(
            Settings(metrics_enabled=False),
            channels=[DeliveryChannel.NOTIFICATION],
            broker=broker,
            subscriptions=subscriptions,
            events=events,
            sink=AsyncMock(),
        )
        task = asyncio.create_task(service.run_forever())
        await asyncio.sleep(0.05)
        service.request_shutdown()
        await asyncio.wait_for(task, timeout=2)


class TestHealthServer:
    async def test_healthy_when_connected_with_consumers(self):
        server = HealthServer(metrics=MetricsCollector())
        server.update_status(True, ["webhook"])
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()
            assert body == {"status": "healthy", "broker_connected": True, "consumers": ["webhook"]}

    async def test_degraded_without_broker(self):
        server = HealthServer()
        server.update_status(False, ["webhook"])
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            resp = await client.get("/health")
            assert resp.status == 503
            assert (await resp.json())["status"] == "degraded"

    async def test_metrics_endpoint(self):
        metrics = MetricsCollector()
        metrics.inc("deliveries_failed_total", 2, channel="webhook")
        server = HealthServer(metrics=metrics)
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            resp = await client.get("/metrics")
            assert resp.status == 200
            assert 'healthlink_deliveries_failed_total{channel="webhook"} 2' in await resp.text()


class TestCli:
    def test_parser_defaults(self):
        args = build_parser().parse_args([])
        assert args.config is None
        assert args.channel is None

    def test_parser_channels(self):
        args = build_parser().parse_args(["-c", "worker.yaml", "--channel", "webhook", "--channel", "notification"])
        assert args.config == "worker.yaml"
        assert args.channel == ["webhook", "notification"]

    def test_parser_rejects_unknown_channel(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--channel", "sms"])

    def test_missing_config_exits(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            run(["--config", "/nonexistent/worker.yaml"])
        assert exc_info.value.code == 1
        assert "Config file not found" in capsys.readouterr().err
