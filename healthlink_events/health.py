"""
Health and metrics HTTP server for the delivery worker process.

Exposes:
- GET /health: JSON status of the broker connection and consumers
- GET /metrics: Prometheus-compatible metrics
"""

from __future__ import annotations

from aiohttp import web

from .metrics import MetricsCollector


class HealthServer:
    """Lightweight HTTP server for health checks and metrics."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9090,
        metrics: MetricsCollector | None = None,
    ):
        self._host = host
        self._port = port
        self._metrics = metrics or MetricsCollector()
        self._broker_connected = False
        self._consumers: list[str] = []
        self._runner: web.AppRunner | None = None

    def update_status(self, broker_connected: bool, consumers: list[str]) -> None:
        self._broker_connected = broker_connected
        self._consumers = list(consumers)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        healthy = self._broker_connected and bool(self._consumers)
        body = {
            "status": "healthy" if healthy else "degraded",
            "broker_connected": self._broker_connected,
            "consumers": self._consumers,
        }
        return web.json_response(body, status=200 if healthy else 503)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
