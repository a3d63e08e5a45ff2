"""
HealthLink event delivery API

Entry point for the FastAPI application: subscription management, the
operator event view, OTP issuance and the internal publish endpoint, all
behind role-aware admission control.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from healthlink_events.api.v1 import router as api_v1_router
from healthlink_events.core.config import Settings, get_settings
from healthlink_events.core.database import close_db
from healthlink_events.core.logging import configure_logging
from healthlink_events.core.middleware import RateLimitMiddleware, SecurityHeadersMiddleware
from healthlink_events.core.redis import close_redis, get_redis
from healthlink_events.delivery.publisher import EventPublisher
from healthlink_events.delivery.repository import (
    CachedSubscriptionRepository,
    PublishedEventRepository,
    SqlPublishedEventRepository,
    SqlSubscriptionRepository,
    SubscriptionRepository,
)
from healthlink_events.messaging.broker import MessageBroker, RabbitBroker
from healthlink_events.ratelimit.limiter import TokenBucketLimiter
from healthlink_events.ratelimit.otp import OtpRateLimiter
from healthlink_events.ratelimit.store import RedisCounterStore

log = structlog.get_logger()


def create_app(
    settings: Settings | None = None,
    *,
    subscriptions: SubscriptionRepository | None = None,
    events: PublishedEventRepository | None = None,
    broker: MessageBroker | None = None,
    rate_limiter: TokenBucketLimiter | None = None,
    otp_limiter: OtpRateLimiter | None = None,
    otp_issuer=None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators that are not passed in are built from ``settings`` on
    startup (RabbitMQ broker, Redis-backed limiters).
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="HealthLink Event Delivery",
        description="Signed webhook and notification delivery with admission control.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.state.settings = settings
    app.state.subscriptions = subscriptions or CachedSubscriptionRepository(
        SqlSubscriptionRepository(),
        ttl_seconds=settings.subscription_cache_ttl_seconds,
    )
    app.state.events = events or SqlPublishedEventRepository()
    app.state.broker = broker
    app.state.publisher = (
        EventPublisher(app.state.subscriptions, app.state.events, broker) if broker else None
    )
    app.state.rate_limiter = rate_limiter
    app.state.otp_limiter = otp_limiter
    app.state.otp_issuer = otp_issuer

    # Middleware (last added runs first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        trust_forwarded_headers=settings.trust_forwarded_headers,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check endpoint for startup probes."""
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        configure_logging(settings.log_level, settings.log_format)
        if app.state.broker is None:
            app.state.broker = RabbitBroker(
                settings.broker_url,
                prefix=settings.queue_prefix,
                max_attempts=settings.delivery_max_attempts,
            )
            await app.state.broker.start()
            app.state.publisher = EventPublisher(
                app.state.subscriptions, app.state.events, app.state.broker
            )

        needs_limiter = settings.ratelimit_enabled and app.state.rate_limiter is None
        if needs_limiter or app.state.otp_limiter is None:
            store = RedisCounterStore(await get_redis())
            if needs_limiter:
                app.state.rate_limiter = TokenBucketLimiter(
                    store,
                    settings.ratelimit_role_limits,
                    window_seconds=settings.ratelimit_window_seconds,
                    store_timeout_ms=settings.ratelimit_store_timeout_ms,
                    fail_open=settings.ratelimit_fail_open,
                )
            if app.state.otp_limiter is None:
                app.state.otp_limiter = OtpRateLimiter(
                    store,
                    max_requests=settings.otp_max_requests,
                    window_seconds=settings.otp_window_seconds,
                    store_timeout_ms=settings.ratelimit_store_timeout_ms,
                    fail_open=settings.otp_fail_open,
                )
        log.info("api.starting", ratelimit=settings.ratelimit_enabled)

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("api.shutting_down")
        if app.state.broker is not None:
            await app.state.broker.close()
        await close_redis()
        await close_db()

    return app


app = create_app()


def serve() -> None:
    """CLI entry point: run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "healthlink_events.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level,
    )
