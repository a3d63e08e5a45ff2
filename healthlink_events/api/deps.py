"""Request-scoped accessors for the collaborators wired onto ``app.state``."""

from __future__ import annotations

from fastapi import HTTPException, Request

from healthlink_events.delivery.publisher import EventPublisher
from healthlink_events.delivery.repository import PublishedEventRepository, SubscriptionRepository
from healthlink_events.ratelimit.otp import OtpRateLimiter


def get_subscriptions(request: Request) -> SubscriptionRepository:
    return request.app.state.subscriptions


def get_events(request: Request) -> PublishedEventRepository:
    return request.app.state.events


def get_publisher(request: Request) -> EventPublisher:
    publisher = getattr(request.app.state, "publisher", None)
    if publisher is None:
        raise HTTPException(status_code=503, detail="Event publishing is not available")
    return publisher


def get_otp_limiter(request: Request) -> OtpRateLimiter:
    limiter = getattr(request.app.state, "otp_limiter", None)
    if limiter is None:
        raise HTTPException(status_code=503, detail="OTP issuance is not available")
    return limiter
