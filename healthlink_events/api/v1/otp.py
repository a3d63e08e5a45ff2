"""
One-time-password issuance.

- POST /request   Ask for a code to be sent to an email address or phone number

The ceiling is checked before any account lookup, and the response body has
the same shape whether the recipient exists, is throttled, or is unknown.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog
from fastapi import APIRouter, Depends, Request, Response

from healthlink_events.api.deps import get_otp_limiter
from healthlink_events.ratelimit.otp import OtpRateLimiter
from healthlink_events.schemas import OtpRequest, OtpResponse

log = structlog.get_logger()

router = APIRouter()

OtpIssuer = Callable[[str], Awaitable[None]]

ACCEPTED_MESSAGE = "If the recipient is registered, a verification code has been sent."
THROTTLED_MESSAGE = "Too many verification requests. Please try again later."


@router.post("/request", response_model=OtpResponse)
async def request_otp(
    body: OtpRequest,
    request: Request,
    response: Response,
    limiter: OtpRateLimiter = Depends(get_otp_limiter),
):
    result = await limiter.consume(body.recipient)
    if not result.allowed:
        response.headers["Retry-After"] = str(result.retry_after_seconds)
        return OtpResponse(status="throttled", message=THROTTLED_MESSAGE)

    issuer: OtpIssuer | None = getattr(request.app.state, "otp_issuer", None)
    if issuer is not None:
        try:
            await issuer(body.recipient)
        except Exception:
            # Issuance failures must not reveal whether the recipient exists.
            log.exception("otp.issue_failed")
    return OtpResponse(status="accepted", message=ACCEPTED_MESSAGE)
