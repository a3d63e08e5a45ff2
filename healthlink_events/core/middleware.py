"""
HTTP middleware: security headers and role-aware admission control.
"""

from __future__ import annotations

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from healthlink_events.core.auth import Role, resolve_principal
from healthlink_events.ratelimit.limiter import identity_key

log = structlog.get_logger()

# ---------------------------------------------------------------------------
# Security Headers
# ---------------------------------------------------------------------------

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach security headers to every response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        return response


# ---------------------------------------------------------------------------
# Admission control
# ---------------------------------------------------------------------------

EXEMPT_PATHS = frozenset({"/health", "/ready", "/docs", "/openapi.json", "/redoc"})


def client_ip(request: Request, *, trust_forwarded: bool = True) -> str | None:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else None


def rate_limited_response(retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        headers={"Retry-After": str(retry_after)},
        content={
            "error": {
                "code": "RATE_LIMITED",
                "message": "Too many requests. Please retry later.",
                "status": 429,
            }
        },
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Token-bucket admission check ahead of every route.

    The limiter lives on ``app.state.rate_limiter``; when it is unset the
    middleware is a pass-through. Exempt paths never touch the counter store.
    """

    def __init__(self, app, *, trust_forwarded_headers: bool = True):
        super().__init__(app)
        self.trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next) -> Response:
        limiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        principal = resolve_principal(request)
        ip = client_ip(request, trust_forwarded=self.trust_forwarded_headers)
        role = principal.role if principal else Role.ANONYMOUS
        decision = await limiter.try_consume(identity_key(principal, ip), role)

        if not decision.allowed:
            log.info(
                "ratelimit.denied",
                role=role.value,
                path=request.url.path,
                degraded=decision.degraded,
            )
            return rate_limited_response(max(1, decision.retry_after_seconds))

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
