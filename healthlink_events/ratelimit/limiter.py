"""
Role-aware token bucket for the inbound API.

Each principal gets its own bucket sized by role; anonymous callers are keyed
by client address. A decision is a value, never an exception: denial is a
normal outcome that the admission middleware turns into HTTP 429.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass

import structlog

from healthlink_events.core.auth import Principal, Role
from healthlink_events.core.config import DEFAULT_ROLE_LIMITS
from healthlink_events.core.errors import CounterStoreUnavailable
from healthlink_events.ratelimit.store import CounterStore

log = structlog.get_logger()

KEY_PREFIX = "ratelimit"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int = 0
    degraded: bool = False


def identity_key(principal: Principal | None, client_ip: str | None) -> str:
    """``ROLE:principal`` for authenticated callers, ``ANONYMOUS:ip`` otherwise."""
    if principal is not None:
        return f"{principal.role.value}:{principal.id}"
    return f"{Role.ANONYMOUS.value}:{client_ip or 'unknown'}"


class TokenBucketLimiter:
    def __init__(
        self,
        store: CounterStore,
        role_limits: dict[str, int],
        *,
        window_seconds: int = 60,
        store_timeout_ms: int = 250,
        fail_open: bool = False,
    ):
        bad = sorted(role for role, limit in role_limits.items() if limit <= 0)
        if bad:
            raise ValueError(f"rate limits must be positive: {', '.join(bad)}")
        self._store = store
        self._limits = dict(role_limits)
        self._anonymous_limit = self._limits.get(
            Role.ANONYMOUS.value, DEFAULT_ROLE_LIMITS[Role.ANONYMOUS.value]
        )
        self._window_ms = window_seconds * 1000
        self._timeout = store_timeout_ms / 1000
        self._fail_open = fail_open

    def capacity_for(self, role: Role | str) -> int:
        role = Role(role).value
        return self._limits.get(role, self._anonymous_limit)

    async def try_consume(self, key: str, role: Role | str, cost: int = 1) -> RateLimitDecision:
        capacity = self.capacity_for(role)
        interval_ms = self._window_ms / capacity
        try:
            result = await asyncio.wait_for(
                self._store.consume_token(f"{KEY_PREFIX}:{key}", capacity, interval_ms, cost),
                timeout=self._timeout,
            )
        except (CounterStoreUnavailable, asyncio.TimeoutError) as exc:
            log.warning(
                "ratelimit.store_unavailable",
                error=str(exc) or type(exc).__name__,
                fail_open=self._fail_open,
            )
            if self._fail_open:
                return RateLimitDecision(True, capacity, 0, degraded=True)
            return RateLimitDecision(
                False, capacity, 0,
                retry_after_seconds=max(1, math.ceil(interval_ms / 1000)),
                degraded=True,
            )

        return RateLimitDecision(
            allowed=result.allowed,
            limit=capacity,
            remaining=result.remaining,
            retry_after_seconds=math.ceil(result.retry_after_ms / 1000) if not result.allowed else 0,
        )
