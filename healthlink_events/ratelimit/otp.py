"""
Per-recipient ceiling on one-time-password issuance.

The recipient (email address or phone number) is normalized and hashed before
it becomes part of a Redis key, so no contact detail is ever stored in the
counter store.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from dataclasses import dataclass

import structlog

from healthlink_events.core.errors import CounterStoreUnavailable
from healthlink_events.ratelimit.store import CounterStore

log = structlog.get_logger()

KEY_PREFIX = "otp_rate"
_PHONE_PUNCTUATION = re.compile(r"[\s\-().]")


@dataclass(frozen=True)
class OtpRateLimitResult:
    allowed: bool
    remaining_attempts: int
    retry_after_seconds: int


def normalize_recipient(recipient: str) -> str:
    value = recipient.strip().lower()
    if "@" not in value:
        value = _PHONE_PUNCTUATION.sub("", value)
    return value


def recipient_key(recipient: str) -> str:
    digest = hashlib.sha256(normalize_recipient(recipient).encode()).hexdigest()
    return f"{KEY_PREFIX}:{digest}"


class OtpRateLimiter:
    def __init__(
        self,
        store: CounterStore,
        *,
        max_requests: int = 5,
        window_seconds: int = 3600,
        store_timeout_ms: int = 250,
        fail_open: bool = False,
    ):
        self._store = store
        self.max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._timeout = store_timeout_ms / 1000
        self._fail_open = fail_open

    async def consume(self, recipient: str) -> OtpRateLimitResult:
        if not recipient or not recipient.strip():
            raise ValueError("recipient must not be empty")

        try:
            hit = await asyncio.wait_for(
                self._store.hit_window(recipient_key(recipient), self._window_ms),
                timeout=self._timeout,
            )
        except (CounterStoreUnavailable, asyncio.TimeoutError) as exc:
            log.warning(
                "otp_ratelimit.store_unavailable",
                error=str(exc) or type(exc).__name__,
                fail_open=self._fail_open,
            )
            if self._fail_open:
                return OtpRateLimitResult(True, 0, 0)
            return OtpRateLimitResult(False, 0, math.ceil(self._window_ms / 1000))

        if hit.count > self.max_requests:
            log.info("otp_ratelimit.denied", count=hit.count)
            return OtpRateLimitResult(False, 0, max(1, math.ceil(hit.reset_after_ms / 1000)))
        return OtpRateLimitResult(True, self.max_requests - hit.count, 0)
