"""
Shared counter store for admission control.

Two primitives, each a single atomic round trip:

- ``consume_token``: GCRA token bucket. The stored value is the bucket's
  theoretical arrival time (TAT) in milliseconds; refill is continuous at one
  token per ``interval_ms``.
- ``hit_window``: fixed window counter opened by the first hit.

The Redis implementation runs both as Lua scripts against the server clock so
that every API replica shares one notion of "now".
"""

from __future__ import annotations

import abc
import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as redis
from redis.exceptions import RedisError

from healthlink_events.core.errors import CounterStoreUnavailable


@dataclass(frozen=True)
class TokenResult:
    allowed: bool
    remaining: int
    retry_after_ms: int


@dataclass(frozen=True)
class WindowHit:
    count: int
    reset_after_ms: int


class CounterStore(abc.ABC):
    @abc.abstractmethod
    async def consume_token(self, key: str, capacity: int, interval_ms: float, cost: int = 1) -> TokenResult:
        ...

    @abc.abstractmethod
    async def hit_window(self, key: str, window_ms: int) -> WindowHit:
        ...


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

GCRA_SCRIPT = """
local capacity = tonumber(ARGV[1])
local interval = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local t = redis.call('TIME')
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
local tat = tonumber(redis.call('GET', KEYS[1]))
if not tat or tat < now then
  tat = now
end
local new_tat = tat + interval * cost
local allow_at = new_tat - interval * capacity
if allow_at > now then
  return {0, 0, math.ceil(allow_at - now)}
end
redis.call('SET', KEYS[1], tostring(new_tat), 'PX', math.max(1, math.ceil(new_tat - now)))
return {1, math.floor((now - allow_at) / interval), 0}
"""

WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if count == 1 or ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


class RedisCounterStore(CounterStore):
    def __init__(self, client: redis.Redis):
        self._client = client
        self._gcra = client.register_script(GCRA_SCRIPT)
        self._window = client.register_script(WINDOW_SCRIPT)

    async def consume_token(self, key: str, capacity: int, interval_ms: float, cost: int = 1) -> TokenResult:
        try:
            allowed, remaining, retry_after = await self._gcra(
                keys=[key], args=[capacity, interval_ms, cost]
            )
        except RedisError as exc:
            raise CounterStoreUnavailable(str(exc)) from exc
        return TokenResult(bool(int(allowed)), int(remaining), int(retry_after))

    async def hit_window(self, key: str, window_ms: int) -> WindowHit:
        try:
            count, ttl = await self._window(keys=[key], args=[window_ms])
        except RedisError as exc:
            raise CounterStoreUnavailable(str(exc)) from exc
        return WindowHit(int(count), int(ttl))


# ---------------------------------------------------------------------------
# In-memory (tests, single-process development)
# ---------------------------------------------------------------------------

class InMemoryCounterStore(CounterStore):
    """Same semantics as the Redis store, serialized by one asyncio lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tat: dict[str, float] = {}
        self._windows: dict[str, tuple[int, float]] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def consume_token(self, key: str, capacity: int, interval_ms: float, cost: int = 1) -> TokenResult:
        async with self._lock:
            now = self._now_ms()
            tat = max(self._tat.get(key, now), now)
            new_tat = tat + interval_ms * cost
            allow_at = new_tat - interval_ms * capacity
            if allow_at > now:
                return TokenResult(False, 0, math.ceil(allow_at - now))
            self._tat[key] = new_tat
            return TokenResult(True, math.floor((now - allow_at) / interval_ms), 0)

    async def hit_window(self, key: str, window_ms: int) -> WindowHit:
        async with self._lock:
            now = self._now_ms()
            count, expires_at = self._windows.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window_ms
            count += 1
            self._windows[key] = (count, expires_at)
            return WindowHit(count, math.ceil(expires_at - now))
