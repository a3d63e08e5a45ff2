"""Tests for the Redis counter store scripts, run against fakeredis with Lua support."""

from __future__ import annotations

import asyncio

import fakeredis
import pytest

from healthlink_events.core.auth import Role
from healthlink_events.core.errors import CounterStoreUnavailable
from healthlink_events.ratelimit.limiter import TokenBucketLimiter
from healthlink_events.ratelimit.otp import OtpRateLimiter
from healthlink_events.ratelimit.store import RedisCounterStore


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
async def client(server):
    client = fakeredis.FakeAsyncRedis(server=server)
    yield client
    await client.aclose()


@pytest.fixture
def store(client) -> RedisCounterStore:
    return RedisCounterStore(client)


class TestTokenScript:
    async def test_capacity_then_denied(self, store: RedisCounterStore):
        results = [await store.consume_token("ratelimit:ANONYMOUS:10.0.0.1", 3, 20_000) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results[:3]] == [2, 1, 0]
        assert 0 < results[3].retry_after_ms <= 20_000

    async def test_denial_does_not_consume(self, store: RedisCounterStore, client):
        await store.consume_token("ratelimit:k", 1, 20_000)
        tat = await client.get("ratelimit:k")

        assert not (await store.consume_token("ratelimit:k", 1, 20_000)).allowed
        assert await client.get("ratelimit:k") == tat

    async def test_key_expires_with_the_bucket(self, store: RedisCounterStore, client):
        await store.consume_token("ratelimit:k", 3, 20_000)
        ttl = await client.pttl("ratelimit:k")
        assert 0 < ttl <= 20_000

    async def test_refills_after_interval(self, store: RedisCounterStore):
        for _ in range(2):
            assert (await store.consume_token("ratelimit:k", 2, 100)).allowed
        assert not (await store.consume_token("ratelimit:k", 2, 100)).allowed

        await asyncio.sleep(0.15)
        assert (await store.consume_token("ratelimit:k", 2, 100)).allowed

    async def test_limiter_over_redis_admits_capacity_only(self, store: RedisCounterStore):
        limiter = TokenBucketLimiter(store, {"ANONYMOUS": 3}, window_seconds=60)
        decisions = [await limiter.try_consume("ANONYMOUS:203.0.113.7", Role.ANONYMOUS) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert decisions[3].retry_after_seconds == 20


class TestWindowScript:
    async def test_counts_within_window(self, store: RedisCounterStore, client):
        hits = [await store.hit_window("otp_rate:abc", 3_600_000) for _ in range(6)]

        assert [h.count for h in hits] == [1, 2, 3, 4, 5, 6]
        assert all(0 < h.reset_after_ms <= 3_600_000 for h in hits)
        assert 0 < await client.pttl("otp_rate:abc") <= 3_600_000

    async def test_window_does_not_slide(self, store: RedisCounterStore):
        first = await store.hit_window("otp_rate:abc", 200)
        await asyncio.sleep(0.05)
        second = await store.hit_window("otp_rate:abc", 200)
        assert second.reset_after_ms <= first.reset_after_ms

    async def test_window_reopens_after_expiry(self, store: RedisCounterStore):
        for _ in range(3):
            await store.hit_window("otp_rate:abc", 50)
        await asyncio.sleep(0.1)
        assert (await store.hit_window("otp_rate:abc", 50)).count == 1

    async def test_otp_ceiling_over_redis(self, store: RedisCounterStore):
        otp = OtpRateLimiter(store, max_requests=5, window_seconds=3600)
        results = [await otp.consume("+92 300 1234567") for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert results[5].retry_after_seconds > 0


class TestUnavailable:
    async def test_disconnected_server_raises_store_unavailable(self, store: RedisCounterStore, server):
        server.connected = False

        with pytest.raises(CounterStoreUnavailable):
            await store.consume_token("ratelimit:k", 3, 20_000)
        with pytest.raises(CounterStoreUnavailable):
            await store.hit_window("otp_rate:abc", 1000)

    async def test_limiter_fails_closed_when_redis_is_down(self, store: RedisCounterStore, server):
        server.connected = False
        limiter = TokenBucketLimiter(store, {"ANONYMOUS": 3})

        decision = await limiter.try_consume("ANONYMOUS:203.0.113.7", Role.ANONYMOUS)

        assert decision.allowed is False
        assert decision.degraded is True
