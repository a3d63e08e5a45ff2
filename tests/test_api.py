"""
HTTP API tests: system endpoints, admission control, subscriptions,
the event view, internal publishing and OTP issuance.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from healthlink_events.api.v1.otp import ACCEPTED_MESSAGE, THROTTLED_MESSAGE
from healthlink_events.core.auth import Role, create_jwt
from healthlink_events.core.config import Settings
from healthlink_events.main import create_app
from healthlink_events.ratelimit.limiter import TokenBucketLimiter
from healthlink_events.ratelimit.otp import OtpRateLimiter
from healthlink_events.ratelimit.store import InMemoryCounterStore
from healthlink_events.schemas import EventType

from .conftest import SECRET, FakeMonotonic
from .test_publisher import FailingBroker
from .test_rate_limiter import BrokenStore

GENEROUS_LIMITS = {role.value: 1000 for role in Role}


def bearer(role: Role, principal_id: uuid.UUID | None = None) -> dict[str, str]:
    token = create_jwt(principal_id or uuid.uuid4(), role)
    return {"Authorization": f"Bearer {token}"}


def subscription_body(**overrides) -> dict:
    body = {
        "event_type": "PAYMENT_VERIFIED",
        "channel": "webhook",
        "target": "https://hooks.example.com/payments",
        "secret": SECRET,
    }
    body.update(overrides)
    return body


@pytest.fixture
async def make_client(subscriptions, events, broker):
    clients: list[AsyncClient] = []

    async def _make(*, limits=None, store=None, otp_issuer=None, **overrides) -> AsyncClient:
        ticks = FakeMonotonic()
        limiter = TokenBucketLimiter(store or InMemoryCounterStore(clock=ticks), limits or GENEROUS_LIMITS)
        otp_limiter = OtpRateLimiter(InMemoryCounterStore(clock=ticks), max_requests=5, window_seconds=3600)
        kwargs = dict(
            subscriptions=subscriptions,
            events=events,
            broker=broker,
            rate_limiter=limiter,
            otp_limiter=otp_limiter,
            otp_issuer=otp_issuer,
        )
        kwargs.update(overrides)
        app = create_app(Settings(), **kwargs)
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
async def client(make_client) -> AsyncClient:
    return await make_client()


# ---------------------------------------------------------------------------
# System endpoints
# ---------------------------------------------------------------------------


class TestSystem:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    async def test_ready(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    async def test_api_root(self, client: AsyncClient):
        response = await client.get("/api/v1/")
        assert response.status_code == 200
        data = response.json()
        assert data["api"] == "v1"
        assert "/otp/request" in data["endpoints"]

    async def test_security_headers(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"


# ---------------------------------------------------------------------------
# Admission control
# ---------------------------------------------------------------------------


class TestAdmission:
    async def test_anonymous_bucket_exhausts(self, make_client):
        client = await make_client(limits={"ANONYMOUS": 3})

        for remaining in (2, 1, 0):
            response = await client.get("/api/v1/")
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Limit"] == "3"
            assert response.headers["X-RateLimit-Remaining"] == str(remaining)

        response = await client.get("/api/v1/")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "20"
        assert response.json() == {
            "error": {
                "code": "RATE_LIMITED",
                "message": "Too many requests. Please retry later.",
                "status": 429,
            }
        }

    async def test_probes_are_exempt(self, make_client):
        client = await make_client(limits={"ANONYMOUS": 1})
        for _ in range(5):
            assert (await client.get("/health")).status_code == 200
            assert (await client.get("/ready")).status_code == 200

    async def test_forwarded_addresses_get_separate_buckets(self, make_client):
        client = await make_client(limits={"ANONYMOUS": 2})
        first = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        second = {"X-Forwarded-For": "198.51.100.4"}

        assert (await client.get("/api/v1/", headers=first)).status_code == 200
        assert (await client.get("/api/v1/", headers=first)).status_code == 200
        assert (await client.get("/api/v1/", headers=first)).status_code == 429
        assert (await client.get("/api/v1/", headers=second)).status_code == 200

    async def test_principals_are_bucketed_by_identity_and_role(self, make_client):
        client = await make_client(limits={"ANONYMOUS": 1, "DOCTOR": 2})
        alice = bearer(Role.DOCTOR)
        bob = bearer(Role.DOCTOR)

        assert (await client.get("/api/v1/", headers=alice)).headers["X-RateLimit-Limit"] == "2"
        assert (await client.get("/api/v1/", headers=alice)).status_code == 200
        assert (await client.get("/api/v1/", headers=alice)).status_code == 429
        assert (await client.get("/api/v1/", headers=bob)).status_code == 200

    async def test_partial_role_limits_keep_anonymous_default(self, make_client):
        limits = Settings(ratelimit_role_limits={"PATIENT": 10}).ratelimit_role_limits
        client = await make_client(limits=limits)

        anonymous = await client.get("/api/v1/")
        assert anonymous.status_code == 200
        assert anonymous.headers["X-RateLimit-Limit"] == "20"

        patient = await client.get("/api/v1/", headers=bearer(Role.PATIENT))
        assert patient.headers["X-RateLimit-Limit"] == "10"

    async def test_limiter_without_anonymous_entry_still_admits(self, make_client):
        client = await make_client(limits={"PATIENT": 10})
        response = await client.get("/api/v1/")
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "20"

    async def test_unavailable_store_fails_closed(self, make_client):
        client = await make_client(store=BrokenStore())
        response = await client.get("/api/v1/")
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1

    async def test_no_limiter_passes_through(self, make_client):
        client = await make_client(rate_limiter=None)
        response = await client.get("/api/v1/")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptions:
    async def test_requires_authentication(self, client: AsyncClient):
        assert (await client.get("/api/v1/webhooks/subscriptions")).status_code == 401

    async def test_patients_cannot_subscribe(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/webhooks/subscriptions", json=subscription_body(), headers=bearer(Role.PATIENT)
        )
        assert response.status_code == 403

    async def test_create_never_echoes_secret(self, client: AsyncClient):
        owner = uuid.uuid4()
        response = await client.post(
            "/api/v1/webhooks/subscriptions",
            json=subscription_body(),
            headers=bearer(Role.ORGANIZATION, owner),
        )
        assert response.status_code == 201
        data = response.json()
        assert "secret" not in data
        assert data["owner_id"] == str(owner)
        assert data["active"] is True
        assert data["channel"] == "webhook"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"target": "http://hooks.example.com/plain"},
            {"target": "not a url"},
            {"secret": "short"},
            {"event_type": "PATIENT_ADMITTED"},
        ],
    )
    async def test_invalid_subscription_is_rejected(self, client: AsyncClient, overrides):
        response = await client.post(
            "/api/v1/webhooks/subscriptions",
            json=subscription_body(**overrides),
            headers=bearer(Role.DOCTOR),
        )
        assert response.status_code == 422

    async def test_notification_subscription_accepts_device_target(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/webhooks/subscriptions",
            json=subscription_body(channel="notification", target="device-abc123"),
            headers=bearer(Role.DOCTOR),
        )
        assert response.status_code == 201
        assert response.json()["channel"] == "notification"

    async def test_listing_is_scoped_to_owner(self, client: AsyncClient):
        alice, bob = uuid.uuid4(), uuid.uuid4()
        await client.post("/api/v1/webhooks/subscriptions", json=subscription_body(), headers=bearer(Role.DOCTOR, alice))
        await client.post("/api/v1/webhooks/subscriptions", json=subscription_body(), headers=bearer(Role.DOCTOR, bob))

        mine = await client.get("/api/v1/webhooks/subscriptions", headers=bearer(Role.DOCTOR, alice))
        assert [s["owner_id"] for s in mine.json()] == [str(alice)]

        everything = await client.get("/api/v1/webhooks/subscriptions", headers=bearer(Role.ADMIN))
        assert len(everything.json()) == 2

    async def test_deactivate(self, client: AsyncClient):
        owner = uuid.uuid4()
        created = await client.post(
            "/api/v1/webhooks/subscriptions", json=subscription_body(), headers=bearer(Role.DOCTOR, owner)
        )
        sub_id = created.json()["id"]

        stranger = await client.delete(f"/api/v1/webhooks/subscriptions/{sub_id}", headers=bearer(Role.DOCTOR))
        assert stranger.status_code == 404

        response = await client.delete(f"/api/v1/webhooks/subscriptions/{sub_id}", headers=bearer(Role.DOCTOR, owner))
        assert response.status_code == 200
        assert response.json()["active"] is False

    async def test_deactivate_unknown(self, client: AsyncClient):
        response = await client.delete(
            f"/api/v1/webhooks/subscriptions/{uuid.uuid4()}", headers=bearer(Role.ADMIN)
        )
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Internal publishing and the event view
# ---------------------------------------------------------------------------


class TestPublishing:
    async def test_admin_publishes_and_owner_sees_records(self, client: AsyncClient, broker):
        owner = uuid.uuid4()
        await client.post(
            "/api/v1/webhooks/subscriptions", json=subscription_body(), headers=bearer(Role.ORGANIZATION, owner)
        )

        response = await client.post(
            "/api/v1/internal/events",
            json={"event_type": "PAYMENT_VERIFIED", "reference_id": "pay-001", "payload": {"amount": 1500}},
            headers=bearer(Role.PLATFORM_OWNER),
        )
        assert response.status_code == 202
        assert response.json()["published"] == 1
        assert len(broker.published) == 1

        listing = await client.get("/api/v1/webhooks/events", headers=bearer(Role.ORGANIZATION, owner))
        [record] = listing.json()
        assert record["reference_id"] == "pay-001"
        assert record["delivery_status"] == "PENDING"
        assert record["delivery_attempts"] == 0
        assert "target" not in record

        delivered = await client.get(
            "/api/v1/webhooks/events", params={"status": "DELIVERED"}, headers=bearer(Role.ORGANIZATION, owner)
        )
        assert delivered.json() == []

        other = await client.get("/api/v1/webhooks/events", headers=bearer(Role.DOCTOR))
        assert other.json() == []

    @pytest.mark.parametrize("event_type", ["APPOINTMENT_CANCELED", "PAYMENT_DISPUTED"])
    async def test_domain_event_names_are_accepted(self, client: AsyncClient, broker, event_type):
        await client.post(
            "/api/v1/webhooks/subscriptions",
            json=subscription_body(event_type=event_type),
            headers=bearer(Role.ORGANIZATION),
        )

        response = await client.post(
            "/api/v1/internal/events",
            json={"event_type": event_type, "reference_id": "a1b2c3d4-e5f6-4a7b-8c9d-426614174000"},
            headers=bearer(Role.ADMIN),
        )

        assert response.status_code == 202
        assert response.json()["published"] == 1
        assert broker.published[-1].message.event_type.value == event_type

    async def test_non_admin_cannot_publish(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/internal/events",
            json={"event_type": "PAYMENT_VERIFIED", "reference_id": "pay-001"},
            headers=bearer(Role.DOCTOR),
        )
        assert response.status_code == 403

    async def test_personal_data_is_refused(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/internal/events",
            json={"event_type": "PAYMENT_VERIFIED", "reference_id": "jane@example.org"},
            headers=bearer(Role.ADMIN),
        )
        assert response.status_code == 422

    async def test_enqueue_failure_is_reported(self, make_client, make_subscription):
        await make_subscription(EventType.PAYMENT_VERIFIED)
        client = await make_client(broker=FailingBroker())
        response = await client.post(
            "/api/v1/internal/events",
            json={"event_type": "PAYMENT_VERIFIED", "reference_id": "pay-002"},
            headers=bearer(Role.ADMIN),
        )
        assert response.status_code == 503
        assert response.json()["detail"]["enqueue_failures"] == 1

    async def test_publishing_unavailable_without_broker(self, make_client):
        client = await make_client(broker=None)
        response = await client.post(
            "/api/v1/internal/events",
            json={"event_type": "PAYMENT_VERIFIED", "reference_id": "pay-003"},
            headers=bearer(Role.ADMIN),
        )
        assert response.status_code == 503

    async def test_event_limit_is_bounded(self, client: AsyncClient):
        response = await client.get("/api/v1/webhooks/events", params={"limit": 500}, headers=bearer(Role.ADMIN))
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# OTP
# ---------------------------------------------------------------------------


class TestOtp:
    async def test_ceiling_then_throttled(self, make_client):
        issuer = AsyncMock()
        client = await make_client(otp_issuer=issuer)

        for _ in range(5):
            response = await client.post("/api/v1/otp/request", json={"recipient": "+1 (555) 010-2000"})
            assert response.status_code == 200
            assert response.json() == {"status": "accepted", "message": ACCEPTED_MESSAGE}

        response = await client.post("/api/v1/otp/request", json={"recipient": "+1-555-010-2000"})
        assert response.status_code == 200
        assert response.json() == {"status": "throttled", "message": THROTTLED_MESSAGE}
        assert 0 < int(response.headers["Retry-After"]) <= 3600
        assert issuer.await_count == 5

    async def test_recipients_are_independent(self, client: AsyncClient):
        for _ in range(5):
            await client.post("/api/v1/otp/request", json={"recipient": "a@example.org"})
        response = await client.post("/api/v1/otp/request", json={"recipient": "b@example.org"})
        assert response.json()["status"] == "accepted"

    async def test_issuer_failure_looks_like_success(self, make_client):
        client = await make_client(otp_issuer=AsyncMock(side_effect=LookupError("no such user")))
        response = await client.post("/api/v1/otp/request", json={"recipient": "ghost@example.org"})
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

    async def test_unavailable_without_limiter(self, make_client):
        client = await make_client(otp_limiter=None)
        response = await client.post("/api/v1/otp/request", json={"recipient": "a@example.org"})
        assert response.status_code == 503
