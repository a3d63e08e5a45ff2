"""
Webhook delivery: signed HTTP POST to the subscription's URL.
"""

from __future__ import annotations

import httpx
import structlog

from healthlink_events.core.errors import DeliveryConfigError, TransientDeliveryError
from healthlink_events.delivery.signer import sign_delivery
from healthlink_events.delivery.worker import DeliveryWorker, classify_status, message_body
from healthlink_events.models.subscription import Subscription
from healthlink_events.schemas import DeliveryChannel, DeliveryMessage

log = structlog.get_logger()

USER_AGENT = "HealthLink-Webhooks/1.0"


def webhook_headers(message: DeliveryMessage, timestamp: str, signature: str) -> dict[str, str]:
    """Headers for one attempt. The signature covers ``{timestamp}.{body}``."""
    return {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Webhook-Signature": signature,
        "X-Webhook-Timestamp": timestamp,
        "X-Webhook-Event-Type": message.event_type.value,
        "X-Webhook-Event-Id": str(message.event_id),
        "X-Webhook-Attempt": str(message.attempt),
    }


class WebhookWorker(DeliveryWorker):
    channel = DeliveryChannel.WEBHOOK

    def __init__(
        self,
        *args,
        timeout_seconds: float = 10.0,
        verify_tls: bool = True,
        client: httpx.AsyncClient | None = None,
        **kwargs,
    ):
        kwargs.setdefault("deadline_seconds", timeout_seconds)
        super().__init__(*args, **kwargs)
        self._timeout = timeout_seconds
        self._verify_tls = verify_tls
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                verify=self._verify_tls,
                follow_redirects=False,
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def validate_target(self, target: str) -> None:
        super().validate_target(target)
        try:
            url = httpx.URL(target)
        except httpx.InvalidURL as exc:
            raise DeliveryConfigError("malformed target URL") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise DeliveryConfigError("malformed target URL")

    async def deliver(self, message: DeliveryMessage, subscription: Subscription) -> None:
        assert self._client, "worker is not open"
        body = message_body(message)
        timestamp = str(int(self._clock().timestamp()))
        signature = sign_delivery(subscription.secret, timestamp, body)
        try:
            resp = await self._client.post(
                message.target,
                content=body,
                headers=webhook_headers(message, timestamp, signature),
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"timeout: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"connection error: {type(exc).__name__}") from exc

        log.debug(
            "webhook.response",
            event_id=str(message.event_id),
            status=resp.status_code,
            attempt=message.attempt,
        )
        classify_status(resp.status_code, resp.reason_phrase)
