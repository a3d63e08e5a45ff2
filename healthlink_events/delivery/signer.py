"""HMAC-SHA256 signing of outbound delivery bodies."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from typing import Any

from healthlink_events.core.errors import SignatureError

__all__ = [
    "SignatureError",
    "canonical_body",
    "sign",
    "sign_delivery",
    "signed_content",
    "verify",
    "verify_delivery",
]

REPLAY_TOLERANCE_SECONDS = 300


def canonical_body(
    event_id: uuid.UUID | str,
    event_type: str,
    reference_id: str,
    payload: dict[str, Any] | None = None,
) -> bytes:
    """The exact bytes that are signed and sent: sorted keys, compact separators, UTF-8."""
    body = {
        "event_id": str(event_id),
        "event_type": str(getattr(event_type, "value", event_type)),
        "reference_id": reference_id,
        "payload": payload or {},
    }
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of ``payload`` under ``secret``."""
    if not secret:
        raise SignatureError("subscription secret is empty")
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify(secret: str, payload: bytes, signature: str) -> bool:
    """Constant-time check of ``signature`` against ``payload``."""
    expected = sign(secret, payload)
    return hmac.compare_digest(expected, signature or "")


def signed_content(timestamp: int | str, body: bytes) -> bytes:
    """Bytes covered by the delivery signature header: ``{timestamp}.{body}``."""
    return f"{timestamp}.".encode() + body


def sign_delivery(secret: str, timestamp: int | str, body: bytes) -> str:
    return sign(secret, signed_content(timestamp, body))


def verify_delivery(
    secret: str,
    timestamp: str,
    body: bytes,
    signature: str,
    *,
    tolerance_seconds: int = REPLAY_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Receiver-side check of a webhook: signature over timestamp and body, timestamp within tolerance."""
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        return False
    return verify(secret, signed_content(timestamp, body), signature)
