"""
PHI scrubbing for text that leaves the delivery path.

Anything that looks like an email address, a phone
number or a long run of digits is replaced before it is persisted or logged.
Canonical UUIDs are opaque entity ids and pass through untouched.
"""

from __future__ import annotations

import re

EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE = re.compile(r"(?:\+?\d{1,3})?[-. (]*\d{3}[-. )]*\d{3}[-. ]*\d{4}")
LONG_NUMBER = re.compile(r"\b\d{8,}\b")
UUID = re.compile(r"(\b[0-9a-fA-F]{8}-(?:[0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}\b)")

MAX_LENGTH = 1000


def _mask(text: str) -> str:
    text = EMAIL.sub("[EMAIL]", text)
    text = PHONE.sub("[PHONE]", text)
    return LONG_NUMBER.sub("[NUM]", text)


def scrub(text: str | None, max_length: int = MAX_LENGTH) -> str | None:
    """Mask email-like, phone-like and long numeric fragments, then truncate."""
    if text is None:
        return None
    # split() with a capture group alternates plain text and UUIDs
    parts = UUID.split(text)
    cleaned = "".join(part if i % 2 else _mask(part) for i, part in enumerate(parts))
    return cleaned[:max_length]


def looks_sensitive(value: str) -> bool:
    """True when scrubbing would alter the value."""
    return scrub(value, max_length=len(value) or 1) != value
