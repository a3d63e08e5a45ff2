"""
structlog configuration shared by the API server and the delivery workers.
"""

from __future__ import annotations

from typing import Any

import structlog

from .phi import scrub

_UNSCRUBBED_KEYS = {"event", "timestamp", "level"}  # plus any key ending in _id


def scrub_processor(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask PHI-looking fragments in every string field of a log entry."""
    for key, value in event_dict.items():
        if key in _UNSCRUBBED_KEYS or key.endswith("_id"):
            continue
        if isinstance(value, str):
            event_dict[key] = scrub(value)
    return event_dict


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        scrub_processor,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )
