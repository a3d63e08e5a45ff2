"""
Delivery worker entry point.

Loads configuration, configures logging, and runs the delivery service.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from healthlink_events.core.config import load_settings
from healthlink_events.core.logging import configure_logging
from healthlink_events.schemas import DeliveryChannel
from healthlink_events.service import DeliveryService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="HealthLink webhook and notification delivery worker")
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Optional YAML file overriding HL_* environment settings",
    )
    parser.add_argument(
        "--channel",
        action="append",
        choices=[c.value for c in DeliveryChannel],
        help="Delivery channel to consume (repeatable; default: all)",
    )
    return parser


def run(argv: list[str] | None = None) -> None:
    """CLI entry point for the delivery worker."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_format)
    log = structlog.get_logger()
    channels = [DeliveryChannel(c) for c in (args.channel or [c.value for c in DeliveryChannel])]
    log.info("worker.config_loaded", config_path=args.config, channels=[c.value for c in channels])

    service = DeliveryService(settings, channels=channels)
    try:
        asyncio.run(service.run_forever())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
