"""
Delivery metrics for the worker process, exported in Prometheus text format.

Every delivery outcome is a counter labelled with its channel, for example
``healthlink_deliveries_retried_total{channel="webhook"}``.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "healthlink_"

DELIVERY_OUTCOMES = ("succeeded", "retried", "failed", "duplicate", "deferred", "suppressed")

LabelSet = tuple[tuple[str, str], ...]


def _labels(labels: dict[str, Any]) -> LabelSet:
    return tuple(sorted((key, str(getattr(value, "value", value))) for key, value in labels.items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def sample_name(name: str, labels: LabelSet) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{key}="{_escape(value)}"' for key, value in labels)
    return f"{name}{{{rendered}}}"


class MetricsCollector:
    """Labelled counters and gauges keyed by metric name."""

    def __init__(self) -> None:
        self._counters: dict[str, dict[LabelSet, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[LabelSet, float]] = defaultdict(dict)
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        self._counters[f"{PREFIX}{name}"][_labels(labels)] += value

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        self._gauges[f"{PREFIX}{name}"][_labels(labels)] = value

    def delivery(self, outcome: str, channel: Any) -> None:
        """Count one delivery outcome for ``channel``."""
        if outcome not in DELIVERY_OUTCOMES:
            raise ValueError(f"unknown delivery outcome: {outcome}")
        self.inc(f"deliveries_{outcome}_total", channel=channel)

    def get(self, name: str, **labels: Any) -> int | float:
        """One labelled sample, or the sum over all samples when no labels are given."""
        full = f"{PREFIX}{name}"
        samples = self._gauges.get(full) or self._counters.get(full) or {}
        if labels:
            return samples.get(_labels(labels), 0)
        return sum(samples.values())

    def to_prometheus(self) -> str:
        lines = []
        for kind, metrics in (("counter", self._counters), ("gauge", self._gauges)):
            for name in sorted(metrics):
                lines.append(f"# TYPE {name} {kind}")
                for labels, value in sorted(metrics[name].items()):
                    lines.append(f"{sample_name(name, labels)} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": {
                sample_name(name, labels): value
                for name, samples in self._counters.items()
                for labels, value in samples.items()
            },
            "gauges": {
                sample_name(name, labels): value
                for name, samples in self._gauges.items()
                for labels, value in samples.items()
            },
            "uptime_seconds": time.time() - self._start_time,
        }
