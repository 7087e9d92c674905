"""Prometheus metrics and the stats collaborator used by config updaters.

All metric objects are defined at import time. Updaters talk to a
StatsCollector; the base class is a no-op so callers never branch on
whether stats are enabled.
"""

from __future__ import annotations

from typing import Any

from prometheus_client import Counter, Gauge, Histogram

config_fetch_total = Counter(
    "clusterconf_config_fetch_total",
    "Config fetch attempts by partition and outcome",
    ["partition", "outcome"],
)
config_fetch_latency_seconds = Histogram(
    "clusterconf_config_fetch_latency_seconds",
    "Latency of a single config fetch attempt",
    ["partition"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
)
config_version = Gauge(
    "clusterconf_config_version",
    "Version of the currently published config snapshot",
    ["partition"],
)


def _label(value: Any) -> str:
    return str(getattr(value, "value", value))


class StatsCollector:
    """Stats collaborator interface. Every method is a no-op by default."""

    def record_fetch(self, partition: Any, outcome: Any, latency: float) -> None:
        """Record one fetch attempt (outcome is "success", "unchanged" or an error kind)."""

    def record_publish(self, partition: Any, version: int) -> None:
        """Record a successful publish of a new snapshot version."""


NullStatsCollector = StatsCollector


class PrometheusStatsCollector(StatsCollector):
    """Stats collector backed by the module-level Prometheus metrics."""

    def record_fetch(self, partition: Any, outcome: Any, latency: float) -> None:
        part = _label(partition)
        config_fetch_total.labels(partition=part, outcome=_label(outcome)).inc()
        config_fetch_latency_seconds.labels(partition=part).observe(max(0.0, latency))

    def record_publish(self, partition: Any, version: int) -> None:
        config_version.labels(partition=_label(partition)).set(version)


__all__ = [
    "StatsCollector",
    "NullStatsCollector",
    "PrometheusStatsCollector",
    "config_fetch_total",
    "config_fetch_latency_seconds",
    "config_version",
]
