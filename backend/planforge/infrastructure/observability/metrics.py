"""Prometheus metrics definitions."""
from __future__ import annotations

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


DUAL_WRITE_TOTAL = Counter(
    "planforge_dual_write_total",
    "Dual writes by entity kind and outcome",
    ["kind", "outcome"],
)

DUAL_WRITE_LATENCY = Histogram(
    "planforge_dual_write_duration_seconds",
    "Dual write latency",
    ["kind"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)

ROLLBACK_TOTAL = Counter(
    "planforge_rollback_total",
    "Compensating primary deletes by outcome",
    ["kind", "outcome"],
)

CACHE_LOOKUPS = Counter(
    "planforge_repository_cache_lookups_total",
    "Repository cache lookups",
    ["result"],
)


def render_metrics() -> bytes:
    return generate_latest()


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
