"""Observability utilities (metrics, logging)."""

from .metrics import (
    DUAL_WRITE_TOTAL,
    DUAL_WRITE_LATENCY,
    ROLLBACK_TOTAL,
    CACHE_LOOKUPS,
    render_metrics,
    METRICS_CONTENT_TYPE,
)
from .structured_logging import configure_structlog

__all__ = [
    "DUAL_WRITE_TOTAL",
    "DUAL_WRITE_LATENCY",
    "ROLLBACK_TOTAL",
    "CACHE_LOOKUPS",
    "render_metrics",
    "METRICS_CONTENT_TYPE",
    "configure_structlog",
]
