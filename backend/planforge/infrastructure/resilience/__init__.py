"""Resilience utilities (retry, timeout)."""

from .retry import retry_operation, is_retryable, NON_RETRYABLE
from .timeout import with_timeout

__all__ = [
    "retry_operation",
    "is_retryable",
    "NON_RETRYABLE",
    "with_timeout",
]
