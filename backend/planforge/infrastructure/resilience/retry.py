"""Retry helpers with linear backoff."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import structlog

from planforge.shared_kernel.exceptions import (
    DualStorageError,
    DuplicateProjectError,
    EntityNotFoundError,
    StorageStrategyError,
    TransformationError,
    UniqueConstraintError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

# Deterministic failures: retrying cannot change the outcome.
NON_RETRYABLE: Tuple[Type[BaseException], ...] = (
    ValidationError,
    TransformationError,
    StorageStrategyError,
    DuplicateProjectError,
    UniqueConstraintError,
    EntityNotFoundError,
)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, DualStorageError) and exc.rollback_failed:
        return False
    return not isinstance(exc, NON_RETRYABLE)


async def retry_operation(
    func: Callable[[], Awaitable[Any]],
    attempts: int = 3,
    delay: float = 1.0,
    retryable: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Call ``func`` up to ``attempts`` times, sleeping ``delay * attempt`` in between.

    The last error is re-raised as is once attempts are exhausted.
    """
    should_retry = retryable or is_retryable
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            logger.warning(
                "operation_retry",
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await sleep(delay * attempt)
