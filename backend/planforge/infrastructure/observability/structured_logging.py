"""Structlog configuration helpers."""
from __future__ import annotations

import logging
from typing import Any, Optional

import structlog


def configure_structlog(
    level: str = "INFO",
    json_output: bool = True,
    storage_environment: Optional[str] = None,
) -> None:
    """Route structlog through stdlib logging.

    Every event carries ``storage_environment`` when one is given, so
    records from several deployments can share one sink.
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if storage_environment:
        structlog.contextvars.bind_contextvars(storage_environment=storage_environment)
