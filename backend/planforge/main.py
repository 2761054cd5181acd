"""
PlanForge - video planning storage core
Application bootstrap
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from planforge.core.config import Settings
from planforge.infrastructure.di import Container, build_container, close_container
from planforge.infrastructure.observability import configure_structlog
from planforge.infrastructure.stores import PrimaryStore, SqlAlchemyPrimaryStore

logger = structlog.get_logger(__name__)

# Tables are created on startup only where no migration tooling runs.
CREATE_TABLES_ENVIRONMENTS = ("development", "test")


@asynccontextmanager
async def lifespan(config: Optional[Settings] = None) -> AsyncIterator[Container]:
    """Initialize and cleanup application resources."""
    config = config or Settings()
    configure_structlog(
        config.LOG_LEVEL,
        json_output=config.storage_environment != "development",
        storage_environment=config.storage_environment,
    )
    logger.info(
        "application_starting",
        project=config.PROJECT_NAME,
        version=config.VERSION,
        environment=config.APP_ENV,
    )

    container = build_container(config)
    if config.storage_environment in CREATE_TABLES_ENVIRONMENTS:
        primary = container.resolve(PrimaryStore)
        if isinstance(primary, SqlAlchemyPrimaryStore):
            await primary.create_tables()
            logger.info("database_tables_created")

    try:
        yield container
    finally:
        await close_container(container)
        logger.info("application_stopped")
