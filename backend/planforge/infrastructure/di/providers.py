"""Service registration for the DI container."""
from __future__ import annotations

from typing import Optional

import structlog

from planforge.core.config import Settings
from planforge.domains.project.infrastructure.repositories import ProjectRepository
from planforge.domains.storage.domain.value_objects import (
    SecondaryStoreMode,
    StorageStrategy,
    StrategyMode,
    build_storage_strategy,
)
from planforge.infrastructure.di.container import Container
from planforge.infrastructure.di.scopes import Scope
from planforge.infrastructure.stores import (
    InMemoryPrimaryStore,
    InMemorySecondaryStore,
    PostgrestSecondaryStore,
    PrimaryStore,
    SecondaryStore,
    SqlAlchemyPrimaryStore,
)
from planforge.services.cache_service import RepositoryCache
from planforge.services.consistency_validator import ConsistencyValidator
from planforge.services.dual_storage_engine import DualStorageEngine
from planforge.services.schema_transformer import SchemaTransformer

logger = structlog.get_logger(__name__)


def _primary_store(config: Settings, strategy: StorageStrategy) -> PrimaryStore:
    if strategy.mode == StrategyMode.MOCK:
        return InMemoryPrimaryStore(unique_constraints={"projects": ("owner_id", "title")})
    return SqlAlchemyPrimaryStore.from_url(config.DATABASE_URL, echo=config.DATABASE_ECHO)


def _secondary_store(config: Settings, strategy: StorageStrategy) -> Optional[SecondaryStore]:
    mode = SecondaryStoreMode(config.secondary_store_mode)
    if strategy.mode == StrategyMode.MOCK:
        return InMemorySecondaryStore()
    if mode == SecondaryStoreMode.DISABLED or not config.SUPABASE_URL:
        return None
    key = config.SUPABASE_SERVICE_ROLE_KEY if mode == SecondaryStoreMode.FULL else config.SUPABASE_ANON_KEY
    return PostgrestSecondaryStore(config.SUPABASE_URL, key or "", timeout=strategy.timeout_seconds)


def configure_container(container: Container, config: Settings) -> None:
    """Register the stores, cache, engine and repository built from ``config``."""
    strategy = build_storage_strategy(config)
    container.register(StorageStrategy, lambda c: strategy, Scope.SINGLETON)

    # Stores
    container.register(PrimaryStore, lambda c: _primary_store(config, c.resolve(StorageStrategy)), Scope.SINGLETON)
    container.register(
        SecondaryStore,
        lambda c: _secondary_store(config, c.resolve(StorageStrategy)),
        Scope.SINGLETON,
    )

    # Domain services
    container.register(ConsistencyValidator, lambda c: ConsistencyValidator(), Scope.SINGLETON)
    container.register(
        SchemaTransformer,
        lambda c: SchemaTransformer(validator=c.resolve(ConsistencyValidator)),
        Scope.SINGLETON,
    )
    container.register(
        RepositoryCache,
        lambda c: RepositoryCache(
            max_size=config.CACHE_MAX_ENTRIES,
            default_ttl=config.CACHE_DEFAULT_TTL_SECONDS,
        ),
        Scope.SINGLETON,
    )
    container.register(
        DualStorageEngine,
        lambda c: DualStorageEngine(
            primary=c.resolve(PrimaryStore),
            secondary=c.resolve(SecondaryStore),
            strategy=c.resolve(StorageStrategy),
            secondary_mode=SecondaryStoreMode(config.secondary_store_mode),
            transformer=c.resolve(SchemaTransformer),
            validator=c.resolve(ConsistencyValidator),
            has_service_role_key=config.has_service_role_key,
        ),
        Scope.SINGLETON,
    )
    container.register(
        ProjectRepository,
        lambda c: ProjectRepository(
            engine=c.resolve(DualStorageEngine),
            cache=c.resolve(RepositoryCache),
            retry_delay=config.RETRY_DELAY_SECONDS,
            app_url=config.APP_URL,
            user_projects_ttl=config.USER_PROJECTS_CACHE_TTL_SECONDS,
        ),
        Scope.SINGLETON,
    )
    logger.info(
        "container_configured",
        environment=strategy.environment,
        strategy=strategy.mode.value,
        secondary_mode=config.secondary_store_mode,
    )


def build_container(config: Optional[Settings] = None) -> Container:
    """Return a new, configured container."""
    container = Container()
    configure_container(container, config or Settings())
    return container


async def close_container(container: Container) -> None:
    """Close the store clients the container created."""
    for interface in (PrimaryStore, SecondaryStore):
        if not container.is_resolved(interface):
            continue
        store = container.resolve(interface)
        if store is not None:
            await store.close()
