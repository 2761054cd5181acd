import pytest

from planforge.core.config import Settings
from planforge.domains.project.infrastructure.repositories import ProjectRepository
from planforge.domains.storage.domain.value_objects import SecondaryStoreMode, StorageStrategy, StrategyMode
from planforge.infrastructure.di import Container, Scope, build_container, close_container
from planforge.infrastructure.stores import (
    InMemoryPrimaryStore,
    InMemorySecondaryStore,
    PostgrestSecondaryStore,
    PrimaryStore,
    SecondaryStore,
    SqlAlchemyPrimaryStore,
)
from planforge.services.cache_service import RepositoryCache
from planforge.services.dual_storage_engine import DualStorageEngine


class IService:
    pass


class ConcreteService(IService):
    pass


def test_singleton_returns_same_instance():
    container = Container()
    container.register(IService, lambda c: ConcreteService(), Scope.SINGLETON)
    instance1 = container.resolve(IService)
    instance2 = container.resolve(IService)
    assert instance1 is instance2
    assert container.is_resolved(IService)


def test_transient_returns_new_instance():
    container = Container()
    container.register(IService, lambda c: ConcreteService(), Scope.TRANSIENT)
    instance1 = container.resolve(IService)
    instance2 = container.resolve(IService)
    assert instance1 is not instance2


class OtherService:
    pass


def test_circular_registration_is_reported():
    container = Container()
    container.register(IService, lambda c: c.resolve(OtherService))
    container.register(OtherService, lambda c: c.resolve(IService))

    with pytest.raises(RuntimeError, match="IService -> OtherService -> IService"):
        container.resolve(IService)

    assert not container.is_resolved(IService)


def test_reregistering_replaces_singleton():
    container = Container()
    container.register(IService, lambda c: ConcreteService())
    first = container.resolve(IService)

    container.register(IService, lambda c: ConcreteService())

    assert container.resolve(IService) is not first


def test_unregistered_interface_raises():
    with pytest.raises(KeyError):
        Container().resolve(IService)


def test_register_instance():
    container = Container()
    service = ConcreteService()
    container.register_instance(IService, service)
    assert container.resolve(IService) is service


def test_containers_do_not_share_state():
    first = build_container(Settings(APP_ENV="test"))
    second = build_container(Settings(APP_ENV="test"))

    assert first.resolve(ProjectRepository) is not second.resolve(ProjectRepository)


def test_test_environment_uses_in_memory_stores():
    container = build_container(Settings(APP_ENV="test"))

    repository = container.resolve(ProjectRepository)

    assert container.resolve(StorageStrategy).mode == StrategyMode.MOCK
    assert isinstance(container.resolve(PrimaryStore), InMemoryPrimaryStore)
    assert isinstance(container.resolve(SecondaryStore), InMemorySecondaryStore)
    assert repository.engine is container.resolve(DualStorageEngine)
    assert repository.retry_attempts == 1


def test_development_without_secondary_credentials(tmp_path):
    config = Settings(APP_ENV="development", DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'dev.db'}")
    container = build_container(config)

    engine = container.resolve(DualStorageEngine)

    assert isinstance(engine.primary, SqlAlchemyPrimaryStore)
    assert engine.secondary is None
    assert engine.secondary_mode == SecondaryStoreMode.DISABLED
    assert engine.should_write_secondary() is False


@pytest.mark.asyncio
async def test_production_wiring_and_close(tmp_path):
    config = Settings(
        APP_ENV="production",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'prod.db'}",
        SUPABASE_URL="https://project.supabase.co",
        SUPABASE_SERVICE_ROLE_KEY="service-key",
        STORAGE_TIMEOUT_MS=1500,
    )
    container = build_container(config)

    engine = container.resolve(DualStorageEngine)

    assert engine.strategy.mode == StrategyMode.REQUIRED
    assert engine.strategy.timeout_ms == 1500
    assert engine.secondary_mode == SecondaryStoreMode.FULL
    assert isinstance(engine.secondary, PostgrestSecondaryStore)
    assert engine.secondary.base_url == "https://project.supabase.co"
    assert container.resolve(ProjectRepository).retry_attempts == 3

    await close_container(container)
    assert engine.secondary._client.is_closed


def test_repository_uses_the_configured_cache():
    container = build_container(Settings(APP_ENV="test", CACHE_MAX_ENTRIES=7, CACHE_DEFAULT_TTL_SECONDS=11))

    repository = container.resolve(ProjectRepository)

    assert repository.cache is container.resolve(RepositoryCache)
    assert (repository.cache.max_size, repository.cache.default_ttl) == (7, 11)
