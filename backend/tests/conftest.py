import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from planforge.domains.storage.domain.value_objects import (  # noqa: E402
    SecondaryStoreMode,
    StorageStrategy,
)
from planforge.domains.project.infrastructure.repositories import ProjectRepository  # noqa: E402
from planforge.infrastructure.stores import InMemoryPrimaryStore, InMemorySecondaryStore  # noqa: E402
from planforge.services.cache_service import RepositoryCache  # noqa: E402
from planforge.services.dual_storage_engine import DualStorageEngine  # noqa: E402
from planforge.shared_kernel.exceptions import PrimaryStoreError, SecondaryStoreError  # noqa: E402

FROZEN_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Returns ``now``; ``advance`` moves it forward."""

    def __init__(self, now=FROZEN_NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class SequentialIds:
    def __init__(self, prefix="id"):
        self.prefix = prefix
        self.count = 0

    def __call__(self):
        self.count += 1
        return f"{self.prefix}-{self.count}"


class RecordingLogger:
    """Collects ``(level, event, fields)`` tuples."""

    def __init__(self):
        self.records = []

    def _log(self, level, event, **fields):
        self.records.append((level, event, fields))

    def debug(self, event, **fields):
        self._log("debug", event, **fields)

    def info(self, event, **fields):
        self._log("info", event, **fields)

    def warning(self, event, **fields):
        self._log("warning", event, **fields)

    def error(self, event, **fields):
        self._log("error", event, **fields)

    def critical(self, event, **fields):
        self._log("critical", event, **fields)

    def exception(self, event, **fields):
        self._log("exception", event, **fields)

    def events(self, level=None):
        return [event for lvl, event, _ in self.records if level is None or lvl == level]

    def find(self, event):
        return [fields for _, name, fields in self.records if name == event]


class FailingSecondaryStore(InMemorySecondaryStore):
    """Secondary store whose writes fail, optionally only for some collections."""

    def __init__(self, collections=None):
        super().__init__()
        self.collections = set(collections) if collections else None
        self.attempts = []

    async def upsert(self, collection, key, doc):
        self.attempts.append((collection, key))
        if self.collections is None or collection in self.collections:
            raise SecondaryStoreError(f"{collection} unavailable", code="SECONDARY_STORE_UNAVAILABLE")
        await super().upsert(collection, key, doc)


class UndeletablePrimaryStore(InMemoryPrimaryStore):
    """Primary store whose deletes always fail."""

    async def delete(self, table, key):
        raise PrimaryStoreError(f"cannot delete {table}/{key}", code="PRIMARY_STORE_ERROR")


class CountingPrimaryStore(InMemoryPrimaryStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = []

    async def find_by_id(self, table, key):
        self.calls.append(("find_by_id", table))
        return await super().find_by_id(table, key)

    async def find_many(self, table, filters=None, **kwargs):
        self.calls.append(("find_many", table))
        return await super().find_many(table, filters, **kwargs)

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)


async def no_sleep(delay):
    return None


def make_primary(cls=InMemoryPrimaryStore):
    return cls(unique_constraints={"projects": ("owner_id", "title")})


def make_engine(
    environment="production",
    primary=None,
    secondary=None,
    secondary_mode=SecondaryStoreMode.FULL,
    clock=None,
    logger=None,
    **kwargs,
):
    return DualStorageEngine(
        primary=primary if primary is not None else make_primary(),
        secondary=secondary if secondary is not None else InMemorySecondaryStore(),
        strategy=StorageStrategy.for_environment(environment),
        secondary_mode=secondary_mode,
        clock=clock or FrozenClock(),
        logger=logger or RecordingLogger(),
        **kwargs,
    )


def make_repository(engine, clock=None, ids=None, logger=None, cache=None, **kwargs):
    return ProjectRepository(
        engine=engine,
        cache=cache if cache is not None else RepositoryCache(),
        retry_delay=0,
        clock=clock or engine.clock,
        id_factory=ids or SequentialIds(),
        logger=logger or RecordingLogger(),
        sleep=no_sleep,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def ids():
    return SequentialIds()


@pytest.fixture
def recording_logger():
    return RecordingLogger()


@pytest.fixture
def primary_store():
    return make_primary()


@pytest.fixture
def secondary_store():
    return InMemorySecondaryStore()


@pytest.fixture
def engine(primary_store, secondary_store, clock, recording_logger):
    return make_engine(
        environment="production",
        primary=primary_store,
        secondary=secondary_store,
        clock=clock,
        logger=recording_logger,
    )


@pytest.fixture
def repository(engine, clock, ids):
    return make_repository(engine, clock=clock, ids=ids)
