"""Storage domain value objects."""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from planforge.core.config import Settings
from planforge.domains.pipeline.domain.entities import EntityKind


class StrategyMode(str, Enum):
    REQUIRED = "required"
    PREFERRED = "preferred"
    FALLBACK = "fallback"
    MOCK = "mock"


class SecondaryStoreMode(str, Enum):
    DISABLED = "disabled"
    ANON = "anon"
    FULL = "full"


@dataclass(frozen=True)
class StorageStrategy:
    """Per-environment policy for secondary writes. Immutable once built."""

    environment: str
    mode: StrategyMode
    fallback_enabled: bool
    retry_attempts: int
    timeout_ms: int

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @classmethod
    def for_environment(cls, environment: str) -> "StorageStrategy":
        try:
            return _STRATEGIES[environment]
        except KeyError as exc:
            raise ValueError(f"No storage strategy for environment '{environment}'") from exc


_STRATEGIES: Dict[str, StorageStrategy] = {
    "production": StorageStrategy(
        environment="production",
        mode=StrategyMode.REQUIRED,
        fallback_enabled=False,
        retry_attempts=3,
        timeout_ms=5000,
    ),
    "staging": StorageStrategy(
        environment="staging",
        mode=StrategyMode.PREFERRED,
        fallback_enabled=True,
        retry_attempts=2,
        timeout_ms=3000,
    ),
    "development": StorageStrategy(
        environment="development",
        mode=StrategyMode.FALLBACK,
        fallback_enabled=True,
        retry_attempts=1,
        timeout_ms=2000,
    ),
    "test": StorageStrategy(
        environment="test",
        mode=StrategyMode.MOCK,
        fallback_enabled=True,
        retry_attempts=0,
        timeout_ms=1000,
    ),
}


def build_storage_strategy(config: Settings, timeout_ms: Optional[int] = None) -> StorageStrategy:
    """Build the process-wide strategy from settings."""
    strategy = StorageStrategy.for_environment(config.storage_environment)
    override = timeout_ms or config.STORAGE_TIMEOUT_MS
    if override:
        strategy = replace(strategy, timeout_ms=override)
    return strategy


@dataclass(frozen=True)
class StorageItem:
    """One logical write handed to the dual storage engine.

    ``row`` is the primary row for ``kind``. Pipeline items carry the row of
    the owning project, which the secondary documents are derived from.
    ``previous_row`` is the row being replaced, if any; a rollback restores
    it instead of deleting.
    """

    kind: EntityKind
    id: str
    project_id: str
    row: Dict[str, Any]
    project_row: Optional[Dict[str, Any]] = None
    previous_row: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Actor:
    id: str
