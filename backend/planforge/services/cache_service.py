import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

import structlog

from planforge.infrastructure.observability.metrics import CACHE_LOOKUPS

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    ttl: float


class RepositoryCache:
    """Bounded, TTL-based, process-local cache keyed by resource path.

    When full, the oldest inserted entry is evicted (insertion order, not LRU).
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.clock = clock or time.monotonic
        self._entries: "OrderedDict[str, CacheEntry[Any]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def project_key(project_id: str) -> str:
        return f"project:{project_id}"

    @staticmethod
    def user_projects_key(user_id: str, fragment: str) -> str:
        return f"user_projects:{user_id}:{fragment}"

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value (default 5 min TTL)."""
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            oldest_key, _ = self._entries.popitem(last=False)
            logger.debug("cache_evicted", key=oldest_key)
        self._entries[key] = CacheEntry(
            data=value,
            timestamp=self.clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, None on a miss or once the TTL has passed."""
        entry = self._entries.get(key)
        if entry is None:
            self._record(hit=False)
            return None
        if self.clock() - entry.timestamp > entry.ttl:
            del self._entries[key]
            self._record(hit=False)
            return None
        self._record(hit=True)
        return entry.data

    def invalidate(self, pattern: str) -> int:
        """Remove every key matching the regular expression ``pattern``."""
        regex = re.compile(pattern)
        matched = [key for key in self._entries if regex.search(key)]
        for key in matched:
            del self._entries[key]
        if matched:
            logger.debug("cache_invalidated", pattern=pattern, count=len(matched))
        return len(matched)

    def invalidate_project(self, project_id: str, owner_id: Optional[str] = None) -> int:
        """Drop the project entry and the listings it may appear in.

        Without an owner every cached listing is dropped.
        """
        removed = self.invalidate(f"^{re.escape(self.project_key(project_id))}$")
        prefix = self.user_projects_key(owner_id, "") if owner_id else "user_projects:"
        removed += self.invalidate(f"^{re.escape(prefix)}")
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _record(self, hit: bool) -> None:
        if hit:
            self._hits += 1
        else:
            self._misses += 1
        CACHE_LOOKUPS.labels(result="hit" if hit else "miss").inc()
