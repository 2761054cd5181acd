"""Store client interfaces."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

Row = Dict[str, Any]


class PrimaryStore(ABC):
    """Relational source of truth. Rows are upserted by id."""

    @abstractmethod
    async def upsert(self, table: str, key: str, row: Row) -> Row:
        raise NotImplementedError

    @abstractmethod
    async def update(self, table: str, key: str, fields: Row) -> Optional[Row]:
        """Set only ``fields`` on an existing row; returns ``None`` when it does not exist."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, table: str, key: str) -> None:
        """Delete a row; raises ``EntityNotFoundError`` when it does not exist."""
        raise NotImplementedError

    @abstractmethod
    async def find_by_id(self, table: str, key: str) -> Optional[Row]:
        raise NotImplementedError

    @abstractmethod
    async def find_many(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        search: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: str = "desc",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[Row], int]:
        """Return one page of matching rows and the total match count.

        ``filters`` are equality matches; ``search`` is a case-insensitive
        substring match on title and description.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SecondaryStore(ABC):
    """Document store mirrored from the primary store, one collection per entity kind."""

    @abstractmethod
    async def upsert(self, collection: str, key: str, doc: Row) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def find_by_id(self, collection: str, key: str) -> Optional[Row]:
        raise NotImplementedError

    @abstractmethod
    async def find_by_project(self, collection: str, project_id: str) -> List[Row]:
        raise NotImplementedError

    async def close(self) -> None:
        return None
