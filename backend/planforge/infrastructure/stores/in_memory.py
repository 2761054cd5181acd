"""In-memory stores for tests and local usage."""
from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from planforge.shared_kernel.exceptions import EntityNotFoundError, UniqueConstraintError
from .interfaces import PrimaryStore, Row, SecondaryStore


class InMemoryPrimaryStore(PrimaryStore):
    def __init__(self, unique_constraints: Optional[Mapping[str, Sequence[str]]] = None) -> None:
        self._tables: Dict[str, Dict[str, Row]] = {}
        self._unique = {table: tuple(columns) for table, columns in (unique_constraints or {}).items()}

    async def upsert(self, table: str, key: str, row: Row) -> Row:
        rows = self._tables.setdefault(table, {})
        stored = {**copy.deepcopy(row), "id": key}
        self._check_unique(table, key, stored)
        rows[key] = stored
        return copy.deepcopy(stored)

    async def update(self, table: str, key: str, fields: Row) -> Optional[Row]:
        rows = self._tables.get(table, {})
        if key not in rows:
            return None
        updated = {**rows[key], **copy.deepcopy(fields), "id": key}
        self._check_unique(table, key, updated)
        rows[key] = updated
        return copy.deepcopy(updated)

    async def delete(self, table: str, key: str) -> None:
        rows = self._tables.get(table, {})
        if key not in rows:
            raise EntityNotFoundError(f"{table}/{key} not found", code="NOT_FOUND")
        del rows[key]

    async def find_by_id(self, table: str, key: str) -> Optional[Row]:
        row = self._tables.get(table, {}).get(key)
        return copy.deepcopy(row) if row is not None else None

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
        rows = list(self._tables.get(table, {}).values())
        for column, value in (filters or {}).items():
            rows = [row for row in rows if row.get(column) == value]
        if search:
            needle = search.lower()
            rows = [
                row for row in rows
                if needle in str(row.get("title") or "").lower()
                or needle in str(row.get("description") or "").lower()
            ]
        if sort_by:
            rows.sort(key=lambda row: (row.get(sort_by) is None, row.get(sort_by) or ""), reverse=sort_order == "desc")
        total = len(rows)
        end = offset + limit if limit is not None else None
        return [copy.deepcopy(row) for row in rows[offset:end]], total

    def _check_unique(self, table: str, key: str, row: Row) -> None:
        columns = self._unique.get(table)
        if not columns:
            return
        values = tuple(row.get(column) for column in columns)
        for other_key, other in self._tables.get(table, {}).items():
            if other_key != key and tuple(other.get(column) for column in columns) == values:
                raise UniqueConstraintError(
                    f"UNIQUE_CONSTRAINT violated on {table}({', '.join(columns)})",
                    code="UNIQUE_CONSTRAINT",
                    details={"table": table, "columns": list(columns)},
                )


class InMemorySecondaryStore(SecondaryStore):
    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Row]] = {}

    async def upsert(self, collection: str, key: str, doc: Row) -> None:
        self._collections.setdefault(collection, {})[key] = {**copy.deepcopy(doc), "id": key}

    async def delete(self, collection: str, key: str) -> None:
        self._collections.get(collection, {}).pop(key, None)

    async def find_by_id(self, collection: str, key: str) -> Optional[Row]:
        doc = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def find_by_project(self, collection: str, project_id: str) -> List[Row]:
        return [
            copy.deepcopy(doc)
            for doc in self._collections.get(collection, {}).values()
            if doc.get("project_id") == project_id
        ]
