"""SQLAlchemy-backed primary store."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from planforge.db.session import build_engine, build_session_factory, create_all
from planforge.models.records import COLUMN_NAMES, TABLE_MODELS, RecordMixin
from planforge.shared_kernel.exceptions import (
    EntityNotFoundError,
    PrimaryStoreError,
    UniqueConstraintError,
)
from .interfaces import PrimaryStore, Row

logger = structlog.get_logger(__name__)


def _split_row(row: Row) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    columns = {key: row.get(key) for key in COLUMN_NAMES if key in row}
    data = {key: value for key, value in row.items() if key not in COLUMN_NAMES}
    return columns, data


def _to_row(record: RecordMixin) -> Row:
    row: Row = dict(record.data or {})
    for key in COLUMN_NAMES:
        value = getattr(record, key)
        if value is not None or key == "id":
            row[key] = value
    return row


class SqlAlchemyPrimaryStore(PrimaryStore):
    def __init__(self, engine: AsyncEngine, session_factory: Optional[async_sessionmaker] = None) -> None:
        self.engine = engine
        self.session_factory = session_factory or build_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlAlchemyPrimaryStore":
        return cls(build_engine(database_url, echo=echo))

    async def create_tables(self) -> None:
        await create_all(self.engine)

    async def upsert(self, table: str, key: str, row: Row) -> Row:
        model = self._model(table)
        columns, data = _split_row({**row, "id": key})
        try:
            async with self.session_factory() as session:
                record = await session.get(model, key)
                if record is None:
                    record = model(**columns, data=data)
                    session.add(record)
                else:
                    for column, value in columns.items():
                        setattr(record, column, value)
                    record.data = data
                await session.commit()
                return _to_row(record)
        except IntegrityError as exc:
            raise UniqueConstraintError(
                f"UNIQUE_CONSTRAINT violated on {table}",
                code="UNIQUE_CONSTRAINT",
                details={"table": table, "key": key},
            ) from exc
        except SQLAlchemyError as exc:
            raise PrimaryStoreError(str(exc), code="PRIMARY_STORE_ERROR", details={"table": table}) from exc

    async def update(self, table: str, key: str, fields: Row) -> Optional[Row]:
        model = self._model(table)
        columns, data = _split_row({name: value for name, value in fields.items() if name != "id"})
        try:
            async with self.session_factory() as session:
                record = await session.get(model, key)
                if record is None:
                    return None
                # only changed attributes are flushed, other columns keep their committed values
                for column, value in columns.items():
                    setattr(record, column, value)
                if data:
                    record.data = {**(record.data or {}), **data}
                await session.commit()
                return _to_row(record)
        except IntegrityError as exc:
            raise UniqueConstraintError(
                f"UNIQUE_CONSTRAINT violated on {table}",
                code="UNIQUE_CONSTRAINT",
                details={"table": table, "key": key},
            ) from exc
        except SQLAlchemyError as exc:
            raise PrimaryStoreError(str(exc), code="PRIMARY_STORE_ERROR", details={"table": table}) from exc

    async def delete(self, table: str, key: str) -> None:
        model = self._model(table)
        try:
            async with self.session_factory() as session:
                record = await session.get(model, key)
                if record is None:
                    raise EntityNotFoundError(f"{table}/{key} not found", code="NOT_FOUND")
                await session.delete(record)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PrimaryStoreError(str(exc), code="PRIMARY_STORE_ERROR", details={"table": table}) from exc

    async def find_by_id(self, table: str, key: str) -> Optional[Row]:
        model = self._model(table)
        try:
            async with self.session_factory() as session:
                record = await session.get(model, key)
                return _to_row(record) if record is not None else None
        except SQLAlchemyError as exc:
            raise PrimaryStoreError(str(exc), code="PRIMARY_STORE_ERROR", details={"table": table}) from exc

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
        model = self._model(table)
        stmt = select(model)
        for column, value in (filters or {}).items():
            stmt = stmt.where(self._column(model, column) == value)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(model.title.ilike(pattern), model.description.ilike(pattern)))
        count_stmt = select(func.count()).select_from(stmt.subquery())
        if sort_by:
            column = self._column(model, sort_by)
            stmt = stmt.order_by(column.desc() if sort_order == "desc" else column.asc())
        stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self.session_factory() as session:
                total = (await session.execute(count_stmt)).scalar() or 0
                records = (await session.execute(stmt)).scalars().all()
                return [_to_row(record) for record in records], total
        except SQLAlchemyError as exc:
            raise PrimaryStoreError(str(exc), code="PRIMARY_STORE_ERROR", details={"table": table}) from exc

    async def close(self) -> None:
        await self.engine.dispose()

    @staticmethod
    def _model(table: str) -> Type[RecordMixin]:
        try:
            return TABLE_MODELS[table]
        except KeyError as exc:
            raise PrimaryStoreError(f"Unknown table '{table}'", code="UNKNOWN_TABLE") from exc

    @staticmethod
    def _column(model: Type[RecordMixin], name: str) -> Any:
        if name not in COLUMN_NAMES:
            raise PrimaryStoreError(f"Column '{name}' cannot be filtered or sorted", code="UNKNOWN_COLUMN")
        return getattr(model, name)
