"""
Dual storage engine.

Executes one logical write against the primary store and, depending on the
storage strategy, the secondary store. A failed secondary write under the
``required`` strategy is compensated by undoing the primary write; there is
no distributed transaction.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel

from planforge.domains.pipeline.domain.entities import (
    PIPELINE_KINDS,
    PRIMARY_TABLES,
    SECONDARY_COLLECTIONS,
    EntityKind,
)
from planforge.domains.storage.domain.value_objects import (
    Actor,
    SecondaryStoreMode,
    StorageItem,
    StorageStrategy,
    StrategyMode,
)
from planforge.infrastructure.observability.metrics import (
    DUAL_WRITE_LATENCY,
    DUAL_WRITE_TOTAL,
    ROLLBACK_TOTAL,
)
from planforge.infrastructure.resilience.timeout import with_timeout
from planforge.infrastructure.stores.interfaces import PrimaryStore, SecondaryStore
from planforge.schemas.quality import DataQualityReport
from planforge.schemas.secondary import build_record
from planforge.schemas.storage import DualWriteResult, PrimaryOutcome, SecondaryOutcome
from planforge.services.consistency_validator import ConsistencyValidator
from planforge.services.schema_transformer import SchemaTransformer
from planforge.shared_kernel.exceptions import (
    DomainException,
    DualStorageError,
    EntityNotFoundError,
    StorageStrategyError,
    ValidationError,
)

QUALITY_CHECK_ENVIRONMENTS = ("staging", "production")

# (collection, document) pairs written for one item.
Targets = List[Tuple[str, BaseModel]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DualStorageEngine:
    """Writes an item to the primary store and mirrors it to the secondary store.

    The engine never retries; callers wrap ``save`` in a retry loop.
    """

    def __init__(
        self,
        primary: PrimaryStore,
        secondary: Optional[SecondaryStore],
        strategy: StorageStrategy,
        secondary_mode: SecondaryStoreMode = SecondaryStoreMode.FULL,
        transformer: Optional[SchemaTransformer] = None,
        validator: Optional[ConsistencyValidator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Any = None,
        has_service_role_key: bool = True,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.strategy = strategy
        self.secondary_mode = SecondaryStoreMode(secondary_mode)
        self.validator = validator or ConsistencyValidator(clock=clock)
        self.transformer = transformer or SchemaTransformer(self.validator)
        self.clock = clock or _utc_now
        self.logger = logger or structlog.get_logger(__name__)
        self.has_service_role_key = has_service_role_key

    # -- policy ----------------------------------------------------------

    def validate_strategy(self) -> None:
        if self.strategy.mode == StrategyMode.REQUIRED and self.secondary_mode == SecondaryStoreMode.DISABLED:
            raise StorageStrategyError(
                "Secondary store is disabled but the storage strategy requires it",
                strategy=self.strategy.mode.value,
                environment=self.strategy.environment,
            )
        if self.strategy.mode != StrategyMode.MOCK and not self.has_service_role_key:
            self.logger.warning(
                "secondary_store_without_service_role_key",
                environment=self.strategy.environment,
                secondary_mode=self.secondary_mode.value,
            )

    def should_write_secondary(self) -> bool:
        if self.secondary is None:
            return False
        mode = self.strategy.mode
        if mode in (StrategyMode.REQUIRED, StrategyMode.PREFERRED):
            return self.secondary_mode != SecondaryStoreMode.DISABLED
        if mode == StrategyMode.FALLBACK:
            return self.secondary_mode == SecondaryStoreMode.FULL
        return False

    @property
    def quality_check_enabled(self) -> bool:
        return self.strategy.environment in QUALITY_CHECK_ENVIRONMENTS

    # -- writes ----------------------------------------------------------

    async def save(self, item: StorageItem, actor: Actor) -> DualWriteResult:
        """Write ``item`` to both stores according to the strategy.

        Store failures are reported in the returned result. Strategy,
        validation and transformation errors are raised before anything is
        written; a failed rollback raises ``DualStorageError``.
        """
        started = time.perf_counter()
        kind = EntityKind(item.kind)
        if not actor or not actor.id:
            raise ValidationError("An actor id is required to write", field="actor.id")

        self.logger.info(
            "dual_write_started",
            kind=kind.value,
            item_id=item.id,
            project_id=item.project_id,
            strategy=self.strategy.mode.value,
            environment=self.strategy.environment,
            secondary_mode=self.secondary_mode.value,
        )
        self.validate_strategy()

        write_secondary = self.should_write_secondary()
        record: Optional[Dict[str, Any]] = None
        targets: Targets = []
        if write_secondary:
            record, targets = self.build_targets(item)

        row = {**item.row, "id": item.id, "updated_by": actor.id}
        table = PRIMARY_TABLES[kind]
        try:
            await with_timeout(self.primary.upsert(table, item.id, row), self.strategy.timeout_seconds)
        except (DomainException, asyncio.TimeoutError) as exc:
            code = getattr(exc, "code", "PRIMARY_TIMEOUT")
            self.logger.error("primary_write_failed", kind=kind.value, item_id=item.id, error=str(exc), code=code)
            return self._finish(
                kind,
                started,
                "primary_failed",
                success=False,
                primary=PrimaryOutcome(saved=False, id=item.id, error=self._describe(exc)),
                error=self._describe(exc),
                error_code=code,
            )

        if not write_secondary:
            return self._finish(
                kind,
                started,
                "primary_only",
                success=True,
                primary=PrimaryOutcome(saved=True, id=item.id),
            )

        tables, secondary_error = await self._write_targets(kind, item, targets)
        # the project refresh rides along; only the item's own collection counts
        secondary_saved = tables.get(SECONDARY_COLLECTIONS[kind], False)
        secondary = SecondaryOutcome(attempted=True, saved=secondary_saved, tables=tables, error=secondary_error)

        if not secondary_saved:
            if self.strategy.mode == StrategyMode.REQUIRED:
                await self._rollback(item)
                message = f"Secondary write failed, primary write rolled back: {secondary_error}"
                return self._finish(
                    kind,
                    started,
                    "rolled_back",
                    success=False,
                    primary=PrimaryOutcome(saved=False, id=item.id, error=message),
                    secondary=secondary,
                    rollback_executed=True,
                    error=message,
                    error_code="DUAL_STORAGE_ERROR",
                )
            self.logger.warning(
                "secondary_write_failed_continuing",
                kind=kind.value,
                item_id=item.id,
                strategy=self.strategy.mode.value,
                error=secondary_error,
            )
            return self._finish(
                kind,
                started,
                "partial",
                success=True,
                primary=PrimaryOutcome(saved=True, id=item.id),
                secondary=secondary,
            )

        if not all(tables.values()):
            self.logger.warning("secondary_write_partial", kind=kind.value, item_id=item.id, tables=tables)

        quality_report = None
        if self.quality_check_enabled and record is not None:
            quality_report = await self._quality_check(kind, record, targets)

        return self._finish(
            kind,
            started,
            "success",
            success=True,
            primary=PrimaryOutcome(saved=True, id=item.id),
            secondary=secondary,
            quality_report=quality_report,
        )

    def build_targets(self, item: StorageItem) -> Tuple[Dict[str, Any], Targets]:
        """Build the secondary documents for ``item`` without touching a store.

        A pipeline item is mirrored into its own collection and refreshes the
        project document, whose tags and status it may have changed. The
        project refresh runs only after the item landed and is best effort:
        its failure never rolls the item back.
        """
        kind = EntityKind(item.kind)
        if kind == EntityKind.PROJECT:
            record = build_record(item.row)
            return record, [(SECONDARY_COLLECTIONS[kind], self.transformer.to_project(record))]

        if item.project_row is None:
            raise ValidationError(f"A {kind.value} write needs its project row", field="project_row")
        record = build_record(item.project_row, kind, {**item.row, "id": item.id})
        targets: Targets = [(SECONDARY_COLLECTIONS[kind], self.transformer.transform(kind, record))]
        project_record = build_record(item.project_row)
        targets.append(
            (SECONDARY_COLLECTIONS[EntityKind.PROJECT], self.transformer.to_project(project_record))
        )
        return record, targets

    async def _write_targets(
        self,
        kind: EntityKind,
        item: StorageItem,
        targets: Targets,
    ) -> Tuple[Dict[str, bool], Optional[str]]:
        tables: Dict[str, bool] = {}
        errors: List[str] = []
        own_collection = SECONDARY_COLLECTIONS[kind]
        for collection, document in targets:
            if collection != own_collection and not tables.get(own_collection, False):
                break
            try:
                await with_timeout(
                    self.secondary.upsert(collection, document.id, document.to_store()),
                    self.strategy.timeout_seconds,
                )
                tables[collection] = True
            except (DomainException, asyncio.TimeoutError) as exc:
                tables[collection] = False
                errors.append(f"{collection}: {self._describe(exc)}")
                self.logger.error(
                    "secondary_write_failed",
                    kind=kind.value,
                    item_id=item.id,
                    collection=collection,
                    error=self._describe(exc),
                )
        return tables, "; ".join(errors) or None

    async def _rollback(self, item: StorageItem) -> None:
        kind = EntityKind(item.kind)
        table = PRIMARY_TABLES[kind]
        operation = "restore_primary" if item.previous_row is not None else "delete_primary"
        try:
            if item.previous_row is not None:
                await with_timeout(
                    self.primary.upsert(table, item.id, item.previous_row),
                    self.strategy.timeout_seconds,
                )
            else:
                await with_timeout(self.primary.delete(table, item.id), self.strategy.timeout_seconds)
        except EntityNotFoundError:
            self.logger.warning("rollback_row_already_absent", kind=kind.value, item_id=item.id)
        except (DomainException, asyncio.TimeoutError) as exc:
            ROLLBACK_TOTAL.labels(kind=kind.value, outcome="failed").inc()
            self.logger.critical(
                "rollback_failed",
                kind=kind.value,
                item_id=item.id,
                operation=operation,
                error=self._describe(exc),
                requires_manual_intervention=True,
            )
            raise DualStorageError(
                f"Rollback of {kind.value} {item.id} failed, stores are inconsistent",
                details={"item_id": item.id, "kind": kind.value, "operation": operation, "error": self._describe(exc)},
                rollback_failed=True,
            ) from exc
        ROLLBACK_TOTAL.labels(kind=kind.value, outcome="succeeded").inc()
        self.logger.info("rollback_succeeded", kind=kind.value, item_id=item.id, operation=operation)

    async def _quality_check(
        self,
        kind: EntityKind,
        record: Dict[str, Any],
        targets: Targets,
    ) -> Optional[DataQualityReport]:
        collection = SECONDARY_COLLECTIONS[kind]
        document_id = next(document.id for name, document in targets if name == collection)
        try:
            stored = await with_timeout(
                self.secondary.find_by_id(collection, document_id),
                self.strategy.timeout_seconds,
            )
            report = self.validator.validate(record, {kind: stored})
        except (DomainException, asyncio.TimeoutError) as exc:
            # The write already succeeded; a failed audit only gets logged.
            self.logger.warning("quality_check_failed", kind=kind.value, error=self._describe(exc))
            return None
        if not report.is_consistent:
            self.logger.warning(
                "quality_check_inconsistent",
                kind=kind.value,
                document_id=document_id,
                score=report.score,
                violations=[v.field for v in report.violations],
            )
        return report

    # -- deletes and audits ----------------------------------------------

    async def remove(self, kind: EntityKind, entity_id: str) -> bool:
        """Delete the primary row, then the secondary document.

        Returns whether the secondary delete succeeded; a missing primary
        row raises ``EntityNotFoundError``. Removing a project also clears
        pipeline documents still filed under it.
        """
        kind = EntityKind(kind)
        await with_timeout(
            self.primary.delete(PRIMARY_TABLES[kind], entity_id),
            self.strategy.timeout_seconds,
        )
        if not self.should_write_secondary():
            return False
        if kind == EntityKind.PROJECT:
            await self._sweep_project_documents(entity_id)
        try:
            await with_timeout(
                self.secondary.delete(SECONDARY_COLLECTIONS[kind], entity_id),
                self.strategy.timeout_seconds,
            )
        except (DomainException, asyncio.TimeoutError) as exc:
            self.logger.warning(
                "secondary_delete_failed",
                kind=kind.value,
                entity_id=entity_id,
                error=self._describe(exc),
            )
            return False
        return True

    async def _sweep_project_documents(self, project_id: str) -> None:
        """Delete pipeline documents of a removed project that earlier deletes left behind."""
        for kind in PIPELINE_KINDS:
            collection = SECONDARY_COLLECTIONS[kind]
            try:
                documents = await with_timeout(
                    self.secondary.find_by_project(collection, project_id),
                    self.strategy.timeout_seconds,
                )
                for document in documents:
                    await with_timeout(
                        self.secondary.delete(collection, document["id"]),
                        self.strategy.timeout_seconds,
                    )
                    self.logger.info("stale_document_removed", collection=collection, document_id=document["id"])
            except (DomainException, asyncio.TimeoutError) as exc:
                self.logger.warning(
                    "stale_document_sweep_failed",
                    collection=collection,
                    project_id=project_id,
                    error=self._describe(exc),
                )

    async def check_consistency(self, project_id: str) -> Dict[str, DataQualityReport]:
        """Compare every persisted kind of a project with its secondary document."""
        return await self._check(await self._records(project_id))

    async def repair(self, project_id: str) -> int:
        """Re-mirror every kind whose secondary document shows a violation."""
        if not self.should_write_secondary():
            raise StorageStrategyError(
                "Secondary writes are not enabled, nothing can be repaired",
                strategy=self.strategy.mode.value,
                environment=self.strategy.environment,
            )
        records = await self._records(project_id)
        reports = await self._check(records)
        repaired = 0
        for kind, record in records:
            if not reports[kind.value].violations:
                continue
            document = self.transformer.transform(kind, record)
            await with_timeout(
                self.secondary.upsert(SECONDARY_COLLECTIONS[kind], document.id, document.to_store()),
                self.strategy.timeout_seconds,
            )
            repaired += 1
            self.logger.info("secondary_document_repaired", kind=kind.value, document_id=document.id)
        return repaired

    async def _check(self, records: List[Tuple[EntityKind, Dict[str, Any]]]) -> Dict[str, DataQualityReport]:
        reports: Dict[str, DataQualityReport] = {}
        for kind, record in records:
            stored = None
            if self.secondary is not None:
                document_id = record.get("entity_id") or record["id"]
                stored = await with_timeout(
                    self.secondary.find_by_id(SECONDARY_COLLECTIONS[kind], document_id),
                    self.strategy.timeout_seconds,
                )
            reports[kind.value] = self.validator.validate(record, {kind: stored})
        return reports

    async def _records(self, project_id: str) -> List[Tuple[EntityKind, Dict[str, Any]]]:
        project_row = await with_timeout(
            self.primary.find_by_id(PRIMARY_TABLES[EntityKind.PROJECT], project_id),
            self.strategy.timeout_seconds,
        )
        if project_row is None:
            raise EntityNotFoundError(f"Project {project_id} not found", code="PROJECT_NOT_FOUND")

        records = [(EntityKind.PROJECT, build_record(project_row))]
        pipeline = project_row.get("pipeline") or {}
        for kind in PIPELINE_KINDS:
            entity_id = (pipeline.get(kind.value) or {}).get("id")
            if not entity_id:
                continue
            entity_row = await with_timeout(
                self.primary.find_by_id(PRIMARY_TABLES[kind], entity_id),
                self.strategy.timeout_seconds,
            )
            if entity_row is None:
                self.logger.warning("linked_entity_missing", kind=kind.value, entity_id=entity_id)
                continue
            records.append((kind, build_record(project_row, kind, entity_row)))
        return records

    # -- helpers ---------------------------------------------------------

    def _finish(self, kind: EntityKind, started: float, outcome: str, **fields: Any) -> DualWriteResult:
        elapsed = time.perf_counter() - started
        DUAL_WRITE_TOTAL.labels(kind=kind.value, outcome=outcome).inc()
        DUAL_WRITE_LATENCY.labels(kind=kind.value).observe(elapsed)
        result = DualWriteResult(
            timestamp=self.clock().isoformat(),
            latency_ms=round(elapsed * 1000, 3),
            **fields,
        )
        self.logger.info(
            "dual_write_finished",
            kind=kind.value,
            outcome=outcome,
            success=result.success,
            rollback_executed=result.rollback_executed,
            latency_ms=result.latency_ms,
        )
        return result

    @staticmethod
    def _describe(exc: BaseException) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return "operation timed out"
        return str(exc)
