"""Project repository - cached, retrying facade over the dual storage engine."""
from __future__ import annotations

import asyncio
import hashlib
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type, TypeVar, Union

import structlog
from pydantic import BaseModel, ValidationError as PydanticValidationError

from planforge.domains.pipeline.domain.entities import (
    ENTITY_CLASSES,
    PIPELINE_KINDS,
    PRIMARY_TABLES,
    EntityKind,
    PipelineEntity,
    entity_from_row,
)
from planforge.domains.project.domain.entities import (
    DEFAULT_PERMISSIONS,
    Collaborator,
    Project,
    ProjectVersion,
)
from planforge.domains.storage.domain.value_objects import Actor, StorageItem
from planforge.infrastructure.resilience.retry import retry_operation
from planforge.infrastructure.resilience.timeout import with_timeout
from planforge.schemas.project import (
    CollaboratorCreate,
    PipelineTransactionInput,
    ProjectCreate,
    ProjectListOptions,
    ProjectUpdate,
    PromptInput,
    ScenarioInput,
    ShareLinkCreate,
    StoryInput,
    VersionCreate,
    VideoInput,
    VideoProgressUpdate,
)
from planforge.schemas.storage import DualWriteResult
from planforge.services.cache_service import RepositoryCache
from planforge.services.dual_storage_engine import DualStorageEngine
from planforge.shared_kernel.exceptions import (
    DomainException,
    DualStorageError,
    DuplicateProjectError,
    EntityNotFoundError,
    PrimaryStoreError,
    ValidationError,
)
from planforge.shared_kernel.result import ServiceResponse

M = TypeVar("M", bound=BaseModel)

PROJECTS_TABLE = PRIMARY_TABLES[EntityKind.PROJECT]
SHARE_LINKS_TABLE = "share_links"
DUPLICATE_PROJECT_MESSAGE = "A project with this name already exists."

STAGE_INPUTS: Dict[EntityKind, Type[BaseModel]] = {
    EntityKind.STORY: StoryInput,
    EntityKind.SCENARIO: ScenarioInput,
    EntityKind.PROMPT: PromptInput,
    EntityKind.VIDEO: VideoInput,
}

# Stages that complete by hand; a video completes when its job does.
STAGE_KINDS = (EntityKind.STORY, EntityKind.SCENARIO, EntityKind.PROMPT)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse(model: Type[M], data: Union[M, Dict[str, Any]]) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or model.__name__
        raise ValidationError(f"Invalid {field}: {error['msg']}", field=field) from exc


class ProjectRepository:
    """
    The only entry point the application uses for project persistence.

    Every public coroutine returns a ``ServiceResponse``; store and domain
    errors are converted at this boundary and never propagate. Mutating
    operations invalidate the affected cache keys before returning, whether
    they succeed or not.
    """

    def __init__(
        self,
        engine: DualStorageEngine,
        cache: Optional[RepositoryCache] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        logger: Any = None,
        app_url: str = "https://videoplanet.app",
        user_projects_ttl: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.primary = engine.primary
        self.cache = cache if cache is not None else RepositoryCache()
        self.retry_attempts = max(1, engine.strategy.retry_attempts if retry_attempts is None else retry_attempts)
        self.retry_delay = retry_delay
        self.clock = clock or _utc_now
        self.id_factory = id_factory or _new_id
        self.logger = logger or structlog.get_logger(__name__)
        self.app_url = app_url.rstrip("/")
        self.user_projects_ttl = user_projects_ttl
        self._sleep = sleep
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(self, data: Union[ProjectCreate, Dict[str, Any]]) -> ServiceResponse[Project]:
        owner_id: Optional[str] = None
        project_id: Optional[str] = None
        try:
            request = _parse(ProjectCreate, data)
            owner_id = request.user_id
            project = Project.create(
                project_id=self.id_factory(),
                title=request.title,
                owner_id=request.user_id,
                now=self.clock(),
                description=request.description,
                metadata=request.metadata,
            )
            project_id = project.id
            item = StorageItem(kind=EntityKind.PROJECT, id=project.id, project_id=project.id, row=project.to_row())
            await self._dual_write(item, Actor(id=request.user_id))
        except Exception as exc:
            if project_id:
                self._invalidate(project_id, owner_id)
            return self._fail("create_project", exc, project_id=project_id)

        self._invalidate(project.id, project.owner_id)
        self.cache.set(self.cache.project_key(project.id), project.to_row())
        self.logger.info("project_created", project_id=project.id, owner_id=project.owner_id)
        return ServiceResponse.ok(project)

    async def get_project_workspace(self, project_id: str) -> ServiceResponse[Project]:
        """Cache-first read; ``last_accessed_at`` is refreshed on every access."""
        key = self.cache.project_key(project_id)
        cached = self.cache.get(key)
        if cached is not None:
            self._spawn(self._touch(project_id), name=f"touch:{project_id}")
            return ServiceResponse.ok(Project.from_row(cached), cached=True)

        try:
            row = await self._load_project_row(project_id)
        except Exception as exc:
            return self._fail("get_project_workspace", exc, project_id=project_id)

        row["last_accessed_at"] = self.clock().isoformat()
        try:
            await self._primary_call(
                self.primary.update(PROJECTS_TABLE, project_id, {"last_accessed_at": row["last_accessed_at"]})
            )
        except (DomainException, asyncio.TimeoutError) as exc:
            self.logger.warning("last_accessed_update_failed", project_id=project_id, error=str(exc))

        self.cache.set(key, row)
        return ServiceResponse.ok(Project.from_row(row), cached=False)

    async def update_project_workspace(
        self,
        project_id: str,
        patch: Union[ProjectUpdate, Dict[str, Any]],
    ) -> ServiceResponse[Project]:
        owner_id = None
        try:
            changes = _parse(ProjectUpdate, patch)
            previous = await self._load_project_row(project_id)
            project = Project.from_row(previous)
            owner_id = project.owner_id
            now = self.clock()

            if changes.title is not None:
                project.title = changes.title.strip()
            if changes.description is not None:
                project.description = changes.description
            if changes.metadata is not None:
                project.metadata.update(changes.metadata)
            if changes.status is not None:
                project.transition_to(changes.status, now)
            project.updated_at = now

            await self._write_project(project, previous)
        except Exception as exc:
            return self._fail("update_project_workspace", exc, project_id=project_id)
        finally:
            self._invalidate(project_id, owner_id)

        return ServiceResponse.ok(project)

    async def get_user_projects(
        self,
        user_id: str,
        options: Union[ProjectListOptions, Dict[str, Any], None] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        try:
            opts = _parse(ProjectListOptions, options or {})
        except ValidationError as exc:
            return self._fail("get_user_projects", exc, user_id=user_id)

        key = self.cache.user_projects_key(user_id, opts.cache_fragment())
        cached = self.cache.get(key)
        if cached is None:
            filters: Dict[str, Any] = {"owner_id": user_id}
            if opts.status is not None:
                filters["status"] = opts.status.value
            try:
                rows, total = await self._retry(
                    lambda: self._primary_call(
                        self.primary.find_many(
                            PROJECTS_TABLE,
                            filters,
                            search=opts.search,
                            sort_by=opts.sort_by,
                            sort_order=opts.sort_order,
                            offset=(opts.page - 1) * opts.limit,
                            limit=opts.limit,
                        )
                    )
                )
            except Exception as exc:
                return self._fail("get_user_projects", exc, user_id=user_id)
            cached = {"rows": rows, "total": total}
            self.cache.set(key, cached, ttl=self.user_projects_ttl)

        return ServiceResponse.ok(
            {
                "projects": [Project.from_row(row) for row in cached["rows"]],
                "total": cached["total"],
                "page": opts.page,
                "limit": opts.limit,
            }
        )

    async def delete_project(self, project_id: str, cascade: bool = False) -> ServiceResponse[Dict[str, Any]]:
        """Delete a project; linked pipeline entities must go first unless ``cascade``."""
        owner_id = None
        removed: List[str] = []
        try:
            project = Project.from_row(await self._load_project_row(project_id))
            owner_id = project.owner_id
            linked = await self._pipeline_rows(project_id)
            if linked and not cascade:
                raise ValidationError(
                    f"Project {project_id} still has {len(linked)} pipeline entities",
                    field="cascade",
                    details={"entities": [f"{kind.value}:{row['id']}" for kind, row in linked]},
                )
            for kind, row in linked:
                await self._retry(lambda kind=kind, row=row: self.engine.remove(kind, row["id"]))
                removed.append(row["id"])
            await self._retry(lambda: self.engine.remove(EntityKind.PROJECT, project_id))
        except Exception as exc:
            return self._fail("delete_project", exc, project_id=project_id, removed=removed)
        finally:
            self._invalidate(project_id, owner_id)

        self.logger.info("project_deleted", project_id=project_id, cascade=cascade, entities=len(removed))
        return ServiceResponse.ok({"project_id": project_id, "deleted": True, "entities_removed": removed})

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    async def save_story_to_project(
        self,
        project_id: str,
        story: Union[StoryInput, Dict[str, Any]],
        actor_id: Optional[str] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        return await self._save_stage(EntityKind.STORY, project_id, story, actor_id)

    async def save_scenario_to_project(
        self,
        project_id: str,
        scenario: Union[ScenarioInput, Dict[str, Any]],
        actor_id: Optional[str] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        return await self._save_stage(EntityKind.SCENARIO, project_id, scenario, actor_id)

    async def save_prompt_to_project(
        self,
        project_id: str,
        prompt: Union[PromptInput, Dict[str, Any]],
        actor_id: Optional[str] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        return await self._save_stage(EntityKind.PROMPT, project_id, prompt, actor_id)

    async def save_video_to_project(
        self,
        project_id: str,
        video: Union[VideoInput, Dict[str, Any]],
        actor_id: Optional[str] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        return await self._save_stage(EntityKind.VIDEO, project_id, video, actor_id)

    async def _save_stage(
        self,
        kind: EntityKind,
        project_id: str,
        data: Any,
        actor_id: Optional[str],
    ) -> ServiceResponse[Dict[str, Any]]:
        owner_id = None
        entity: Optional[PipelineEntity] = None
        try:
            payload = _parse(STAGE_INPUTS[kind], data)
            previous = await self._load_project_row(project_id)
            project = Project.from_row(previous)
            owner_id = project.owner_id
            actor = Actor(id=actor_id or project.owner_id)

            entity = self._build_entity(kind, project, payload, transaction_id=None)
            await self._dual_write(self._stage_item(entity, project), actor)
            try:
                await self._retry(lambda: self._primary_call(self.primary.upsert(PROJECTS_TABLE, project_id, project.to_row())))
            except Exception:
                await self._discard_entity(kind, entity.id)
                raise
        except Exception as exc:
            return self._fail(
                f"save_{kind.value}_to_project",
                exc,
                project_id=project_id,
                entity_id=entity.id if entity else None,
            )
        finally:
            self._invalidate(project_id, owner_id)

        ack: Dict[str, Any] = {"entity_id": entity.id, "project_id": project_id, "saved": True}
        if kind == EntityKind.VIDEO:
            ack["job_id"] = entity.job_id
        self.logger.info("pipeline_entity_saved", kind=kind.value, entity_id=entity.id, project_id=project_id)
        return ServiceResponse.ok(ack)

    async def delete_pipeline_entity(
        self,
        project_id: str,
        kind: Union[EntityKind, str],
        entity_id: str,
    ) -> ServiceResponse[Dict[str, Any]]:
        """Remove one stage entity. Its tag stays on the project; the stage resets."""
        owner_id = None
        try:
            kind = EntityKind(kind)
            if kind not in PIPELINE_KINDS:
                raise ValidationError(f"{kind.value} is not a pipeline entity", field="kind")
            project = Project.from_row(await self._load_project_row(project_id))
            owner_id = project.owner_id
            await self._load_entity_row(kind, project_id, entity_id)
            await self._retry(lambda: self.engine.remove(kind, entity_id))
            if project.stage_entity_id(kind) == entity_id:
                project.unlink_stage(kind, self.clock())
                await self._retry(
                    lambda: self._primary_call(self.primary.upsert(PROJECTS_TABLE, project_id, project.to_row()))
                )
        except Exception as exc:
            return self._fail("delete_pipeline_entity", exc, project_id=project_id, entity_id=entity_id)
        finally:
            self._invalidate(project_id, owner_id)

        return ServiceResponse.ok({"entity_id": entity_id, "project_id": project_id, "deleted": True})

    async def complete_pipeline_stage(
        self,
        project_id: str,
        kind: Union[EntityKind, str],
        entity_id: str,
        actor_id: Optional[str] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        """Mark a story, scenario or prompt completed; videos complete through their job."""
        try:
            kind = EntityKind(kind)
        except ValueError as exc:
            return self._fail("complete_pipeline_stage", ValidationError(str(exc), field="kind"), project_id=project_id)
        if kind not in STAGE_KINDS:
            error = ValidationError(f"{kind.value} stages cannot be completed directly", field="kind")
            return self._fail("complete_pipeline_stage", error, project_id=project_id, entity_id=entity_id)

        def complete(entity: PipelineEntity, now: datetime) -> None:
            entity.complete(now)  # type: ignore[attr-defined]

        return await self._advance_entity("complete_pipeline_stage", kind, project_id, entity_id, actor_id, complete)

    async def update_video_generation(
        self,
        project_id: str,
        video_id: str,
        update: Union[VideoProgressUpdate, Dict[str, Any]],
        actor_id: Optional[str] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        """Record provider progress: ``queued -> processing -> completed|failed`` plus result urls."""
        try:
            changes = _parse(VideoProgressUpdate, update)
        except ValidationError as exc:
            return self._fail("update_video_generation", exc, project_id=project_id, entity_id=video_id)

        def apply(video: PipelineEntity, now: datetime) -> None:
            if changes.status is not None:
                video.transition_to(changes.status, now)  # type: ignore[attr-defined]
            for name in ("job_id", "video_url", "thumbnail_url", "duration"):
                value = getattr(changes, name)
                if value is not None:
                    setattr(video, name, value)
                    video.updated_at = now
            if video.is_completed and not video.video_url:  # type: ignore[attr-defined]
                raise ValidationError("A completed video needs a video_url", field="video_url")

        return await self._advance_entity("update_video_generation", EntityKind.VIDEO, project_id, video_id, actor_id, apply)

    async def _advance_entity(
        self,
        operation: str,
        kind: EntityKind,
        project_id: str,
        entity_id: str,
        actor_id: Optional[str],
        apply: Callable[[PipelineEntity, datetime], None],
    ) -> ServiceResponse[Dict[str, Any]]:
        owner_id = None
        try:
            previous_project_row = await self._load_project_row(project_id)
            project = Project.from_row(previous_project_row)
            owner_id = project.owner_id
            previous_row = await self._load_entity_row(kind, project_id, entity_id)
            entity = entity_from_row(kind, previous_row)
            now = self.clock()
            try:
                apply(entity, now)
            except ValueError as exc:
                raise ValidationError(str(exc), field="status") from exc

            if project.stage_entity_id(kind) == entity.id:
                extra: Dict[str, Any] = {}
                if kind == EntityKind.VIDEO:
                    extra = {"job_id": entity.job_id, "video_url": entity.video_url}  # type: ignore[attr-defined]
                project.link_stage(kind, entity.id, entity.is_completed, now, **extra)

            item = StorageItem(
                kind=kind,
                id=entity.id,
                project_id=project_id,
                row=entity.to_row(),
                project_row=project.to_row(),
                previous_row=previous_row,
            )
            await self._dual_write(item, Actor(id=actor_id or project.owner_id))
            try:
                await self._retry(lambda: self._primary_call(self.primary.upsert(PROJECTS_TABLE, project_id, project.to_row())))
            except Exception:
                await self._restore_entity(item, previous_project_row)
                raise
        except Exception as exc:
            return self._fail(operation, exc, project_id=project_id, entity_id=entity_id)
        finally:
            self._invalidate(project_id, owner_id)

        self.logger.info(
            "pipeline_entity_advanced",
            kind=kind.value,
            entity_id=entity.id,
            project_id=project_id,
            status=entity.status.value,  # type: ignore[attr-defined]
        )
        return ServiceResponse.ok(
            {
                "entity_id": entity.id,
                "project_id": project_id,
                "status": entity.status.value,  # type: ignore[attr-defined]
                "completed": entity.is_completed,
            }
        )

    # ------------------------------------------------------------------
    # Pipeline transactions
    # ------------------------------------------------------------------

    async def save_pipeline_transaction(
        self,
        project_id: str,
        data: Union[PipelineTransactionInput, Dict[str, Any]],
        actor_id: Optional[str] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        """
        Persist several stage entities as one logical unit.

        Every row is stamped with the transaction id. When a write fails
        partway, the rows already written under that id are removed; the
        project row is only updated once all entity writes succeeded.
        """
        transaction_id = self.id_factory()
        owner_id = None
        writing = False
        ids: Dict[str, str] = {}
        try:
            request = _parse(PipelineTransactionInput, data)
            stages = [(kind, getattr(request, kind.value)) for kind in PIPELINE_KINDS]
            stages = [(kind, payload) for kind, payload in stages if payload is not None]
            if not stages:
                raise ValidationError("A pipeline transaction needs at least one stage", field="stages")

            previous = await self._load_project_row(project_id)
            project = Project.from_row(previous)
            owner_id = project.owner_id
            actor = Actor(id=actor_id or project.owner_id)

            writing = True
            for kind, payload in stages:
                entity = self._build_entity(kind, project, payload, transaction_id=transaction_id)
                await self._dual_write(self._stage_item(entity, project), actor)
                ids[f"{kind.value}_id"] = entity.id

            await self._retry(lambda: self._primary_call(self.primary.upsert(PROJECTS_TABLE, project_id, project.to_row())))
        except Exception as exc:
            if writing:
                rollback = await self.rollback_partial_transaction(transaction_id)
                if rollback.is_failure:
                    self.logger.critical(
                        "pipeline_transaction_rollback_failed",
                        transaction_id=transaction_id,
                        project_id=project_id,
                        saved=ids,
                        error=rollback.error,
                        requires_manual_intervention=True,
                    )
            self._invalidate(project_id, owner_id)
            return self._fail(
                "save_pipeline_transaction",
                exc,
                project_id=project_id,
                transaction_id=transaction_id,
                partial=ids,
            )

        self._invalidate(project_id, owner_id)
        self.logger.info("pipeline_transaction_saved", transaction_id=transaction_id, project_id=project_id, ids=ids)
        return ServiceResponse.ok({"project_id": project_id, "transaction_id": transaction_id, **ids})

    async def rollback_partial_transaction(self, transaction_id: str) -> ServiceResponse[Dict[str, Any]]:
        """Remove every entity written under ``transaction_id`` and unlink it from its project."""
        removed: List[str] = []
        failed: List[Dict[str, Any]] = []
        projects: Set[str] = set()
        try:
            partial = await self._transaction_rows(transaction_id)
        except Exception as exc:
            return self._fail("rollback_partial_transaction", exc, transaction_id=transaction_id)

        for kind_value, rows in partial.items():
            kind = EntityKind(kind_value)
            for row in rows:
                try:
                    await self._retry(lambda kind=kind, row=row: self.engine.remove(kind, row["id"]))
                    removed.append(row["id"])
                    projects.add(row["project_id"])
                except EntityNotFoundError:
                    continue
                except Exception as exc:
                    failed.append({"kind": kind.value, "id": row["id"], "error": str(exc)})

        for project_id in projects:
            try:
                await self._unlink_transaction(project_id, removed)
            except Exception as exc:
                failed.append({"kind": EntityKind.PROJECT.value, "id": project_id, "error": str(exc)})
            self._invalidate(project_id)

        if failed:
            self.logger.error("transaction_rollback_incomplete", transaction_id=transaction_id, failed=failed)
            return ServiceResponse.fail(
                f"Rollback of transaction {transaction_id} left {len(failed)} rows behind",
                code="ROLLBACK_FAILED",
                removed=removed,
                failed=failed,
            )
        self.logger.info("transaction_rolled_back", transaction_id=transaction_id, removed=removed)
        return ServiceResponse.ok({"transaction_id": transaction_id, "removed": removed})

    async def recover_partial_transaction(self, transaction_id: str) -> ServiceResponse[Dict[str, Any]]:
        """Read back whatever was persisted under ``transaction_id``. Never raises."""
        try:
            partial = await self._transaction_rows(transaction_id)
        except Exception as exc:
            self.logger.error("transaction_recovery_failed", transaction_id=transaction_id, error=str(exc))
            return ServiceResponse.ok({"recovered": False, "partial_data": {}}, error=str(exc))
        return ServiceResponse.ok({"recovered": bool(partial), "partial_data": partial})

    async def _transaction_rows(self, transaction_id: str) -> Dict[str, List[Dict[str, Any]]]:
        partial: Dict[str, List[Dict[str, Any]]] = {}
        for kind in PIPELINE_KINDS:
            rows, _ = await self._retry(
                lambda kind=kind: self._primary_call(
                    self.primary.find_many(PRIMARY_TABLES[kind], {"transaction_id": transaction_id})
                )
            )
            if rows:
                partial[kind.value] = rows
        return partial

    async def _unlink_transaction(self, project_id: str, removed: List[str]) -> None:
        row = await self._retry(lambda: self._primary_call(self.primary.find_by_id(PROJECTS_TABLE, project_id)))
        if row is None:
            return
        project = Project.from_row(row)
        stale = [kind for kind in PIPELINE_KINDS if project.stage_entity_id(kind) in removed]
        if not stale:
            return
        now = self.clock()
        for kind in stale:
            project.unlink_stage(kind, now)
        await self._retry(lambda: self._primary_call(self.primary.upsert(PROJECTS_TABLE, project_id, project.to_row())))

    # ------------------------------------------------------------------
    # Collaboration and versions
    # ------------------------------------------------------------------

    async def add_collaborator(
        self,
        project_id: str,
        data: Union[CollaboratorCreate, Dict[str, Any]],
    ) -> ServiceResponse[Dict[str, Any]]:
        owner_id = None
        try:
            request = _parse(CollaboratorCreate, data)
            previous = await self._load_project_row(project_id)
            project = Project.from_row(previous)
            owner_id = project.owner_id
            now = self.clock()
            collaborator = Collaborator(
                user_id=request.user_id,
                role=request.role,
                permissions=list(request.permissions or DEFAULT_PERMISSIONS[request.role]),
                added_at=now,
            )
            project.add_collaborator(collaborator, now)
            await self._write_project(project, previous)
        except Exception as exc:
            return self._fail("add_collaborator", exc, project_id=project_id)
        finally:
            self._invalidate(project_id, owner_id)

        return ServiceResponse.ok({"project_id": project_id, **collaborator.to_dict()})

    async def create_share_link(
        self,
        project_id: str,
        data: Union[ShareLinkCreate, Dict[str, Any], None] = None,
    ) -> ServiceResponse[Dict[str, Any]]:
        try:
            request = _parse(ShareLinkCreate, data or {})
            await self._load_project_row(project_id)
            token = self.id_factory()
            expires_at = request.expires_at.isoformat() if request.expires_at else None
            row = {
                "id": token,
                "project_id": project_id,
                "permissions": list(request.permissions),
                "expires_at": expires_at,
                "max_uses": request.max_uses,
                "use_count": 0,
                # Only a digest of the password is stored.
                "password_hash": hashlib.sha256(request.password.encode()).hexdigest() if request.password else None,
                "created_at": self.clock().isoformat(),
            }
            await self._retry(lambda: self._primary_call(self.primary.upsert(SHARE_LINKS_TABLE, token, row)))
        except Exception as exc:
            return self._fail("create_share_link", exc, project_id=project_id)
        finally:
            self._invalidate(project_id)

        return ServiceResponse.ok(
            {
                "share_token": token,
                "share_url": f"{self.app_url}/share/{token}",
                "expires_at": expires_at,
            }
        )

    async def create_version(
        self,
        project_id: str,
        data: Union[VersionCreate, Dict[str, Any]],
    ) -> ServiceResponse[Dict[str, Any]]:
        owner_id = None
        try:
            request = _parse(VersionCreate, data)
            previous = await self._load_project_row(project_id)
            project = Project.from_row(previous)
            owner_id = project.owner_id
            now = self.clock()
            version = ProjectVersion(
                id=self.id_factory(),
                version=project.next_version(),
                description=request.description,
                changes=dict(request.changes),
                created_at=now,
                created_by=request.created_by,
            )
            project.add_version(version, now)
            await self._write_project(project, previous)
        except Exception as exc:
            return self._fail("create_version", exc, project_id=project_id)
        finally:
            self._invalidate(project_id, owner_id)

        return ServiceResponse.ok(
            {
                "version_id": version.id,
                "project_id": project_id,
                "version": str(version.version),
                "created_at": version.created_at.isoformat(),
            }
        )

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    async def check_data_consistency(self, project_id: str) -> ServiceResponse[Dict[str, Any]]:
        try:
            reports = await self._retry(lambda: self.engine.check_consistency(project_id))
        except Exception as exc:
            return self._fail("check_data_consistency", exc, project_id=project_id)

        inconsistencies = [
            {"kind": kind, **violation.model_dump(mode="json")}
            for kind, report in reports.items()
            for violation in report.violations
        ]
        return ServiceResponse.ok(
            {
                "is_consistent": all(report.is_consistent for report in reports.values()),
                "reports": reports,
                "inconsistencies": inconsistencies,
            }
        )

    async def repair_data_inconsistency(self, project_id: str) -> ServiceResponse[Dict[str, Any]]:
        try:
            repaired = await self._retry(lambda: self.engine.repair(project_id))
        except Exception as exc:
            return self._fail("repair_data_inconsistency", exc, project_id=project_id)
        finally:
            self._invalidate(project_id)
        return ServiceResponse.ok({"repaired": repaired})

    # ------------------------------------------------------------------
    # Retry, cache
    # ------------------------------------------------------------------

    async def retry_operation(self, func: Callable[[], Awaitable[Any]], attempts: int = 3) -> Any:
        """Run ``func`` with linear backoff; the last error is re-raised untouched."""
        return await retry_operation(func, attempts=attempts, delay=self.retry_delay, sleep=self._sleep)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    async def wait_for_background_tasks(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _retry(self, func: Callable[[], Awaitable[Any]]) -> Any:
        return await self.retry_operation(func, attempts=self.retry_attempts)

    async def _primary_call(self, coro: Awaitable[Any]) -> Any:
        return await with_timeout(coro, self.engine.strategy.timeout_seconds)

    async def _dual_write(self, item: StorageItem, actor: Actor) -> DualWriteResult:
        async def attempt() -> DualWriteResult:
            result = await self.engine.save(item, actor)
            if not result.success:
                raise self._result_error(item, result)
            return result

        return await self._retry(attempt)

    @staticmethod
    def _result_error(item: StorageItem, result: DualWriteResult) -> DomainException:
        details = {"item_id": item.id, "kind": EntityKind(item.kind).value}
        if result.error_code == "UNIQUE_CONSTRAINT":
            return DuplicateProjectError(DUPLICATE_PROJECT_MESSAGE, code="DUPLICATE_PROJECT", details=details)
        if result.rollback_executed:
            return DualStorageError(result.error or "Secondary write failed", details=details)
        return PrimaryStoreError(
            result.error or "Primary write failed",
            code=result.error_code or "PRIMARY_STORE_ERROR",
            details=details,
        )

    async def _load_entity_row(self, kind: EntityKind, project_id: str, entity_id: str) -> Dict[str, Any]:
        row = await self._retry(
            lambda: self._primary_call(self.primary.find_by_id(PRIMARY_TABLES[kind], entity_id))
        )
        if row is None or row.get("project_id") != project_id:
            raise EntityNotFoundError(
                f"{kind.value} {entity_id} not found in project {project_id}",
                code="NOT_FOUND",
            )
        return row

    async def _load_project_row(self, project_id: str) -> Dict[str, Any]:
        row = await self._retry(lambda: self._primary_call(self.primary.find_by_id(PROJECTS_TABLE, project_id)))
        if row is None:
            raise EntityNotFoundError(f"Project {project_id} not found", code="PROJECT_NOT_FOUND")
        return row

    async def _write_project(self, project: Project, previous: Dict[str, Any]) -> None:
        item = StorageItem(
            kind=EntityKind.PROJECT,
            id=project.id,
            project_id=project.id,
            row=project.to_row(),
            previous_row=previous,
        )
        await self._dual_write(item, Actor(id=project.owner_id))

    async def _pipeline_rows(self, project_id: str) -> List[Any]:
        linked = []
        for kind in PIPELINE_KINDS:
            rows, _ = await self._retry(
                lambda kind=kind: self._primary_call(
                    self.primary.find_many(PRIMARY_TABLES[kind], {"project_id": project_id})
                )
            )
            linked.extend((kind, row) for row in rows)
        return linked

    def _build_entity(
        self,
        kind: EntityKind,
        project: Project,
        payload: BaseModel,
        transaction_id: Optional[str],
    ) -> PipelineEntity:
        """Create the entity and link it on ``project`` (in memory only)."""
        now = self.clock()
        entity = ENTITY_CLASSES[kind](
            id=self.id_factory(),
            project_id=project.id,
            created_at=now,
            updated_at=now,
            transaction_id=transaction_id,
            **_parse(STAGE_INPUTS[kind], payload).model_dump(),
        )
        extra: Dict[str, Any] = {}
        if kind == EntityKind.VIDEO:
            extra = {"job_id": entity.job_id, "video_url": entity.video_url}
        project.link_stage(kind, entity.id, entity.is_completed, now, **extra)
        return entity

    @staticmethod
    def _stage_item(entity: PipelineEntity, project: Project) -> StorageItem:
        return StorageItem(
            kind=entity.kind,
            id=entity.id,
            project_id=project.id,
            row=entity.to_row(),
            project_row=project.to_row(),
        )

    async def _discard_entity(self, kind: EntityKind, entity_id: str) -> None:
        try:
            await self.engine.remove(kind, entity_id)
        except Exception as exc:
            self.logger.critical(
                "orphan_entity_cleanup_failed",
                kind=kind.value,
                entity_id=entity_id,
                error=str(exc),
                requires_manual_intervention=True,
            )

    async def _restore_entity(self, item: StorageItem, project_row: Dict[str, Any]) -> None:
        """Put back the entity row an unfinished update replaced."""
        restore = StorageItem(
            kind=item.kind,
            id=item.id,
            project_id=item.project_id,
            row=item.previous_row or {},
            project_row=project_row,
            previous_row=item.row,
        )
        try:
            result = await self.engine.save(restore, Actor(id=project_row["owner_id"]))
            error = None if result.success else (result.error or "restore write failed")
        except Exception as exc:
            error = str(exc)
        if error is not None:
            self.logger.critical(
                "entity_restore_failed",
                kind=EntityKind(item.kind).value,
                entity_id=item.id,
                error=error,
                requires_manual_intervention=True,
            )

    async def _touch(self, project_id: str) -> None:
        """Write only ``last_accessed_at`` so a concurrent update is never overwritten."""
        try:
            await self._primary_call(
                self.primary.update(PROJECTS_TABLE, project_id, {"last_accessed_at": self.clock().isoformat()})
            )
        except Exception as exc:
            self.logger.warning("last_accessed_update_failed", project_id=project_id, error=str(exc))

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _invalidate(self, project_id: str, owner_id: Optional[str] = None) -> None:
        self.cache.invalidate_project(project_id, owner_id)

    def _fail(self, operation: str, exc: BaseException, **context: Any) -> ServiceResponse[Any]:
        if isinstance(exc, DualStorageError) and exc.rollback_failed:
            self.logger.critical(
                "operation_failed",
                operation=operation,
                error=str(exc),
                details=exc.details,
                requires_manual_intervention=True,
                **context,
            )
            return ServiceResponse.fail(str(exc), code=exc.code, rollback_failed=True, **context)
        if isinstance(exc, DomainException):
            self.logger.error("operation_failed", operation=operation, error=str(exc), code=exc.code, **context)
            return ServiceResponse.fail(str(exc), code=exc.code, **context)
        if isinstance(exc, asyncio.TimeoutError):
            self.logger.error("operation_timed_out", operation=operation, **context)
            return ServiceResponse.fail(f"{operation} timed out", code="TIMEOUT", **context)
        self.logger.exception("operation_failed_unexpectedly", operation=operation, error=str(exc), **context)
        return ServiceResponse.fail(f"{operation} failed: {exc}", code="INTERNAL_ERROR", **context)
