"""Project domain entities."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from planforge.domains.pipeline.domain.entities import EntityKind, PIPELINE_KINDS
from planforge.shared_kernel.exceptions import ValidationError
from planforge.shared_kernel.value_objects import SemanticVersion


class ProjectStatus(str, Enum):
    """Project status enumeration"""
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class CollaboratorRole(str, Enum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"


_STATUS_TRANSITIONS = {
    ProjectStatus.DRAFT: {ProjectStatus.IN_PROGRESS, ProjectStatus.ARCHIVED},
    ProjectStatus.IN_PROGRESS: {ProjectStatus.COMPLETED, ProjectStatus.ARCHIVED},
    ProjectStatus.COMPLETED: set(),
    ProjectStatus.ARCHIVED: set(),
}

DEFAULT_PERMISSIONS = {
    CollaboratorRole.OWNER: ["read", "write", "admin"],
    CollaboratorRole.EDITOR: ["read", "write"],
    CollaboratorRole.VIEWER: ["read"],
}


def default_pipeline() -> Dict[str, Dict[str, Any]]:
    return {kind.value: {"id": None, "completed": False} for kind in PIPELINE_KINDS}


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Collaborator:
    user_id: str
    role: CollaboratorRole
    permissions: List[str]
    added_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "permissions": list(self.permissions),
            "added_at": self.added_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Collaborator":
        return cls(
            user_id=data["user_id"],
            role=CollaboratorRole(data["role"]),
            permissions=list(data.get("permissions") or []),
            added_at=_parse_dt(data["added_at"]),
        )


@dataclass
class ProjectVersion:
    id: str
    version: SemanticVersion
    description: str
    changes: Dict[str, Any]
    created_at: datetime
    created_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": str(self.version),
            "description": self.description,
            "changes": self.changes,
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectVersion":
        return cls(
            id=data["id"],
            version=SemanticVersion.parse(data["version"]),
            description=data.get("description", ""),
            changes=dict(data.get("changes") or {}),
            created_at=_parse_dt(data["created_at"]),
            created_by=data.get("created_by", ""),
        )


@dataclass
class Project:
    """Aggregate root for a video planning project."""

    id: str
    title: str
    owner_id: str
    created_at: datetime
    updated_at: datetime
    last_accessed_at: datetime
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.DRAFT
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: Set[str] = field(default_factory=set)
    pipeline: Dict[str, Dict[str, Any]] = field(default_factory=default_pipeline)
    collaborators: List[Collaborator] = field(default_factory=list)
    versions: List[ProjectVersion] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        project_id: str,
        title: str,
        owner_id: str,
        now: datetime,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Project":
        if not title or not title.strip():
            raise ValidationError("Project title is required", field="title")
        if not owner_id:
            raise ValidationError("Project owner is required", field="owner_id")
        return cls(
            id=project_id,
            title=title.strip(),
            owner_id=owner_id,
            description=description,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            collaborators=[
                Collaborator(
                    user_id=owner_id,
                    role=CollaboratorRole.OWNER,
                    permissions=list(DEFAULT_PERMISSIONS[CollaboratorRole.OWNER]),
                    added_at=now,
                )
            ],
        )

    # -- state machine -------------------------------------------------

    def transition_to(self, status: ProjectStatus, now: datetime) -> None:
        target = ProjectStatus(status)
        if target == self.status:
            return
        if target not in _STATUS_TRANSITIONS[self.status]:
            raise ValidationError(
                f"Cannot move project from {self.status.value} to {target.value}",
                field="status",
            )
        self.status = target
        self.updated_at = now

    # -- pipeline ------------------------------------------------------

    def add_tag(self, kind: EntityKind) -> None:
        # Tags only grow.
        self.tags = self.tags | {EntityKind(kind).value}

    def link_stage(
        self,
        kind: EntityKind,
        entity_id: str,
        completed: bool,
        now: datetime,
        **extra: Any,
    ) -> None:
        stage = dict(self.pipeline.get(kind.value) or {"id": None, "completed": False})
        stage["id"] = entity_id
        stage["completed"] = completed
        for key, value in extra.items():
            if value is not None:
                stage[key] = value
        self.pipeline[kind.value] = stage
        self.add_tag(kind)
        self.updated_at = now

    def unlink_stage(self, kind: EntityKind, now: datetime) -> None:
        self.pipeline[kind.value] = {"id": None, "completed": False}
        self.updated_at = now

    def stage_entity_id(self, kind: EntityKind) -> Optional[str]:
        return (self.pipeline.get(kind.value) or {}).get("id")

    # -- collaboration / versions ---------------------------------------

    def add_collaborator(self, collaborator: Collaborator, now: datetime) -> None:
        if collaborator.role == CollaboratorRole.OWNER:
            raise ValidationError("A project has exactly one owner", field="role")
        if any(c.user_id == collaborator.user_id for c in self.collaborators):
            raise ValidationError(
                f"User {collaborator.user_id} already collaborates on this project",
                field="user_id",
            )
        self.collaborators.append(collaborator)
        self.updated_at = now

    def next_version(self) -> SemanticVersion:
        if not self.versions:
            return SemanticVersion.initial()
        return self.versions[-1].version.next_patch()

    def add_version(self, version: ProjectVersion, now: datetime) -> None:
        self.versions.append(version)
        self.updated_at = now

    # -- persistence ---------------------------------------------------

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "metadata": copy.deepcopy(self.metadata),
            "tags": sorted(self.tags),
            "pipeline": copy.deepcopy(self.pipeline),
            "collaborators": [c.to_dict() for c in self.collaborators],
            "versions": [v.to_dict() for v in self.versions],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Project":
        pipeline = default_pipeline()
        pipeline.update(copy.deepcopy(row.get("pipeline") or {}))
        return cls(
            id=row["id"],
            title=row["title"],
            description=row.get("description"),
            owner_id=row["owner_id"],
            status=ProjectStatus(row.get("status") or ProjectStatus.DRAFT.value),
            metadata=copy.deepcopy(row.get("metadata") or {}),
            tags=set(row.get("tags") or []),
            pipeline=pipeline,
            collaborators=[Collaborator.from_dict(c) for c in row.get("collaborators") or []],
            versions=[ProjectVersion.from_dict(v) for v in row.get("versions") or []],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            last_accessed_at=_parse_dt(row.get("last_accessed_at") or row["updated_at"]),
        )
