"""Primary record and secondary document schemas."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from planforge.domains.pipeline.domain.entities import EntityKind


SecondaryStatus = Literal["draft", "active", "completed", "archived"]
VideoDocumentStatus = Literal["queued", "processing", "completed", "failed"]
VideoProvider = Literal["seedance", "openai", "runways", "luma", "stable_video"]

# Row keys that describe the entity itself rather than its content.
_ENTITY_ENVELOPE_KEYS = {"id", "project_id", "created_at", "updated_at", "transaction_id", "updated_by"}


class ProjectRecord(BaseModel):
    """Canonical primary view handed to the transformer.

    For a pipeline entity the entity payload is overlaid onto ``metadata``
    and the entity id is carried as ``entity_id``.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    status: str = "draft"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    entity_id: Optional[str] = None
    entity_kind: Optional[EntityKind] = None

    @property
    def document_id(self) -> str:
        return self.entity_id or self.id


def build_record(
    project_row: Dict[str, Any],
    entity_kind: Optional[EntityKind] = None,
    entity_row: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Compose the transformer input from a project row and an optional entity row."""
    record = {
        "id": project_row.get("id"),
        "title": project_row.get("title"),
        "owner_id": project_row.get("owner_id"),
        "description": project_row.get("description"),
        "status": project_row.get("status") or "draft",
        "metadata": dict(project_row.get("metadata") or {}),
        "tags": list(project_row.get("tags") or []),
        "created_at": project_row.get("created_at"),
        "updated_at": project_row.get("updated_at"),
    }
    if entity_kind is None or entity_kind == EntityKind.PROJECT or entity_row is None:
        return record

    # unset entity fields fall back to the project metadata
    payload = {k: v for k, v in entity_row.items() if k not in _ENTITY_ENVELOPE_KEYS and v is not None}
    record["metadata"].update(payload)
    record["title"] = entity_row.get("title") or record["title"]
    record["created_at"] = entity_row.get("created_at") or record["created_at"]
    record["updated_at"] = entity_row.get("updated_at") or record["updated_at"]
    record["entity_id"] = entity_row.get("id")
    record["entity_kind"] = EntityKind(entity_kind)
    return record


class _Document(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"kind"})


class ProjectDocument(_Document):
    kind: Literal["project"] = "project"
    description: Optional[str] = None
    status: SecondaryStatus = "draft"
    tags: List[str] = Field(default_factory=list)


class StoryDocument(_Document):
    kind: Literal["story"] = "story"
    project_id: str
    content: str
    genre: str = "general"
    tone: Optional[str] = None
    target_audience: Optional[str] = None
    structure: Dict[str, Any] = Field(default_factory=dict)
    status: SecondaryStatus = "draft"


class ScenarioDocument(_Document):
    kind: Literal["scenario"] = "scenario"
    project_id: str
    content: str = ""
    structure: Dict[str, Any] = Field(default_factory=dict)
    status: SecondaryStatus = "draft"


class PromptDocument(_Document):
    kind: Literal["prompt"] = "prompt"
    project_id: str
    content: str = ""
    final_prompt: str = ""
    keywords: List[str] = Field(default_factory=list)
    negative_prompt: Optional[str] = None
    visual_style: Optional[str] = None
    mood: Optional[str] = None
    quality: Optional[str] = None
    scenario_id: Optional[str] = None


class VideoDocument(_Document):
    kind: Literal["video"] = "video"
    project_id: str
    prompt: str = ""
    provider: VideoProvider = "seedance"
    duration: Optional[float] = Field(default=None, gt=0)
    aspect_ratio: Optional[str] = None
    codec: str = "H.264"
    status: VideoDocumentStatus = "queued"
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    ref_prompt_title: Optional[str] = None
    job_id: Optional[str] = None
    operation_id: Optional[str] = None
    completed_at: Optional[str] = None


SecondaryDocument = Annotated[
    Union[ProjectDocument, StoryDocument, ScenarioDocument, PromptDocument, VideoDocument],
    Field(discriminator="kind"),
]

_document_adapter: TypeAdapter = TypeAdapter(SecondaryDocument)


def parse_document(kind: EntityKind, data: Dict[str, Any]) -> Any:
    """Parse a stored document; the collection decides the kind."""
    return _document_adapter.validate_python({**data, "kind": EntityKind(kind).value})
