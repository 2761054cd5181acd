"""Request schemas for project repository operations."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from planforge.domains.pipeline.domain.entities import StageStatus, VideoStatus
from planforge.domains.project.domain.entities import CollaboratorRole, ProjectStatus


class ProjectCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    user_id: str = Field(..., min_length=1)
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProjectUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    metadata: Optional[Dict[str, Any]] = None


class ProjectListOptions(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)
    sort_by: Literal["title", "created_at", "updated_at", "last_accessed_at"] = "last_accessed_at"
    sort_order: Literal["asc", "desc"] = "desc"
    status: Optional[ProjectStatus] = None
    search: Optional[str] = None

    def cache_fragment(self) -> str:
        return self.model_dump_json(exclude_none=True)


class StoryInput(BaseModel):
    title: str = ""
    content: str = ""
    genre: Optional[str] = None
    tone: Optional[str] = None
    target_audience: Optional[str] = None
    structure: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: StageStatus = StageStatus.COMPLETED


class ScenarioInput(BaseModel):
    title: str = ""
    content: str = Field("", description="Generated scenario text")
    structure: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: StageStatus = StageStatus.COMPLETED


class PromptInput(BaseModel):
    title: str = ""
    final_prompt: str = ""
    keywords: List[str] = Field(default_factory=list)
    negative_prompt: Optional[str] = None
    visual_style: Optional[str] = None
    mood: Optional[str] = None
    quality: Optional[str] = None
    scenario_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: StageStatus = StageStatus.COMPLETED


class VideoInput(BaseModel):
    title: str = ""
    prompt: str = ""
    provider: str = "seedance"
    job_id: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = Field(None, gt=0)
    aspect_ratio: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: VideoStatus = VideoStatus.QUEUED


class VideoProgressUpdate(BaseModel):
    """Provider progress on a queued video job."""

    status: Optional[VideoStatus] = None
    job_id: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = Field(None, gt=0)


class PipelineTransactionInput(BaseModel):
    story: Optional[StoryInput] = None
    scenario: Optional[ScenarioInput] = None
    prompt: Optional[PromptInput] = None
    video: Optional[VideoInput] = None


class CollaboratorCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    role: CollaboratorRole = CollaboratorRole.EDITOR
    permissions: Optional[List[str]] = None


class ShareLinkCreate(BaseModel):
    permissions: List[str] = Field(default_factory=lambda: ["read"])
    expires_at: Optional[datetime] = None
    password: Optional[str] = None
    max_uses: Optional[int] = Field(None, ge=1)


class VersionCreate(BaseModel):
    description: str = ""
    changes: Dict[str, Any] = Field(default_factory=dict)
    created_by: str = Field(..., min_length=1)
