"""Pipeline stage entities (story, scenario, prompt, video generation)."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type


class EntityKind(str, Enum):
    PROJECT = "project"
    STORY = "story"
    SCENARIO = "scenario"
    PROMPT = "prompt"
    VIDEO = "video"


PIPELINE_KINDS = (EntityKind.STORY, EntityKind.SCENARIO, EntityKind.PROMPT, EntityKind.VIDEO)

# Primary tables and secondary collections per kind.
PRIMARY_TABLES: Dict[EntityKind, str] = {
    EntityKind.PROJECT: "projects",
    EntityKind.STORY: "stories",
    EntityKind.SCENARIO: "scenarios",
    EntityKind.PROMPT: "prompts",
    EntityKind.VIDEO: "video_generations",
}

SECONDARY_COLLECTIONS: Dict[EntityKind, str] = {
    EntityKind.PROJECT: "projects",
    EntityKind.STORY: "stories",
    EntityKind.SCENARIO: "scenarios",
    EntityKind.PROMPT: "prompts",
    EntityKind.VIDEO: "video_generations",
}


class StageStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class VideoStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_STAGE_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.COMPLETED},
    StageStatus.COMPLETED: set(),
}

_VIDEO_TRANSITIONS = {
    VideoStatus.QUEUED: {VideoStatus.PROCESSING},
    VideoStatus.PROCESSING: {VideoStatus.COMPLETED, VideoStatus.FAILED},
    VideoStatus.COMPLETED: set(),
    VideoStatus.FAILED: set(),
}


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class PipelineEntity(ABC):
    """Base for stage artifacts. Always belongs to exactly one project."""

    id: str
    project_id: str
    created_at: datetime
    updated_at: datetime
    transaction_id: Optional[str] = None

    kind: Any = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.project_id:
            raise ValueError(f"{type(self).__name__} requires a project_id")

    @property
    def is_completed(self) -> bool:
        return self.status in (StageStatus.COMPLETED, VideoStatus.COMPLETED)  # type: ignore[attr-defined]

    def to_payload(self) -> Dict[str, Any]:
        """Type-specific content, used to overlay the project metadata."""
        payload: Dict[str, Any] = {}
        for item in fields(self):
            if item.name in {"id", "project_id", "created_at", "updated_at", "transaction_id", "kind"}:
                continue
            value = getattr(self, item.name)
            payload[item.name] = value.value if isinstance(value, Enum) else value
        return payload

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "transaction_id": self.transaction_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            **self.to_payload(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PipelineEntity":
        known = {item.name for item in fields(cls) if item.init}
        values = {key: value for key, value in row.items() if key in known}
        values["created_at"] = _parse_dt(row["created_at"])
        values["updated_at"] = _parse_dt(row["updated_at"])
        entity = cls(**values)
        entity._coerce_status()
        return entity

    @abstractmethod
    def _coerce_status(self) -> None:
        """Turn a raw ``status`` value into the subclass' status enum."""


@dataclass
class Story(PipelineEntity):
    title: str = ""
    content: str = ""
    genre: Optional[str] = None
    tone: Optional[str] = None
    target_audience: Optional[str] = None
    structure: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: StageStatus = StageStatus.PENDING

    def __post_init__(self) -> None:
        super().__post_init__()
        self.kind = EntityKind.STORY
        self._coerce_status()

    def _coerce_status(self) -> None:
        self.status = StageStatus(self.status)

    def complete(self, now: datetime) -> None:
        _transition(self, StageStatus.COMPLETED, _STAGE_TRANSITIONS, now)


@dataclass
class Scenario(PipelineEntity):
    title: str = ""
    content: str = ""
    structure: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: StageStatus = StageStatus.PENDING

    def __post_init__(self) -> None:
        super().__post_init__()
        self.kind = EntityKind.SCENARIO
        self._coerce_status()

    def _coerce_status(self) -> None:
        self.status = StageStatus(self.status)

    def complete(self, now: datetime) -> None:
        _transition(self, StageStatus.COMPLETED, _STAGE_TRANSITIONS, now)


@dataclass
class Prompt(PipelineEntity):
    title: str = ""
    final_prompt: str = ""
    keywords: List[str] = field(default_factory=list)
    negative_prompt: Optional[str] = None
    visual_style: Optional[str] = None
    mood: Optional[str] = None
    quality: Optional[str] = None
    scenario_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: StageStatus = StageStatus.PENDING

    def __post_init__(self) -> None:
        super().__post_init__()
        self.kind = EntityKind.PROMPT
        self._coerce_status()

    def _coerce_status(self) -> None:
        self.status = StageStatus(self.status)

    def complete(self, now: datetime) -> None:
        _transition(self, StageStatus.COMPLETED, _STAGE_TRANSITIONS, now)


@dataclass
class VideoGeneration(PipelineEntity):
    title: str = ""
    prompt: str = ""
    provider: str = "seedance"
    job_id: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = None
    aspect_ratio: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: VideoStatus = VideoStatus.QUEUED

    def __post_init__(self) -> None:
        super().__post_init__()
        self.kind = EntityKind.VIDEO
        self._coerce_status()

    def _coerce_status(self) -> None:
        self.status = VideoStatus(self.status)

    def transition_to(self, status: VideoStatus, now: datetime) -> None:
        _transition(self, VideoStatus(status), _VIDEO_TRANSITIONS, now)


def _transition(entity: Any, target: Any, table: Dict[Any, set], now: datetime) -> None:
    if entity.status == target:
        return
    if target not in table[entity.status]:
        raise ValueError(f"Invalid {entity.kind.value} status transition {entity.status.value} -> {target.value}")
    entity.status = target
    entity.updated_at = now


ENTITY_CLASSES: Dict[EntityKind, Type[PipelineEntity]] = {
    EntityKind.STORY: Story,
    EntityKind.SCENARIO: Scenario,
    EntityKind.PROMPT: Prompt,
    EntityKind.VIDEO: VideoGeneration,
}


def entity_from_row(kind: EntityKind, row: Dict[str, Any]) -> PipelineEntity:
    return ENTITY_CLASSES[EntityKind(kind)].from_row(row)
