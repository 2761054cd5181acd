"""Schema transformer - primary project records to secondary documents."""
from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Type, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError

from planforge.domains.pipeline.domain.entities import EntityKind
from planforge.schemas.quality import DataQualityReport
from planforge.schemas.secondary import (
    ProjectDocument,
    ProjectRecord,
    PromptDocument,
    ScenarioDocument,
    StoryDocument,
    VideoDocument,
)
from planforge.services.consistency_validator import ConsistencyValidator
from planforge.services.status_mapping import (
    map_project_status,
    map_video_status,
    normalize_provider,
)
from planforge.shared_kernel.exceptions import TransformationError, ValidationError

RecordInput = Union[ProjectRecord, Dict[str, Any]]


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _first_text(metadata: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = _optional_str(metadata.get(key))
        if value:
            return value
    return None


def _positive_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _as_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _as_str_list(value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return []


def _present(**values: Any) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


class SchemaTransformer:
    """
    Stateless conversion of a primary record into secondary documents.

    Every ``to_*`` method is total for a valid record: optional fields fall
    back to documented defaults (genre ``general``, provider ``seedance``,
    codec ``H.264``, scenario version ``V1``). Identical inputs always
    produce identical documents, document ids included.
    """

    def __init__(self, validator: Optional[ConsistencyValidator] = None) -> None:
        self.validator = validator or ConsistencyValidator()
        self._transforms: Dict[EntityKind, Callable[[RecordInput], BaseModel]] = {
            EntityKind.PROJECT: self.to_project,
            EntityKind.STORY: self.to_story,
            EntityKind.SCENARIO: self.to_scenario,
            EntityKind.PROMPT: self.to_prompt,
            EntityKind.VIDEO: self.to_video,
        }

    def transform(self, kind: EntityKind, record: RecordInput) -> BaseModel:
        return self._transforms[EntityKind(kind)](record)

    def to_project(self, record: RecordInput) -> ProjectDocument:
        project = self.validate_record(record)
        return self._build(
            ProjectDocument,
            {
                **self._common(project, EntityKind.PROJECT),
                "description": project.description,
                "status": map_project_status(project.status),
                "tags": sorted(project.tags),
            },
        )

    def to_story(self, record: RecordInput) -> StoryDocument:
        project = self.validate_record(record)
        meta = project.metadata
        return self._build(
            StoryDocument,
            {
                **self._common(project, EntityKind.STORY),
                "project_id": project.id,
                "content": _first_text(meta, "content", "story", "one_line_story")
                or project.description
                or project.title,
                "genre": _optional_str(meta.get("genre")) or "general",
                "tone": _first_text(meta, "tone", "tone_and_manner"),
                "target_audience": _first_text(meta, "target_audience", "target"),
                "structure": {
                    "acts": _as_dict(meta.get("structure")),
                    **_present(
                        development_method=meta.get("development_method"),
                        development_intensity=meta.get("development_intensity"),
                        duration_sec=meta.get("duration_sec"),
                        format=meta.get("format"),
                        tempo=meta.get("tempo"),
                    ),
                },
                "status": map_project_status(project.status),
            },
        )

    def to_scenario(self, record: RecordInput) -> ScenarioDocument:
        project = self.validate_record(record)
        meta = project.metadata
        return self._build(
            ScenarioDocument,
            {
                **self._common(project, EntityKind.SCENARIO),
                "project_id": project.id,
                "content": _first_text(meta, "content", "scenario", "story") or project.description or "",
                "structure": {
                    "acts": _as_dict(meta.get("structure")),
                    "has_four_step": bool(meta.get("has_four_step", True)),
                    "has_twelve_shot": bool(meta.get("has_twelve_shot", False)),
                    "version": _optional_str(meta.get("version")) or "V1",
                    "author": _optional_str(meta.get("author")) or "AI Generated",
                    **_present(
                        genre=meta.get("genre"),
                        tone=meta.get("tone"),
                        target=meta.get("target_audience") or meta.get("target"),
                        format=meta.get("format"),
                        tempo=meta.get("tempo"),
                        duration_sec=meta.get("duration_sec"),
                    ),
                },
                "status": map_project_status(project.status),
            },
        )

    def to_prompt(self, record: RecordInput) -> PromptDocument:
        project = self.validate_record(record)
        meta = project.metadata
        keywords = _as_str_list(meta.get("keywords") or meta.get("enhanced_keywords"))
        common = self._common(project, EntityKind.PROMPT)
        common["metadata"].update(
            keyword_count=len(keywords),
            segment_count=meta.get("segment_count") or 1,
            version=_optional_str(meta.get("version")) or "V1",
            **_present(director_style=meta.get("director_style")),
        )
        return self._build(
            PromptDocument,
            {
                **common,
                "project_id": project.id,
                "content": _first_text(meta, "content", "final_prompt") or "",
                "final_prompt": _first_text(meta, "final_prompt", "content") or "",
                "keywords": keywords,
                "negative_prompt": _optional_str(meta.get("negative_prompt")),
                "visual_style": _optional_str(meta.get("visual_style")),
                "mood": _optional_str(meta.get("mood")),
                "quality": _optional_str(meta.get("quality")),
                "scenario_id": _optional_str(meta.get("scenario_id")),
            },
        )

    def to_video(self, record: RecordInput) -> VideoDocument:
        project = self.validate_record(record)
        meta = project.metadata
        status = map_video_status(meta.get("status") or project.status)
        return self._build(
            VideoDocument,
            {
                **self._common(project, EntityKind.VIDEO),
                "project_id": project.id,
                "prompt": _first_text(meta, "prompt", "final_prompt") or "",
                "provider": normalize_provider(meta.get("provider")),
                "duration": _positive_number(meta.get("duration") or meta.get("duration_sec")),
                "aspect_ratio": _first_text(meta, "aspect_ratio", "format"),
                "codec": _optional_str(meta.get("codec")) or "H.264",
                "status": status,
                "video_url": _optional_str(meta.get("video_url")),
                "thumbnail_url": _optional_str(meta.get("thumbnail_url")),
                "ref_prompt_title": _optional_str(meta.get("ref_prompt_title")),
                "job_id": _optional_str(meta.get("job_id")),
                "operation_id": _optional_str(meta.get("operation_id")),
                "completed_at": project.updated_at.isoformat() if status == "completed" else None,
            },
        )

    def validate_consistency(
        self,
        primary: RecordInput,
        secondary: Mapping[Any, Any],
    ) -> DataQualityReport:
        return self.validator.validate(primary, secondary)

    @staticmethod
    def validate_record(record: RecordInput) -> ProjectRecord:
        if isinstance(record, ProjectRecord):
            return record
        try:
            return ProjectRecord.model_validate(record)
        except PydanticValidationError as exc:
            error = exc.errors()[0]
            field = ".".join(str(part) for part in error["loc"])
            raise ValidationError(
                f"Primary record field '{field}' is missing or invalid: {error['msg']}",
                field=field,
            ) from exc

    @staticmethod
    def _common(project: ProjectRecord, kind: EntityKind) -> Dict[str, Any]:
        return {
            "id": project.document_id,
            "title": project.title,
            "user_id": project.owner_id,
            "metadata": {
                "original_project_id": project.id,
                "source": "planning_register",
                "project_type": kind.value,
                "source_updated_at": project.updated_at.isoformat(),
            },
            "created_at": project.created_at.isoformat(),
            "updated_at": project.updated_at.isoformat(),
        }

    @staticmethod
    def _build(model: Type[BaseModel], data: Dict[str, Any]) -> Any:
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise TransformationError(
                f"{model.__name__} failed validation",
                original_data=data,
                validation_errors=exc.errors(include_url=False),
            ) from exc
