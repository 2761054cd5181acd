"""Pydantic schemas for records, documents, reports and requests"""
from planforge.schemas.secondary import (
    ProjectRecord,
    ProjectDocument,
    StoryDocument,
    ScenarioDocument,
    PromptDocument,
    VideoDocument,
    SecondaryDocument,
    build_record,
    parse_document,
)
from planforge.schemas.quality import (
    DataQualityReport,
    QualityMetrics,
    QualityViolation,
    Severity,
    ViolationRule,
)
from planforge.schemas.storage import DualWriteResult, PrimaryOutcome, SecondaryOutcome
from planforge.schemas.project import (
    ProjectCreate,
    ProjectUpdate,
    ProjectListOptions,
    StoryInput,
    ScenarioInput,
    PromptInput,
    VideoInput,
    VideoProgressUpdate,
    PipelineTransactionInput,
    CollaboratorCreate,
    ShareLinkCreate,
    VersionCreate,
)

__all__ = [
    "ProjectRecord",
    "ProjectDocument",
    "StoryDocument",
    "ScenarioDocument",
    "PromptDocument",
    "VideoDocument",
    "SecondaryDocument",
    "build_record",
    "parse_document",
    "DataQualityReport",
    "QualityMetrics",
    "QualityViolation",
    "Severity",
    "ViolationRule",
    "DualWriteResult",
    "PrimaryOutcome",
    "SecondaryOutcome",
    "ProjectCreate",
    "ProjectUpdate",
    "ProjectListOptions",
    "StoryInput",
    "ScenarioInput",
    "PromptInput",
    "VideoInput",
    "VideoProgressUpdate",
    "PipelineTransactionInput",
    "CollaboratorCreate",
    "ShareLinkCreate",
    "VersionCreate",
]
