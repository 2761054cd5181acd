from planforge.models.records import (
    COLUMN_NAMES,
    TABLE_MODELS,
    ProjectRow,
    PromptRow,
    RecordMixin,
    ScenarioRow,
    ShareLinkRow,
    StoryRow,
    VideoGenerationRow,
)

__all__ = [
    "COLUMN_NAMES",
    "TABLE_MODELS",
    "ProjectRow",
    "PromptRow",
    "RecordMixin",
    "ScenarioRow",
    "ShareLinkRow",
    "StoryRow",
    "VideoGenerationRow",
]
