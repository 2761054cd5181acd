"""Fixed lookup tables between primary and secondary vocabularies."""
from __future__ import annotations

from typing import Any, Optional

from planforge.domains.pipeline.domain.entities import EntityKind

PROJECT_STATUS_MAP = {
    "draft": "draft",
    "pending": "draft",
    "in_progress": "active",
    "active": "active",
    "completed": "completed",
    "archived": "archived",
    "failed": "archived",
}

VIDEO_STATUS_MAP = {
    "queued": "queued",
    "pending": "queued",
    "processing": "processing",
    "active": "processing",
    "in_progress": "processing",
    "completed": "completed",
    "failed": "failed",
    "error": "failed",
}

PROVIDER_MAP = {
    "seedance": "seedance",
    "openai": "openai",
    "sora": "openai",
    "runways": "runways",
    "runway": "runways",
    "luma": "luma",
    "stable_video": "stable_video",
    "stable": "stable_video",
}


def map_project_status(status: Any) -> str:
    return PROJECT_STATUS_MAP.get(str(status or "").lower(), "draft")


def map_video_status(status: Any) -> str:
    return VIDEO_STATUS_MAP.get(str(status or "").lower(), "queued")


def normalize_provider(provider: Any) -> str:
    return PROVIDER_MAP.get(str(provider or "").lower(), "seedance")


def expected_secondary_status(kind: EntityKind, status: Any, metadata: dict) -> Optional[str]:
    """Status the secondary document of ``kind`` must carry, None when it has none."""
    kind = EntityKind(kind)
    if kind == EntityKind.PROMPT:
        return None
    if kind == EntityKind.VIDEO:
        return map_video_status(metadata.get("status") or status)
    return map_project_status(status)
