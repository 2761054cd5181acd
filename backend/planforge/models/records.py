"""Primary store record models"""
from __future__ import annotations

from typing import Any, Dict, Optional, Type

from sqlalchemy import JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from planforge.db.base import Base


class RecordMixin:
    """Columns shared by every primary table.

    Timestamps are ISO-8601 strings so rows round-trip byte for byte;
    everything without a column lives in ``data``.
    """

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    created_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    updated_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    last_accessed_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


COLUMN_NAMES = (
    "id",
    "project_id",
    "owner_id",
    "title",
    "description",
    "status",
    "transaction_id",
    "created_at",
    "updated_at",
    "last_accessed_at",
)


class ProjectRow(RecordMixin, Base):
    __tablename__ = "projects"
    __table_args__ = (UniqueConstraint("owner_id", "title", name="uq_projects_owner_title"),)


class StoryRow(RecordMixin, Base):
    __tablename__ = "stories"


class ScenarioRow(RecordMixin, Base):
    __tablename__ = "scenarios"


class PromptRow(RecordMixin, Base):
    __tablename__ = "prompts"


class VideoGenerationRow(RecordMixin, Base):
    __tablename__ = "video_generations"


class ShareLinkRow(RecordMixin, Base):
    __tablename__ = "share_links"


TABLE_MODELS: Dict[str, Type[RecordMixin]] = {
    model.__tablename__: model
    for model in (ProjectRow, StoryRow, ScenarioRow, PromptRow, VideoGenerationRow, ShareLinkRow)
}
