"""Schemas for dual write results."""
from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field

from planforge.schemas.quality import DataQualityReport


class PrimaryOutcome(BaseModel):
    saved: bool = False
    id: Optional[str] = None
    error: Optional[str] = None


class SecondaryOutcome(BaseModel):
    attempted: bool = False
    saved: bool = False
    tables: Dict[str, bool] = Field(default_factory=dict)
    error: Optional[str] = None


class DualWriteResult(BaseModel):
    success: bool
    primary: PrimaryOutcome = Field(default_factory=PrimaryOutcome)
    secondary: SecondaryOutcome = Field(default_factory=SecondaryOutcome)
    rollback_executed: bool = False
    quality_report: Optional[DataQualityReport] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    timestamp: str
    latency_ms: float = Field(0.0, ge=0)
