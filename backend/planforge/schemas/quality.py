"""Schemas for data quality reports."""
from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class ViolationRule(str, Enum):
    PRESENCE = "presence"
    IDENTITY = "identity"
    STATUS = "status"
    CONTENT = "content"


class QualityViolation(BaseModel):
    field: str
    issue: str
    severity: Severity
    rule: ViolationRule
    primary_value: Optional[Any] = None
    secondary_value: Optional[Any] = None


class QualityMetrics(BaseModel):
    consistency: int = Field(100, ge=0, le=100)
    completeness: int = Field(100, ge=0, le=100)
    accuracy: int = Field(100, ge=0, le=100)
    timeliness: int = Field(100, ge=0, le=100)


class DataQualityReport(BaseModel):
    """Derived comparison of primary and secondary state. Never persisted."""

    is_consistent: bool
    score: int = Field(..., ge=0, le=100)
    violations: List[QualityViolation] = Field(default_factory=list)
    metrics: QualityMetrics = Field(default_factory=QualityMetrics)
    timestamp: str

    @property
    def critical_violations(self) -> List[QualityViolation]:
        return [v for v in self.violations if v.severity == Severity.CRITICAL]
