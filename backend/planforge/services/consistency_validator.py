"""Consistency validator - score the divergence between primary and secondary state."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from planforge.domains.pipeline.domain.entities import EntityKind
from planforge.schemas.quality import (
    DataQualityReport,
    QualityMetrics,
    QualityViolation,
    Severity,
    ViolationRule,
)
from planforge.schemas.secondary import ProjectRecord, parse_document
from planforge.services.status_mapping import expected_secondary_status
from planforge.shared_kernel.exceptions import ValidationError

SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 25,
    Severity.WARNING: 10,
    Severity.INFO: 2,
}

# Each metric is computed from the violations of exactly one rule.
METRIC_RULES = {
    "consistency": ViolationRule.IDENTITY,
    "completeness": ViolationRule.PRESENCE,
    "accuracy": ViolationRule.CONTENT,
    "timeliness": ViolationRule.STATUS,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def score_violations(violations: List[QualityViolation]) -> int:
    return max(0, 100 - sum(SEVERITY_WEIGHTS[v.severity] for v in violations))


class ConsistencyValidator:
    """
    Compares a primary record with the secondary documents derived from it.

    Rules are evaluated in order:
    1. presence - the document for the record's kind must exist (critical)
    2. identity - owner id (critical) and title (warning) must match
    3. status - the mapped primary status must equal the document status (warning)
    4. content - prompt text (warning) and video URL (critical) must match verbatim
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.clock = clock or _utc_now

    def validate(
        self,
        primary: Union[ProjectRecord, Dict[str, Any]],
        secondary: Mapping[Any, Any],
    ) -> DataQualityReport:
        record = self._coerce_record(primary)
        documents = self._coerce_documents(secondary)
        violations: List[QualityViolation] = []

        kind = record.entity_kind or EntityKind.PROJECT
        if documents.get(kind) is None:
            violations.append(
                QualityViolation(
                    field=kind.value,
                    issue=f"Secondary {kind.value} document is missing",
                    severity=Severity.CRITICAL,
                    rule=ViolationRule.PRESENCE,
                    primary_value=kind.value,
                    secondary_value=None,
                )
            )

        for doc_kind, document in documents.items():
            if document is None:
                continue
            violations.extend(self._identity_violations(doc_kind, record, document))
            violations.extend(self._status_violations(doc_kind, record, document))
            violations.extend(self._content_violations(doc_kind, record, document))

        return self.build_report(violations)

    def build_report(self, violations: List[QualityViolation]) -> DataQualityReport:
        metrics = {
            name: score_violations([v for v in violations if v.rule == rule])
            for name, rule in METRIC_RULES.items()
        }
        return DataQualityReport(
            is_consistent=not any(v.severity == Severity.CRITICAL for v in violations),
            score=score_violations(violations),
            violations=violations,
            metrics=QualityMetrics(**metrics),
            timestamp=self.clock().isoformat(),
        )

    @staticmethod
    def _identity_violations(kind: EntityKind, record: ProjectRecord, document: Any) -> List[QualityViolation]:
        violations = []
        if document.title != record.title:
            violations.append(
                QualityViolation(
                    field=f"{kind.value}.title",
                    issue="Primary and secondary titles differ",
                    severity=Severity.WARNING,
                    rule=ViolationRule.IDENTITY,
                    primary_value=record.title,
                    secondary_value=document.title,
                )
            )
        if document.user_id != record.owner_id:
            violations.append(
                QualityViolation(
                    field=f"{kind.value}.user_id",
                    issue="Primary and secondary owners differ",
                    severity=Severity.CRITICAL,
                    rule=ViolationRule.IDENTITY,
                    primary_value=record.owner_id,
                    secondary_value=document.user_id,
                )
            )
        return violations

    @staticmethod
    def _status_violations(kind: EntityKind, record: ProjectRecord, document: Any) -> List[QualityViolation]:
        expected = expected_secondary_status(kind, record.status, record.metadata)
        actual = getattr(document, "status", None)
        if expected is None or actual == expected:
            return []
        return [
            QualityViolation(
                field=f"{kind.value}.status",
                issue="Mapped primary status differs from secondary status",
                severity=Severity.WARNING,
                rule=ViolationRule.STATUS,
                primary_value=record.status,
                secondary_value=actual,
            )
        ]

    @staticmethod
    def _content_violations(kind: EntityKind, record: ProjectRecord, document: Any) -> List[QualityViolation]:
        metadata = record.metadata
        if kind == EntityKind.PROMPT:
            expected = metadata.get("final_prompt")
            if expected and document.final_prompt != expected:
                return [
                    QualityViolation(
                        field="prompt.final_prompt",
                        issue="Final prompt text differs",
                        severity=Severity.WARNING,
                        rule=ViolationRule.CONTENT,
                        primary_value=expected,
                        secondary_value=document.final_prompt,
                    )
                ]
        if kind == EntityKind.VIDEO:
            expected = metadata.get("video_url")
            if expected and document.video_url != expected:
                return [
                    QualityViolation(
                        field="video.video_url",
                        issue="Video URL differs",
                        severity=Severity.CRITICAL,
                        rule=ViolationRule.CONTENT,
                        primary_value=expected,
                        secondary_value=document.video_url,
                    )
                ]
        return []

    @staticmethod
    def _coerce_record(primary: Union[ProjectRecord, Dict[str, Any]]) -> ProjectRecord:
        if isinstance(primary, ProjectRecord):
            return primary
        try:
            return ProjectRecord.model_validate(primary)
        except PydanticValidationError as exc:
            field = ".".join(str(part) for part in exc.errors()[0]["loc"])
            raise ValidationError(f"Invalid primary record field '{field}'", field=field) from exc

    @staticmethod
    def _coerce_documents(secondary: Mapping[Any, Any]) -> Dict[EntityKind, Any]:
        documents: Dict[EntityKind, Any] = {}
        for key, document in secondary.items():
            kind = EntityKind(key)
            if isinstance(document, dict):
                document = parse_document(kind, document)
            documents[kind] = document
        return documents
