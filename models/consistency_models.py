# models/consistency_models.py
"""Issues and reports produced by continuity checks."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class IssueType(str, Enum):
    CHARACTER = "character"
    TIMELINE = "timeline"
    WORLDBUILDING = "worldbuilding"
    RESEARCH = "research"
    PLOT = "plot"
    RELATIONSHIP = "relationship"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class DecodeStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ConsistencyIssue(BaseModel):
    type: IssueType
    severity: Severity
    description: str
    suggestion: str = ""
    conflicting_elements: list[str] = Field(
        default_factory=list, alias="conflictingElements"
    )
    chapters: list[int] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("type", "severity", mode="before")
    @classmethod
    def _normalize_enum_text(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class IssueList(BaseModel):
    """Envelope returned by every category check."""

    issues: list[ConsistencyIssue] = Field(default_factory=list)


class ConsistencyReport(BaseModel):
    chapter_number: int
    overall_score: float
    category_scores: dict[str, float] = Field(default_factory=dict)
    issues: list[ConsistencyIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    successful_elements: list[str] = Field(default_factory=list)
    extraction_status: DecodeStatus = DecodeStatus.SUCCESS
    degraded_categories: list[str] = Field(default_factory=list)

    @property
    def critical_issue_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity is Severity.CRITICAL)
