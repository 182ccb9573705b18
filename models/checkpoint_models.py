# models/checkpoint_models.py
"""Durable snapshot of a book's generation session."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

from models.narrative_models import NarrativeState

CHECKPOINT_VERSION = "1.0"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FailureMetadata(BaseModel):
    consistency_score: float | None = None
    quality_score: float | None = None
    combined_score: float | None = None
    error_message: str | None = None
    error_type: str | None = None


class FailedUnit(BaseModel):
    book_id: str
    chapter_number: int
    unit_number: int
    reason: str
    timestamp: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    permanently_failed: bool = False
    metadata: FailureMetadata = Field(default_factory=FailureMetadata)

    @property
    def key(self) -> tuple[int, int]:
        return (self.chapter_number, self.unit_number)


class Checkpoint(BaseModel):
    """Everything needed to resume generation of ``book_id``."""

    book_id: str
    narrative_state: NarrativeState = Field(default_factory=NarrativeState)
    completed_chapters: list[int] = Field(default_factory=list)
    completed_units: dict[int, list[int]] = Field(default_factory=dict)
    failed_units: list[FailedUnit] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    version: str = CHECKPOINT_VERSION

    @field_validator("completed_chapters")
    @classmethod
    def _sorted_unique_chapters(cls, value: list[int]) -> list[int]:
        return sorted(set(value))

    @field_validator("completed_units")
    @classmethod
    def _sorted_unique_units(cls, value: dict[int, list[int]]) -> dict[int, list[int]]:
        return {chapter: sorted(set(units)) for chapter, units in sorted(value.items())}


class CheckpointSummary(BaseModel):
    book_id: str
    completed_chapters: int
    completed_units: int
    failed_units: int
    permanently_failed_units: int
    last_saved: datetime
    version: str
