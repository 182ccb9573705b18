# models/book_models.py
"""Book, chapter and unit structures owned by the orchestrator."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BookStatus(str, Enum):
    PLANNING = "planning"
    GENERATING = "generating"
    COMPLETE = "complete"


class ChapterStatus(str, Enum):
    PLANNED = "planned"
    GENERATING = "generating"
    COMPLETE = "complete"
    NEEDS_REVISION = "needs_revision"


class UnitStatus(str, Enum):
    PLANNED = "planned"
    GENERATING = "generating"
    COMPLETE = "complete"
    NEEDS_REVISION = "needs_revision"


class UnitRole(str, Enum):
    OPENING = "opening"
    DEVELOPMENT = "development"
    BRIDGE = "bridge"


class FolioModel(BaseModel):
    """Base model for persisted Folio structures."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=False)


class Book(FolioModel):
    id: str
    title: str
    genre: str = ""
    description: str = ""
    target_word_count: int = Field(gt=0)
    chapter_count: int = Field(gt=0)
    status: BookStatus = BookStatus.PLANNING
    premise: str | None = None


class CharacterSeed(FolioModel):
    """A character as introduced by the outline."""

    name: str
    role: str = ""
    description: str = ""
    initial_location: str | None = None


class ScenePlan(FolioModel):
    purpose: str = ""
    setting: str = ""
    characters: list[str] = Field(default_factory=list)
    conflict: str = ""
    outcome: str = ""
    mood: str = ""


class ChapterOutline(FolioModel):
    number: int = Field(ge=1)
    title: str = ""
    summary: str = ""
    scenes: list[ScenePlan] = Field(default_factory=list)
    research_focus: list[str] = Field(default_factory=list)


class BookOutline(FolioModel):
    chapters: list[ChapterOutline] = Field(default_factory=list)
    characters: list[CharacterSeed] = Field(default_factory=list)
    research_facts: list[str] = Field(default_factory=list)

    def chapter(self, number: int) -> ChapterOutline:
        """Return the outline for ``number``, or a bare placeholder."""
        for chapter in self.chapters:
            if chapter.number == number:
                return chapter
        return ChapterOutline(number=number, title=f"Chapter {number}")


class ChapterRecord(FolioModel):
    book_id: str
    number: int = Field(ge=1)
    title: str = ""
    summary: str = ""
    target_words: int = 0
    status: ChapterStatus = ChapterStatus.PLANNED


class UnitPlan(FolioModel):
    unit_number: int = Field(ge=1)
    target_words: int = Field(gt=0)
    role: UnitRole = UnitRole.DEVELOPMENT


class GenerationUnit(FolioModel):
    """One independently generated section of a chapter."""

    book_id: str
    chapter_number: int = Field(ge=1)
    unit_number: int = Field(ge=1)
    target_words: int = Field(gt=0)
    status: UnitStatus = UnitStatus.PLANNED
    content: str | None = None
    consistency_score: float | None = None
    supervision_score: float | None = None
    combined_score: float | None = None
    polished: bool = False

    @property
    def key(self) -> tuple[int, int]:
        return (self.chapter_number, self.unit_number)


class GenerationStep(str, Enum):
    PREMISE = "premise"
    OUTLINE = "outline"
    CHAPTERS = "chapters"
    SUPERVISION = "supervision"
    COMPLETE = "complete"
    ERROR = "error"


class GenerationProgress(FolioModel):
    """Snapshot emitted after every stage and chapter transition."""

    book_id: str
    step: GenerationStep
    current_chapter: int = 0
    total_chapters: int = 0
    percent_complete: float = 0.0
    queued_units: int = 0
    status: str = "in_progress"
    error: str | None = None
    message: str | None = None


class ChapterReview(FolioModel):
    chapter_number: int
    score: float
    notes: list[str] = Field(default_factory=list)


class SupervisionReport(FolioModel):
    book_id: str
    chapter_reviews: list[ChapterReview] = Field(default_factory=list)
    average_score: float | None = None
    recommendations: list[str] = Field(default_factory=list)
