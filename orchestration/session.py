# orchestration/session.py
"""Per-book generation session passed explicitly through every step."""

from __future__ import annotations

from dataclasses import dataclass, field

from continuity.tracker import ContinuityTracker
from core.exceptions import FatalGenerationError
from models.book_models import Book, BookOutline, GenerationStep, SupervisionReport
from models.checkpoint_models import Checkpoint, utc_now
from models.narrative_models import NarrativeState
from orchestration.failed_unit_queue import FailedUnitQueue


@dataclass
class GenerationSession:
    """Live state of one book's pipeline.

    The checkpoint produced by :meth:`to_checkpoint` is the only durable
    form of a session; :meth:`from_checkpoint` rebuilds it after a crash.
    """

    book: Book
    tracker: ContinuityTracker
    failed_queue: FailedUnitQueue
    outline: BookOutline | None = None
    step: GenerationStep = GenerationStep.PREMISE
    completed_chapters: set[int] = field(default_factory=set)
    completed_units: dict[int, set[int]] = field(default_factory=dict)
    chapter_targets: list[int] = field(default_factory=list)
    current_chapter: int = 0
    resumed: bool = False
    polished_units: int = 0
    supervision_report: SupervisionReport | None = None

    @property
    def book_id(self) -> str:
        return self.book.id

    @property
    def narrative_state(self) -> NarrativeState:
        return self.tracker.state

    def require_outline(self) -> BookOutline:
        if self.outline is None:
            raise FatalGenerationError(f"No outline loaded for book '{self.book_id}'")
        return self.outline

    @property
    def total_chapters(self) -> int:
        return self.book.chapter_count

    def incomplete_chapters(self) -> list[int]:
        return [
            n
            for n in range(1, self.total_chapters + 1)
            if n not in self.completed_chapters
        ]

    def is_unit_complete(self, chapter_number: int, unit_number: int) -> bool:
        return unit_number in self.completed_units.get(chapter_number, set())

    def is_unit_settled(self, chapter_number: int, unit_number: int) -> bool:
        """Completed or already waiting in the failed-unit queue."""
        return self.is_unit_complete(
            chapter_number, unit_number
        ) or self.failed_queue.contains(self.book_id, chapter_number, unit_number)

    def mark_unit_complete(self, chapter_number: int, unit_number: int) -> None:
        self.completed_units.setdefault(chapter_number, set()).add(unit_number)

    def mark_chapter_complete(self, chapter_number: int) -> None:
        self.completed_chapters.add(chapter_number)

    def accepted_unit_count(self) -> int:
        return sum(len(units) for units in self.completed_units.values())

    def to_checkpoint(self) -> Checkpoint:
        return Checkpoint(
            book_id=self.book_id,
            narrative_state=self.tracker.snapshot(),
            completed_chapters=sorted(self.completed_chapters),
            completed_units={
                chapter: sorted(units)
                for chapter, units in sorted(self.completed_units.items())
            },
            failed_units=self.failed_queue.snapshot(self.book_id),
            timestamp=utc_now(),
        )

    @classmethod
    def from_checkpoint(
        cls,
        book: Book,
        checkpoint: Checkpoint,
        tracker: ContinuityTracker,
        failed_queue: FailedUnitQueue,
        outline: BookOutline | None = None,
    ) -> GenerationSession:
        tracker.restore(checkpoint.narrative_state.model_copy(deep=True))
        failed_queue.restore(book.id, checkpoint.failed_units)
        return cls(
            book=book,
            tracker=tracker,
            failed_queue=failed_queue,
            outline=outline,
            step=GenerationStep.CHAPTERS,
            completed_chapters=set(checkpoint.completed_chapters),
            completed_units={
                chapter: set(units)
                for chapter, units in checkpoint.completed_units.items()
            },
            resumed=True,
        )
