# orchestration/progress.py
"""Progress records for a running book pipeline."""

from __future__ import annotations

from collections.abc import Callable

import structlog

from models.book_models import GenerationProgress, GenerationStep

logger = structlog.get_logger(__name__)

ProgressListener = Callable[[GenerationProgress], None]

_STEP_PERCENT: dict[GenerationStep, float] = {
    GenerationStep.PREMISE: 0.0,
    GenerationStep.OUTLINE: 25.0,
    GenerationStep.SUPERVISION: 95.0,
    GenerationStep.COMPLETE: 100.0,
}

CHAPTERS_START_PERCENT = 40.0
CHAPTERS_SPAN_PERCENT = 50.0


def percent_for(step: GenerationStep, completed: int = 0, total: int = 0) -> float:
    """Percent complete for ``step``; chapters scale with finished chapters."""
    if step is GenerationStep.CHAPTERS:
        fraction = completed / total if total else 0.0
        return round(CHAPTERS_START_PERCENT + fraction * CHAPTERS_SPAN_PERCENT, 2)
    return _STEP_PERCENT.get(step, 0.0)


class ProgressReporter:
    """Fan progress records out to registered listeners.

    The latest record per book is kept so a late subscriber (or a failed
    run) can still be inspected.
    """

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []
        self._latest: dict[str, GenerationProgress] = {}

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def latest(self, book_id: str) -> GenerationProgress | None:
        return self._latest.get(book_id)

    def emit(
        self,
        book_id: str,
        step: GenerationStep,
        *,
        current_chapter: int = 0,
        total_chapters: int = 0,
        completed_chapters: int = 0,
        queued_units: int = 0,
        message: str | None = None,
    ) -> GenerationProgress:
        status = "complete" if step is GenerationStep.COMPLETE else "in_progress"
        record = GenerationProgress(
            book_id=book_id,
            step=step,
            current_chapter=current_chapter,
            total_chapters=total_chapters,
            percent_complete=percent_for(step, completed_chapters, total_chapters),
            queued_units=queued_units,
            status=status,
            message=message,
        )
        self._publish(record)
        return record

    def emit_error(self, book_id: str, error: BaseException) -> GenerationProgress:
        """Record an error while keeping the last known position."""
        previous = self._latest.get(book_id)
        record = GenerationProgress(
            book_id=book_id,
            step=GenerationStep.ERROR,
            current_chapter=previous.current_chapter if previous else 0,
            total_chapters=previous.total_chapters if previous else 0,
            percent_complete=previous.percent_complete if previous else 0.0,
            queued_units=previous.queued_units if previous else 0,
            status="error",
            error=f"{type(error).__name__}: {error}",
            message=previous.message if previous else None,
        )
        self._publish(record)
        return record

    def _publish(self, record: GenerationProgress) -> None:
        self._latest[record.book_id] = record
        logger.debug(
            "Progress",
            book_id=record.book_id,
            step=record.step.value,
            percent=record.percent_complete,
            chapter=record.current_chapter,
        )
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.warning("Progress listener failed", exc_info=True)
