# orchestration/book_orchestrator.py
"""Drive a book from premise to a complete manuscript."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import ClassVar, Protocol

import structlog

from agents.planning_agent import PlanningAgent
from agents.proofreader_agent import ProofreaderAgent
from agents.supervision_agent import SupervisionAgent
from agents.unit_writer_agent import UnitWriterAgent
from config import settings
from continuity.tracker import ContinuityTracker
from core.exceptions import (
    BookNotFoundError,
    CheckpointCorruptError,
    FatalGenerationError,
    FolioError,
    GenerationAlreadyRunningError,
    StoreUnavailableError,
)
from core.generation_client import GenerationClient
from core.retry import RetryPolicy
from models.book_models import (
    Book,
    BookOutline,
    BookStatus,
    ChapterRecord,
    ChapterReview,
    ChapterStatus,
    GenerationStep,
    GenerationUnit,
    SupervisionReport,
)
from models.checkpoint_models import FailedUnit
from models.scene_models import SceneContext
from orchestration.chapter_planning import allocate_chapter_targets, plan_units
from orchestration.failed_unit_queue import FailedUnitQueue, RetryAttempt
from orchestration.progress import ProgressReporter
from orchestration.quality_gate import Proofreader, QualityGate
from orchestration.session import GenerationSession
from orchestration.unit_pipeline import Draft, UnitPipeline, UnitWriter
from storage.book_repository import BookRepository
from storage.checkpoint_store import CheckpointStore

logger = structlog.get_logger(__name__)


class Planner(Protocol):
    async def generate_premise(self, book: Book) -> str: ...

    async def generate_outline(self, book: Book, premise: str) -> BookOutline: ...


TrackerFactory = Callable[[], ContinuityTracker]


@dataclass
class GenerationReport:
    """What a finished run produced."""

    book_id: str
    status: BookStatus
    completed_chapters: list[int] = field(default_factory=list)
    accepted_units: int = 0
    polished_units: int = 0
    permanently_failed_units: list[tuple[int, int]] = field(default_factory=list)
    chapters_needing_revision: list[int] = field(default_factory=list)
    supervision_average: float | None = None
    tokens: dict[str, object] = field(default_factory=dict)
    estimated_cost: float = 0.0
    resumed: bool = False


class BookOrchestrator:
    """Run the PREMISE, OUTLINE, CHAPTERS, SUPERVISION, COMPLETE pipeline.

    Only one pipeline per book may be active in a process. The session is
    checkpointed after the outline, after every unit outcome and chapter,
    and before completion; the checkpoint is removed once the book is
    marked complete.
    """

    _active_books: ClassVar[set[str]] = set()

    def __init__(
        self,
        client: GenerationClient,
        repository: BookRepository,
        checkpoint_store: CheckpointStore | None = None,
        *,
        planner: Planner | None = None,
        writer: UnitWriter | None = None,
        supervisor: SupervisionAgent | None = None,
        proofreader: Proofreader | None = None,
        tracker_factory: TrackerFactory | None = None,
        progress: ProgressReporter | None = None,
        unit_retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.client = client
        self.repository = repository
        self.checkpoint_store = checkpoint_store or CheckpointStore()
        self.planner: Planner = planner or PlanningAgent(client)
        self.supervisor = supervisor or SupervisionAgent(client)
        if proofreader is None and settings.ENABLE_POLISH:
            proofreader = ProofreaderAgent(client)
        self.gate = QualityGate(self.supervisor, proofreader)
        self.pipeline = UnitPipeline(
            repository, writer or UnitWriterAgent(client), self.gate
        )
        self.tracker_factory: TrackerFactory = tracker_factory or (
            lambda: ContinuityTracker(client)
        )
        self.progress = progress or ProgressReporter()
        self.unit_retry_policy = unit_retry_policy

    @classmethod
    def is_running(cls, book_id: str) -> bool:
        return book_id in cls._active_books

    async def run(self, book_id: str) -> GenerationReport:
        """Generate (or resume) ``book_id`` through to completion."""
        if book_id in self._active_books:
            raise GenerationAlreadyRunningError(
                f"A generation pipeline for book '{book_id}' is already running"
            )
        self._active_books.add(book_id)
        try:
            return await self._run(book_id)
        finally:
            self._active_books.discard(book_id)

    async def _run(self, book_id: str) -> GenerationReport:
        try:
            book = await self.repository.get_book(book_id)
            if book.status is BookStatus.COMPLETE and not await self.checkpoint_store.exists(
                book_id
            ):
                logger.info("Book already complete, nothing to generate", book_id=book_id)
                return await self._report_for_complete_book(book)

            session = await self._start_session(book)
            handlers: dict[GenerationStep, Callable[[GenerationSession], Awaitable[None]]] = {
                GenerationStep.PREMISE: self._premise,
                GenerationStep.OUTLINE: self._outline,
                GenerationStep.CHAPTERS: self._chapters,
                GenerationStep.SUPERVISION: self._supervision,
            }
            while session.step is not GenerationStep.COMPLETE:
                await handlers[session.step](session)
            return await self._complete(session)
        except asyncio.CancelledError:
            logger.warning(
                "Generation cancelled, last checkpoint kept for resume", book_id=book_id
            )
            raise
        except Exception as exc:
            await self.handle_generation_error(book_id, exc)
            raise

    async def handle_generation_error(self, book_id: str, error: Exception) -> None:
        """Surface ``error`` and leave the book revisable."""
        logger.error(
            "Generation failed",
            book_id=book_id,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=not isinstance(error, FolioError),
        )
        self.progress.emit_error(book_id, error)
        if isinstance(error, (StoreUnavailableError, BookNotFoundError)):
            return
        try:
            await self.repository.update_book_status(book_id, BookStatus.PLANNING)
        except FolioError as status_error:
            logger.error(
                "Could not reset book status after failure",
                book_id=book_id,
                error=str(status_error),
            )

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    async def _start_session(self, book: Book) -> GenerationSession:
        checkpoint = await self.checkpoint_store.load(book.id)
        tracker = self.tracker_factory()
        queue = FailedUnitQueue(retry_policy=self.unit_retry_policy)
        if checkpoint is not None:
            outline = await self.repository.get_outline(book.id)
            if outline is None:
                raise CheckpointCorruptError(
                    book.id, "checkpoint exists but the stored outline is missing"
                )
            session = GenerationSession.from_checkpoint(
                book, checkpoint, tracker, queue, outline
            )
            logger.info(
                "Resuming from checkpoint",
                book_id=book.id,
                completed_chapters=sorted(session.completed_chapters),
                queued_units=len(checkpoint.failed_units),
            )
        else:
            session = GenerationSession(book=book, tracker=tracker, failed_queue=queue)

        session.chapter_targets = allocate_chapter_targets(
            book.target_word_count, book.chapter_count
        )
        await self.repository.update_book_status(book.id, BookStatus.GENERATING)
        session.book.status = BookStatus.GENERATING
        self._emit(session)
        return session

    def _emit(self, session: GenerationSession, message: str | None = None) -> None:
        self.progress.emit(
            session.book_id,
            session.step,
            current_chapter=session.current_chapter,
            total_chapters=session.total_chapters,
            completed_chapters=len(session.completed_chapters),
            queued_units=len(session.failed_queue.list_for_book(session.book_id)),
            message=message,
        )

    async def _save_checkpoint(self, session: GenerationSession) -> None:
        await self.checkpoint_store.save(session.book_id, session.to_checkpoint())

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _premise(self, session: GenerationSession) -> None:
        book = session.book
        if book.premise:
            logger.info("Reusing stored premise", book_id=book.id)
        else:
            book.premise = await self.planner.generate_premise(book)
            await self.repository.save_premise(book.id, book.premise)
            logger.info("Premise generated", book_id=book.id, chars=len(book.premise))
        session.step = GenerationStep.OUTLINE
        self._emit(session, "Premise ready")

    async def _outline(self, session: GenerationSession) -> None:
        book = session.book
        outline = await self.repository.get_outline(book.id)
        if outline is None:
            outline = await self.planner.generate_outline(book, book.premise or "")
            await self.repository.save_outline(book.id, outline)
            logger.info(
                "Outline generated",
                book_id=book.id,
                chapters=len(outline.chapters),
                characters=len(outline.characters),
            )
        else:
            logger.info("Reusing stored outline", book_id=book.id)
        session.outline = outline

        await self.repository.save_chapters(
            book.id,
            [
                ChapterRecord(
                    book_id=book.id,
                    number=number,
                    title=outline.chapter(number).title,
                    summary=outline.chapter(number).summary,
                    target_words=target,
                )
                for number, target in enumerate(session.chapter_targets, start=1)
            ],
        )
        session.tracker.initialize(outline.characters, outline, outline.research_facts)
        await self.repository.save_narrative_state(book.id, session.narrative_state)
        await self._save_checkpoint(session)
        session.step = GenerationStep.CHAPTERS
        self._emit(session, "Outline ready")

    async def _chapters(self, session: GenerationSession) -> None:
        for chapter_number in session.incomplete_chapters():
            await self._generate_chapter(session, chapter_number)
        await self._drain_failed_units(session)
        session.step = GenerationStep.SUPERVISION
        self._emit(session, "Final review")

    async def _generate_chapter(
        self, session: GenerationSession, chapter_number: int
    ) -> None:
        outline = session.require_outline()
        book_id = session.book_id
        chapter = outline.chapter(chapter_number)
        session.current_chapter = chapter_number
        self._emit(session, f"Writing chapter {chapter_number}")
        await self.repository.update_chapter_status(
            book_id, chapter_number, ChapterStatus.GENERATING
        )

        plans = plan_units(session.chapter_targets[chapter_number - 1])
        units = await self.repository.ensure_units(book_id, chapter_number, plans)
        pending = [
            unit
            for unit in units
            if not session.is_unit_settled(chapter_number, unit.unit_number)
        ]
        logger.info(
            "Generating chapter",
            book_id=book_id,
            chapter=chapter_number,
            units=len(plans),
            pending=len(pending),
            target_words=session.chapter_targets[chapter_number - 1],
        )

        batch_size = max(1, settings.MAX_CONCURRENT_UNITS)
        previous = ""
        if pending:
            previous = await self.pipeline.previous_content(
                session, chapter_number, pending[0].unit_number
            )
        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            drafts = await self._draft_batch(
                [
                    (unit, self.pipeline.build_scene(session, chapter, unit, plans, previous))
                    for unit in batch
                ]
            )
            for draft in drafts:
                outcome = await self.pipeline.evaluate(session, draft)
                if outcome.accepted:
                    session.mark_unit_complete(chapter_number, outcome.unit.unit_number)
                    if outcome.polished:
                        session.polished_units += 1
                    previous = outcome.unit.content or previous
                else:
                    session.failed_queue.enqueue(
                        outcome.unit, outcome.reason or "rejected", outcome.metadata
                    )
                await self._save_checkpoint(session)

        await self._finish_chapter(session, chapter_number, len(plans))

    async def _draft_batch(
        self, batch: list[tuple[GenerationUnit, SceneContext]]
    ) -> list[Draft]:
        """Draft a batch concurrently; a fatal error cancels the rest."""
        tasks = [
            asyncio.create_task(self.pipeline.draft(unit, scene)) for unit, scene in batch
        ]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _finish_chapter(
        self, session: GenerationSession, chapter_number: int, unit_count: int
    ) -> None:
        accepted = len(session.completed_units.get(chapter_number, set()))
        if accepted >= unit_count:
            session.mark_chapter_complete(chapter_number)
            status = ChapterStatus.COMPLETE
        else:
            status = ChapterStatus.NEEDS_REVISION
        await self.repository.update_chapter_status(
            session.book_id, chapter_number, status
        )
        await self.repository.save_narrative_state(
            session.book_id, session.narrative_state
        )
        await self._save_checkpoint(session)
        logger.info(
            "Chapter processed",
            book_id=session.book_id,
            chapter=chapter_number,
            accepted_units=accepted,
            total_units=unit_count,
            status=status.value,
        )
        self._emit(session, f"Chapter {chapter_number} {status.value}")

    async def _retry_unit(
        self, session: GenerationSession, entry: FailedUnit
    ) -> RetryAttempt:
        """Rebuild the unit's context from current state and re-run it."""
        outline = session.require_outline()
        chapter_number, unit_number = entry.key
        chapter = outline.chapter(chapter_number)
        plans = plan_units(session.chapter_targets[chapter_number - 1])
        units = await self.repository.ensure_units(session.book_id, chapter_number, plans)
        unit = next((u for u in units if u.unit_number == unit_number), None)
        if unit is None:
            # Re-planning dropped this unit; there is nothing left to generate.
            return RetryAttempt(succeeded=True)

        previous = await self.pipeline.previous_content(
            session, chapter_number, unit_number
        )
        scene = self.pipeline.build_scene(session, chapter, unit, plans, previous)
        outcome = await self.pipeline.process_unit(session, unit, scene)
        if outcome.accepted:
            session.mark_unit_complete(chapter_number, unit_number)
            if outcome.polished:
                session.polished_units += 1
            session.failed_queue.remove(session.book_id, chapter_number, unit_number)
            if len(session.completed_units.get(chapter_number, set())) >= len(plans):
                await self._finish_chapter(session, chapter_number, len(plans))
            else:
                await self._save_checkpoint(session)
        return RetryAttempt(
            succeeded=outcome.accepted, reason=outcome.reason, metadata=outcome.metadata
        )

    async def _drain_failed_units(self, session: GenerationSession) -> None:
        book_id = session.book_id
        if session.failed_queue.list_for_book(book_id):
            summary = await session.failed_queue.retry_all(
                book_id,
                settings.MAX_UNIT_RETRIES,
                lambda entry: self._retry_unit(session, entry),
            )
            logger.info(
                "Failed unit drain finished",
                book_id=book_id,
                passes=summary.passes,
                recovered=len(summary.recovered),
                permanently_failed=len(summary.permanently_failed),
            )
        remaining = session.failed_queue.list_for_book(book_id)
        await self.repository.save_narrative_state(book_id, session.narrative_state)
        await self.repository.save_failed_units(book_id, remaining)
        for chapter_number in sorted({entry.chapter_number for entry in remaining}):
            await self.repository.update_chapter_status(
                book_id, chapter_number, ChapterStatus.NEEDS_REVISION
            )
        await self._save_checkpoint(session)

    async def _supervision(self, session: GenerationSession) -> None:
        session.supervision_report = await self._final_review(session)
        await self._save_checkpoint(session)
        session.step = GenerationStep.COMPLETE

    async def _final_review(self, session: GenerationSession) -> SupervisionReport:
        """Review every complete chapter; a failed review is skipped."""
        outline = session.require_outline()
        reviews: list[ChapterReview] = []
        for chapter_number in sorted(session.completed_chapters):
            units = await self.repository.list_units(session.book_id, chapter_number)
            text = "\n\n".join(u.content for u in units if u.content)
            try:
                review = await self.supervisor.review_chapter(
                    chapter_number, outline.chapter(chapter_number).title, text
                )
            except FatalGenerationError:
                raise
            except FolioError as exc:
                logger.warning(
                    "Chapter review failed, skipping",
                    book_id=session.book_id,
                    chapter=chapter_number,
                    error=str(exc),
                )
                continue
            reviews.append(review)

        average = (
            round(sum(r.score for r in reviews) / len(reviews), 2) if reviews else None
        )
        recommendations = [
            f"Revise chapter {r.chapter_number}: review score {r.score:.1f}"
            for r in reviews
            if r.score < settings.LOW_QUALITY_THRESHOLD
        ]
        recommendations.extend(
            f"Chapter {entry.chapter_number} unit {entry.unit_number} needs manual "
            f"revision ({entry.reason})"
            for entry in session.failed_queue.list_for_book(session.book_id)
        )
        report = SupervisionReport(
            book_id=session.book_id,
            chapter_reviews=reviews,
            average_score=average,
            recommendations=recommendations,
        )
        await self.repository.save_supervision_report(report)
        logger.info(
            "Final supervision complete",
            book_id=session.book_id,
            reviewed=len(reviews),
            average=average,
        )
        return report

    async def _complete(self, session: GenerationSession) -> GenerationReport:
        await self.repository.update_book_status(session.book_id, BookStatus.COMPLETE)
        session.book.status = BookStatus.COMPLETE
        await self.checkpoint_store.clear(session.book_id)
        self._emit(session, "Book complete")
        report = self._report(session)
        logger.info(
            "Book generation complete",
            book_id=session.book_id,
            chapters=len(report.completed_chapters),
            accepted_units=report.accepted_units,
            permanently_failed=len(report.permanently_failed_units),
            resumed=report.resumed,
        )
        return report

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _usage(self) -> tuple[dict[str, object], float]:
        tokens: dict[str, object] = (
            dict(self.client.accountant.summary()) if self.client.accountant else {}
        )
        return tokens, round(self.client.rate_limiter.total_cost(), 4)

    def _report(self, session: GenerationSession) -> GenerationReport:
        failed = session.failed_queue.list_for_book(session.book_id)
        tokens, cost = self._usage()
        return GenerationReport(
            book_id=session.book_id,
            status=session.book.status,
            completed_chapters=sorted(session.completed_chapters),
            accepted_units=session.accepted_unit_count(),
            polished_units=session.polished_units,
            permanently_failed_units=[e.key for e in failed if e.permanently_failed],
            chapters_needing_revision=sorted({e.chapter_number for e in failed}),
            supervision_average=(
                session.supervision_report.average_score
                if session.supervision_report
                else None
            ),
            tokens=tokens,
            estimated_cost=cost,
            resumed=session.resumed,
        )

    async def _report_for_complete_book(self, book: Book) -> GenerationReport:
        chapters = await self.repository.list_chapters(book.id)
        units = await self.repository.list_units(book.id)
        tokens, cost = self._usage()
        return GenerationReport(
            book_id=book.id,
            status=book.status,
            completed_chapters=[
                c.number for c in chapters if c.status is ChapterStatus.COMPLETE
            ],
            accepted_units=sum(1 for u in units if u.content),
            polished_units=sum(1 for u in units if u.polished),
            chapters_needing_revision=[
                c.number for c in chapters if c.status is ChapterStatus.NEEDS_REVISION
            ],
            tokens=tokens,
            estimated_cost=cost,
        )
