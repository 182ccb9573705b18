# orchestration/unit_pipeline.py
"""Generate, check and gate one unit of a chapter.

The pipeline never touches the failed-unit queue itself. It reports an
outcome and the caller decides where a rejected unit goes, so the same
cycle serves both the first pass and queue retries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import structlog

from core.exceptions import (
    CriticalExtractionError,
    FatalGenerationError,
    FolioError,
    GenerationTimeoutError,
)
from core.llm_interface import GenerationResult
from models.book_models import ChapterOutline, GenerationUnit, UnitPlan, UnitStatus
from models.checkpoint_models import FailureMetadata
from models.narrative_models import CharacterState
from models.scene_models import SceneContext, build_scene_context
from orchestration.quality_gate import QualityGate
from orchestration.session import GenerationSession
from storage.book_repository import BookRepository

logger = structlog.get_logger(__name__)

PREVIOUS_CONTEXT_CHARS = 2000
MAX_SCENE_CHARACTERS = 6


class UnitWriter(Protocol):
    async def write_unit(self, scene: SceneContext) -> GenerationResult: ...


@dataclass
class Draft:
    unit: GenerationUnit
    scene: SceneContext
    text: str | None = None
    error: FolioError | None = None


@dataclass
class UnitOutcome:
    unit: GenerationUnit
    accepted: bool
    reason: str | None = None
    metadata: FailureMetadata | None = None
    polished: bool = False


def failure_reason(exc: FolioError) -> str:
    if isinstance(exc, GenerationTimeoutError):
        return "timeout"
    if isinstance(exc, CriticalExtractionError):
        return f"critical extraction failure: {exc.category}"
    return f"generation error: {exc}"


class UnitPipeline:
    def __init__(
        self,
        repository: BookRepository,
        writer: UnitWriter,
        gate: QualityGate,
    ) -> None:
        self.repository = repository
        self.writer = writer
        self.gate = gate

    async def previous_content(
        self, session: GenerationSession, chapter_number: int, unit_number: int
    ) -> str:
        """Tail of the last accepted unit before ``(chapter, unit)``."""
        for chapter in range(chapter_number, 0, -1):
            accepted = sorted(session.completed_units.get(chapter, set()), reverse=True)
            for number in accepted:
                if chapter == chapter_number and number >= unit_number:
                    continue
                unit = await self.repository.get_unit(session.book_id, chapter, number)
                if unit is not None and unit.content:
                    return unit.content[-PREVIOUS_CONTEXT_CHARS:]
        return ""

    @staticmethod
    def research_for(session: GenerationSession, chapter: ChapterOutline) -> list[str]:
        """Outline research facts touching the chapter's research focus."""
        if session.outline is None or not chapter.research_focus:
            return []
        focus = [topic.lower() for topic in chapter.research_focus if topic.strip()]
        return [
            fact
            for fact in session.outline.research_facts
            if any(topic in fact.lower() for topic in focus)
        ]

    @staticmethod
    def characters_for(
        session: GenerationSession, names: list[str]
    ) -> list[CharacterState]:
        state = session.narrative_state
        if names:
            found = [state.find_character(name) for name in names]
            return [c for c in found if c is not None]
        return list(state.characters.values())[:MAX_SCENE_CHARACTERS]

    def build_scene(
        self,
        session: GenerationSession,
        chapter: ChapterOutline,
        unit: GenerationUnit,
        plans: list[UnitPlan],
        previous_content: str,
    ) -> SceneContext:
        plan = next(
            (p for p in plans if p.unit_number == unit.unit_number),
            UnitPlan(unit_number=unit.unit_number, target_words=unit.target_words),
        )
        index = unit.unit_number - 1
        names = chapter.scenes[index].characters if index < len(chapter.scenes) else []
        return build_scene_context(
            book_title=session.book.title,
            genre=session.book.genre,
            chapter=chapter,
            unit=plan,
            total_units=len(plans),
            previous_content=previous_content,
            character_states=self.characters_for(session, names),
            research_context=self.research_for(session, chapter),
        )

    async def draft(self, unit: GenerationUnit, scene: SceneContext) -> Draft:
        """Write the unit; recoverable errors are returned, not raised."""
        try:
            result = await self.writer.write_unit(scene)
        except FatalGenerationError:
            raise
        except FolioError as exc:
            logger.warning(
                "Unit generation failed",
                book_id=unit.book_id,
                chapter=unit.chapter_number,
                unit=unit.unit_number,
                error=str(exc),
            )
            return Draft(unit=unit, scene=scene, error=exc)
        return Draft(unit=unit, scene=scene, text=result.text)

    async def _reject(
        self, unit: GenerationUnit, reason: str, metadata: FailureMetadata
    ) -> UnitOutcome:
        rejected = unit.model_copy(
            update={
                "status": UnitStatus.NEEDS_REVISION,
                "content": None,
                "consistency_score": metadata.consistency_score,
                "supervision_score": metadata.quality_score,
                "combined_score": metadata.combined_score,
                "polished": False,
            }
        )
        await self.repository.save_unit(rejected)
        return UnitOutcome(unit=rejected, accepted=False, reason=reason, metadata=metadata)

    async def evaluate(self, session: GenerationSession, draft: Draft) -> UnitOutcome:
        """Check a draft for continuity, gate it and persist accepted text."""
        unit, scene = draft.unit, draft.scene
        if draft.error is not None or not draft.text:
            error = draft.error or FolioError("empty draft")
            return await self._reject(
                unit,
                failure_reason(error),
                FailureMetadata(error_message=str(error), error_type=type(error).__name__),
            )

        # A rejected unit must leave no trace in the narrative state.
        before = session.tracker.snapshot()
        try:
            report = await session.tracker.check_unit(
                unit.chapter_number,
                draft.text,
                summary=scene.chapter_summary,
                referenced_facts=scene.research_context,
            )
            outcome = await self.gate.evaluate(draft.text, report, scene)
        except FatalGenerationError:
            raise
        except FolioError as exc:
            logger.warning(
                "Unit check failed",
                book_id=unit.book_id,
                chapter=unit.chapter_number,
                unit=unit.unit_number,
                error=str(exc),
            )
            session.tracker.restore(before)
            return await self._reject(
                unit,
                failure_reason(exc),
                FailureMetadata(error_message=str(exc), error_type=type(exc).__name__),
            )

        metadata = FailureMetadata(
            consistency_score=outcome.consistency_score,
            quality_score=outcome.supervision_score,
            combined_score=outcome.combined_score,
        )
        if not outcome.accepted:
            session.tracker.restore(before)
            return await self._reject(
                unit,
                f"low quality: combined score {outcome.combined_score:.2f} "
                f"below {self.gate.low_quality_threshold}",
                metadata,
            )

        accepted = unit.model_copy(
            update={
                "status": UnitStatus.COMPLETE,
                "content": outcome.content,
                "consistency_score": outcome.consistency_score,
                "supervision_score": outcome.supervision_score,
                "combined_score": outcome.combined_score,
                "polished": outcome.polished,
            }
        )
        await self.repository.save_unit(accepted)
        logger.info(
            "Unit accepted",
            book_id=unit.book_id,
            chapter=unit.chapter_number,
            unit=unit.unit_number,
            words=len(outcome.content.split()),
            combined=outcome.combined_score,
            polished=outcome.polished,
        )
        return UnitOutcome(unit=accepted, accepted=True, polished=outcome.polished)

    async def process_unit(
        self, session: GenerationSession, unit: GenerationUnit, scene: SceneContext
    ) -> UnitOutcome:
        """Run the whole generate, check and gate cycle for one unit."""
        draft = await self.draft(unit, scene)
        return await self.evaluate(session, draft)
