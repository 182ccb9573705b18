# continuity/tracker.py
"""Narrative continuity tracking across generated units."""

from __future__ import annotations

import asyncio

import structlog

from config import settings
from continuity.extraction import DecodeResult, StructuredCaller
from continuity.merge import merge_tracker_update, record_research_references
from continuity.scoring import (
    calculate_category_scores,
    calculate_score,
    generate_recommendations,
    identify_successful_elements,
)
from core.exceptions import CriticalExtractionError
from core.generation_client import GenerationClient
from core.llm_interface import GenerationOptions
from models.book_models import BookOutline, CharacterSeed
from models.consistency_models import (
    ConsistencyIssue,
    ConsistencyReport,
    DecodeStatus,
    IssueList,
    IssueType,
)
from models.narrative_models import (
    CharacterState,
    NarrativeState,
    ResearchReference,
    TimelineEntry,
    TrackerUpdate,
)
from orchestration.token_accountant import Stage
from prompt_renderer import render_prompt

logger = structlog.get_logger(__name__)

EXTRACTION_CATEGORY = "extraction"
TRUNCATION_MARKER = "\n\n[Content truncated for analysis]"


def truncate_content(content: str, max_length: int) -> str:
    """Shorten ``content`` preferring sentence, then paragraph, boundaries."""
    if len(content) <= max_length:
        return content
    truncated = content[:max_length]
    last_sentence = truncated.rfind(".")
    if last_sentence > max_length * 0.8:
        return truncated[: last_sentence + 1] + TRUNCATION_MARKER
    last_paragraph = truncated.rfind("\n\n")
    if last_paragraph > max_length * 0.7:
        return truncated[:last_paragraph] + TRUNCATION_MARKER
    return truncated + TRUNCATION_MARKER


class ContinuityTracker:
    """Own a :class:`NarrativeState` and judge new content against it.

    ``check_unit`` calls are serialized: each one merges its extracted
    updates before the category checks run, so a unit is judged against the
    world as it stands including its own new facts.
    """

    def __init__(
        self,
        client: GenerationClient,
        state: NarrativeState | None = None,
        *,
        model_name: str | None = None,
        critical_categories: set[str] | None = None,
        caller: StructuredCaller | None = None,
    ) -> None:
        self.state = state or NarrativeState()
        self.caller = caller or StructuredCaller(client)
        self.model_name = model_name or settings.CONTINUITY_MODEL
        self.critical_categories = (
            set(settings.CRITICAL_CONTINUITY_CATEGORIES)
            if critical_categories is None
            else set(critical_categories)
        )
        self._lock = asyncio.Lock()

    def _options(self) -> GenerationOptions:
        return GenerationOptions(
            model=self.model_name,
            temperature=settings.TEMPERATURE_CONTINUITY,
            max_tokens=settings.MAX_CONTINUITY_TOKENS,
        )

    def initialize(
        self,
        characters: list[CharacterSeed],
        outline: BookOutline,
        research_facts: list[str],
    ) -> NarrativeState:
        """Seed a fresh state, replacing whatever was tracked before."""
        state = NarrativeState(
            timeline=[
                TimelineEntry(
                    chapter=1, time_reference="Story begins", absolute_time="Initial"
                )
            ],
        )
        for seed in characters:
            state.characters[seed.name] = CharacterState(
                name=seed.name,
                **(
                    {"current_location": seed.initial_location}
                    if seed.initial_location
                    else {}
                ),
            )
        opening = outline.chapter(1)
        for fact in research_facts:
            state.research_references.append(
                ResearchReference(
                    fact=fact,
                    chapter=1,
                    context=opening.summary or "Initial research",
                )
            )
        self.state = state
        logger.info(
            "Continuity tracker initialized",
            characters=len(state.characters),
            research_facts=len(research_facts),
            chapters=len(outline.chapters),
        )
        return state

    def restore(self, state: NarrativeState) -> None:
        self.state = state

    def snapshot(self) -> NarrativeState:
        return self.state.model_copy(deep=True)

    async def check_unit(
        self,
        chapter_number: int,
        content: str,
        summary: str = "",
        referenced_facts: list[str] | None = None,
    ) -> ConsistencyReport:
        referenced_facts = referenced_facts or []
        async with self._lock:
            analysed = truncate_content(content, settings.CONTINUITY_MAX_CONTENT_CHARS)
            extraction_status = await self._update_state(
                chapter_number, analysed, summary, referenced_facts
            )

            issues: list[ConsistencyIssue] = []
            degraded: list[str] = []
            for category, prompts in (
                (IssueType.CHARACTER, self._character_prompts(chapter_number, analysed)),
                (IssueType.TIMELINE, [self._timeline_prompt(chapter_number, analysed)]),
                (
                    IssueType.WORLDBUILDING,
                    [self._worldbuilding_prompt(chapter_number, analysed)],
                ),
                (
                    IssueType.RESEARCH,
                    self._research_prompts(chapter_number, analysed, referenced_facts),
                ),
            ):
                for prompt in prompts:
                    found = await self._run_check(category, prompt, chapter_number)
                    if found is None:
                        if category.value not in degraded:
                            degraded.append(category.value)
                        continue
                    issues.extend(found)

            report = ConsistencyReport(
                chapter_number=chapter_number,
                overall_score=calculate_score(issues, len(content)),
                category_scores=calculate_category_scores(issues, len(content)),
                issues=issues,
                recommendations=generate_recommendations(issues),
                successful_elements=identify_successful_elements(
                    issues, len(self.state.characters)
                ),
                extraction_status=extraction_status,
                degraded_categories=degraded,
            )
            logger.info(
                "Continuity check complete",
                chapter=chapter_number,
                score=report.overall_score,
                issues=len(issues),
                extraction=extraction_status.value,
                degraded=degraded or None,
            )
            return report

    async def _update_state(
        self,
        chapter_number: int,
        content: str,
        summary: str,
        referenced_facts: list[str],
    ) -> DecodeStatus:
        prompt = render_prompt(
            "continuity/tracker_update.j2",
            {
                "chapter_number": chapter_number,
                "summary": summary,
                "referenced_facts": referenced_facts,
                "known_characters": sorted(self.state.characters),
                "content": content,
            },
        )
        decoded: DecodeResult[TrackerUpdate] = await self.caller.call(
            prompt,
            TrackerUpdate,
            self._options(),
            stage=Stage.CONTINUITY_EXTRACTION,
            label=EXTRACTION_CATEGORY,
        )
        if not decoded.ok:
            self._decode_failed(EXTRACTION_CATEGORY, decoded)
        elif decoded.value is not None:
            counts = merge_tracker_update(self.state, decoded.value, chapter_number)
            logger.debug("Narrative state updated", chapter=chapter_number, **counts)
        record_research_references(
            self.state, referenced_facts, chapter_number, summary or "Referenced"
        )
        return decoded.status

    def _decode_failed(self, category: str, decoded: DecodeResult) -> None:
        message = "; ".join(decoded.errors[-3:]) or "unparseable output"
        if category in self.critical_categories:
            raise CriticalExtractionError(category, message, decoded.raw_text[:500])
        logger.warning(
            "Continuity category degraded to zero issues",
            category=category,
            attempts=decoded.attempts,
            error=message,
        )

    async def _run_check(
        self, category: IssueType, prompt: str, chapter_number: int
    ) -> list[ConsistencyIssue] | None:
        decoded: DecodeResult[IssueList] = await self.caller.call(
            prompt,
            IssueList,
            self._options(),
            stage=Stage.CONTINUITY_CHECK,
            label=category.value,
        )
        if not decoded.ok or decoded.value is None:
            self._decode_failed(category.value, decoded)
            return None
        return [
            issue.model_copy(
                update={"type": category, "chapters": issue.chapters or [chapter_number]}
            )
            for issue in decoded.value.issues
        ]

    def _character_prompts(self, chapter_number: int, content: str) -> list[str]:
        lowered = content.lower()
        return [
            render_prompt(
                "continuity/character_check.j2",
                {
                    "character": character,
                    "chapter_number": chapter_number,
                    "content": content,
                    "category": IssueType.CHARACTER.value,
                },
            )
            for name, character in self.state.characters.items()
            if name.lower() in lowered
        ]

    def _timeline_prompt(self, chapter_number: int, content: str) -> str:
        return render_prompt(
            "continuity/timeline_check.j2",
            {
                "chapter_number": chapter_number,
                "timeline": self.state.timeline[-settings.CONTINUITY_TIMELINE_WINDOW :],
                "content": content,
                "category": IssueType.TIMELINE.value,
            },
        )

    def _worldbuilding_prompt(self, chapter_number: int, content: str) -> str:
        elements = list(self.state.world_building.values())
        return render_prompt(
            "continuity/worldbuilding_check.j2",
            {
                "chapter_number": chapter_number,
                "elements": elements[-settings.CONTINUITY_WORLD_WINDOW :],
                "content": content,
                "category": IssueType.WORLDBUILDING.value,
            },
        )

    def _research_prompts(
        self, chapter_number: int, content: str, referenced_facts: list[str]
    ) -> list[str]:
        if not referenced_facts:
            return []
        wanted = [fact.lower() for fact in referenced_facts]
        relevant = [
            ref
            for ref in self.state.research_references
            if any(fact in ref.fact.lower() for fact in wanted)
        ]
        return [
            render_prompt(
                "continuity/research_check.j2",
                {
                    "chapter_number": chapter_number,
                    "references": relevant,
                    "referenced_facts": referenced_facts,
                    "content": content,
                    "category": IssueType.RESEARCH.value,
                },
            )
        ]
