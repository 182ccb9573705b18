# agents/planning_agent.py
"""Premise and outline generation."""

from __future__ import annotations

import structlog
from pydantic import BaseModel, ConfigDict, Field

from config import settings
from continuity.extraction import StructuredCaller
from core.exceptions import MalformedOutputError
from core.generation_client import GenerationClient
from core.llm_interface import GenerationOptions, clean_model_response
from core.rate_limiter import RequestPriority
from models.book_models import Book, BookOutline, ChapterOutline, CharacterSeed
from models.consistency_models import DecodeStatus
from orchestration.token_accountant import Stage
from prompt_renderer import render_prompt

logger = structlog.get_logger(__name__)


class _OutlinePayload(BaseModel):
    chapters: list[ChapterOutline] = Field(default_factory=list)
    characters: list[CharacterSeed] = Field(default_factory=list)
    research_facts: list[str] = Field(default_factory=list, alias="researchFacts")

    model_config = ConfigDict(populate_by_name=True)


class PlanningAgent:
    """Produce the book premise and the chapter-by-chapter outline."""

    def __init__(
        self, client: GenerationClient, model_name: str | None = None
    ) -> None:
        self.client = client
        self.model_name = model_name or settings.PLANNING_MODEL
        self.caller = StructuredCaller(client)
        logger.info("PlanningAgent initialized", model=self.model_name)

    async def generate_premise(self, book: Book) -> str:
        prompt = render_prompt("agents/premise.j2", {"book": book})
        result = await self.client.generate(
            prompt,
            GenerationOptions(
                model=self.model_name,
                temperature=settings.TEMPERATURE_PLANNING,
                max_tokens=settings.MAX_PLANNING_TOKENS,
            ),
            stage=Stage.PREMISE,
            priority=RequestPriority.HIGH,
        )
        premise = clean_model_response(result.text)
        if not premise:
            raise MalformedOutputError("Premise generation returned no text")
        return premise

    async def generate_outline(self, book: Book, premise: str) -> BookOutline:
        prompt = render_prompt(
            "agents/outline.j2", {"book": book, "premise": premise}
        )
        decoded = await self.caller.call(
            prompt,
            _OutlinePayload,
            GenerationOptions(
                model=self.model_name,
                temperature=settings.TEMPERATURE_PLANNING,
                max_tokens=settings.MAX_PLANNING_TOKENS,
            ),
            stage=Stage.OUTLINE,
            label="outline",
        )
        if decoded.status is DecodeStatus.FAILED or decoded.value is None:
            raise MalformedOutputError(
                "Outline could not be decoded: " + "; ".join(decoded.errors[-3:]),
                raw_text=decoded.raw_text[:500],
            )
        payload = decoded.value
        by_number = {c.number: c for c in payload.chapters if c.number <= book.chapter_count}
        chapters = [
            by_number.get(n) or ChapterOutline(number=n, title=f"Chapter {n}")
            for n in range(1, book.chapter_count + 1)
        ]
        missing = book.chapter_count - len(by_number)
        if missing:
            logger.warning(
                "Outline missing chapters, placeholders added",
                book_id=book.id,
                missing=missing,
            )
        return BookOutline(
            chapters=chapters,
            characters=payload.characters,
            research_facts=payload.research_facts,
        )
