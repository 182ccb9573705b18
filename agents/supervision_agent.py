# agents/supervision_agent.py
"""Independent policy and style review of generated content."""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field

from config import settings
from continuity.extraction import StructuredCaller
from core.exceptions import MalformedOutputError
from core.generation_client import GenerationClient
from core.llm_interface import GenerationOptions
from models.book_models import ChapterReview
from models.scene_models import SceneContext
from orchestration.token_accountant import Stage
from prompt_renderer import render_prompt

logger = structlog.get_logger(__name__)


class _Review(BaseModel):
    score: float = Field(ge=0, le=100)
    notes: list[str] = Field(default_factory=list)


class SupervisionAgent:
    """Score content 0-100 for quality and policy compliance."""

    def __init__(
        self, client: GenerationClient, model_name: str | None = None
    ) -> None:
        self.client = client
        self.model_name = model_name or settings.SUPERVISION_MODEL
        self.caller = StructuredCaller(client)
        logger.info("SupervisionAgent initialized", model=self.model_name)

    def _options(self) -> GenerationOptions:
        return GenerationOptions(
            model=self.model_name,
            temperature=settings.TEMPERATURE_SUPERVISION,
            max_tokens=settings.MAX_CONTINUITY_TOKENS,
        )

    async def _review(self, prompt: str, stage: Stage, label: str) -> _Review:
        decoded = await self.caller.call(
            prompt, _Review, self._options(), stage=stage, label=label
        )
        if not decoded.ok or decoded.value is None:
            raise MalformedOutputError(
                f"Supervision review '{label}' could not be decoded",
                raw_text=decoded.raw_text[:500],
            )
        return decoded.value

    async def review_unit(self, content: str, scene: SceneContext) -> float:
        prompt = render_prompt(
            "agents/review_unit.j2", {"scene": scene, "content": content}
        )
        review = await self._review(
            prompt,
            Stage.SUPERVISION,
            f"unit {scene.chapter_number}.{scene.unit_number}",
        )
        return review.score

    async def review_chapter(
        self, chapter_number: int, title: str, text: str
    ) -> ChapterReview:
        prompt = render_prompt(
            "agents/review_chapter.j2",
            {"chapter_number": chapter_number, "title": title, "text": text},
        )
        review = await self._review(
            prompt, Stage.FINAL_SUPERVISION, f"chapter {chapter_number}"
        )
        return ChapterReview(
            chapter_number=chapter_number, score=review.score, notes=review.notes
        )
