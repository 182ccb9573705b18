# agents/unit_writer_agent.py
"""Write a single unit of chapter prose from a tagged scene context."""

from __future__ import annotations

import structlog

from config import settings
from core.exceptions import MalformedOutputError
from core.generation_client import GenerationClient
from core.llm_interface import GenerationOptions, GenerationResult, clean_model_response
from models.scene_models import SceneContext
from orchestration.token_accountant import Stage
from prompt_renderer import render_prompt

logger = structlog.get_logger(__name__)

# Rough words-to-tokens headroom for prose output.
_TOKENS_PER_WORD = 1.6


class UnitWriterAgent:
    def __init__(
        self,
        client: GenerationClient,
        model_name: str | None = None,
        timeout: float = settings.UNIT_GENERATION_TIMEOUT,
    ) -> None:
        self.client = client
        self.model_name = model_name or settings.DRAFTING_MODEL
        self.timeout = timeout
        logger.info("UnitWriterAgent initialized", model=self.model_name)

    async def write_unit(self, scene: SceneContext) -> GenerationResult:
        prompt = render_prompt("agents/write_scene.j2", {"scene": scene})
        max_tokens = min(
            settings.MAX_GENERATION_TOKENS,
            int(scene.target_words * _TOKENS_PER_WORD) + 256,
        )
        result = await self.client.generate(
            prompt,
            GenerationOptions(
                model=self.model_name,
                temperature=settings.TEMPERATURE_DRAFTING,
                max_tokens=max_tokens,
                system_prompt=render_prompt(
                    "agents/writer_system.j2", {"genre": scene.genre}
                ),
            ),
            stage=Stage.DRAFTING,
            timeout=self.timeout,
        )
        text = clean_model_response(result.text)
        if not text:
            raise MalformedOutputError(
                f"Empty content for chapter {scene.chapter_number} unit {scene.unit_number}"
            )
        return GenerationResult(text=text, usage=result.usage, model=result.model)
