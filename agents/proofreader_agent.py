# agents/proofreader_agent.py
"""Light polish pass applied to high scoring units."""

from __future__ import annotations

import structlog

from config import settings
from core.generation_client import GenerationClient
from core.llm_interface import GenerationOptions, clean_model_response
from models.scene_models import SceneContext
from orchestration.token_accountant import Stage
from prompt_renderer import render_prompt

logger = structlog.get_logger(__name__)


class ProofreaderAgent:
    def __init__(
        self, client: GenerationClient, model_name: str | None = None
    ) -> None:
        self.client = client
        self.model_name = model_name or settings.POLISH_MODEL
        logger.info("ProofreaderAgent initialized", model=self.model_name)

    async def polish(self, content: str, scene: SceneContext) -> str:
        prompt = render_prompt(
            "agents/polish.j2", {"scene": scene, "content": content}
        )
        result = await self.client.generate(
            prompt,
            GenerationOptions(
                model=self.model_name,
                temperature=settings.TEMPERATURE_POLISH,
                max_tokens=settings.MAX_GENERATION_TOKENS,
            ),
            stage=Stage.POLISH,
        )
        polished = clean_model_response(result.text)
        # A polish that loses most of the text is treated as a failed polish.
        if len(polished) < len(content) * 0.5:
            logger.warning(
                "Polished text much shorter than original, keeping original",
                chapter=scene.chapter_number,
                unit=scene.unit_number,
            )
            return content
        return polished
