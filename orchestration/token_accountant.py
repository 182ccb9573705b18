from __future__ import annotations

import logging
from enum import Enum

from core.usage import TokenUsage

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Stages for token accounting."""

    PREMISE = "Premise"
    OUTLINE = "Outline"
    DRAFTING = "Drafting"
    CONTINUITY_EXTRACTION = "ContinuityExtraction"
    CONTINUITY_CHECK = "ContinuityCheck"
    SUPERVISION = "Supervision"
    POLISH = "Polish"
    FINAL_SUPERVISION = "FinalSupervision"


class TokenAccountant:
    """Accumulate and log token usage across stages."""

    def __init__(self) -> None:
        self.total: int = 0
        self.prompt_total: int = 0
        self.stage_totals: dict[str, int] = {}
        self.stage_calls: dict[str, int] = {}

    def record_usage(
        self, stage: Stage | str, usage: dict[str, int] | TokenUsage | None
    ) -> None:
        """Record completion tokens generated by ``stage``."""
        stage_name = stage.value if isinstance(stage, Stage) else stage
        self.stage_calls[stage_name] = self.stage_calls.get(stage_name, 0) + 1

        if usage is None:
            logger.debug("Folio: '%s' call reported no usage.", stage_name)
            return
        if not isinstance(usage, TokenUsage):
            if not isinstance(usage.get("completion_tokens"), int):
                logger.warning(
                    "Folio: '%s' - 'completion_tokens' missing in usage data. Tokens not added. Usage: %s",
                    stage_name,
                    usage,
                )
                return
            usage = TokenUsage.from_response(usage)

        self.total += usage.completion_tokens
        self.prompt_total += usage.prompt_tokens
        self.stage_totals[stage_name] = (
            self.stage_totals.get(stage_name, 0) + usage.completion_tokens
        )
        logger.info(
            "Folio: Tokens from '%s': %s. Total generated this run: %s",
            stage_name,
            usage.completion_tokens,
            self.total,
        )

    def get_stage_total(self, stage: Stage | str) -> int:
        """Return accumulated completion tokens for a stage."""
        stage_name = stage.value if isinstance(stage, Stage) else stage
        return self.stage_totals.get(stage_name, 0)

    def summary(self) -> dict[str, int | dict[str, int]]:
        return {
            "completion_tokens": self.total,
            "prompt_tokens": self.prompt_total,
            "by_stage": dict(self.stage_totals),
        }
