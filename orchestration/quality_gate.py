# orchestration/quality_gate.py
"""Accept, polish or reject a generated unit."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import structlog

from config import settings
from core.exceptions import FatalGenerationError, FolioError
from models.consistency_models import ConsistencyReport
from models.scene_models import SceneContext

logger = structlog.get_logger(__name__)


class UnitSupervisor(Protocol):
    async def review_unit(self, content: str, scene: SceneContext) -> float: ...


class Proofreader(Protocol):
    async def polish(self, content: str, scene: SceneContext) -> str: ...


class GateDecision(str, Enum):
    ACCEPT = "accept"
    POLISH = "polish"
    REJECT = "reject"


@dataclass
class GateOutcome:
    decision: GateDecision
    content: str
    consistency_score: float
    supervision_score: float
    combined_score: float
    supervision_fallback: bool = False

    @property
    def accepted(self) -> bool:
        return self.decision is not GateDecision.REJECT

    @property
    def polished(self) -> bool:
        return self.decision is GateDecision.POLISH


class QualityGate:
    """Combine consistency and supervision scores into one decision."""

    def __init__(
        self,
        supervisor: UnitSupervisor,
        proofreader: Proofreader | None = None,
        low_quality_threshold: float = settings.LOW_QUALITY_THRESHOLD,
        polish_threshold: float = settings.POLISH_THRESHOLD,
        fallback_supervision_score: float = settings.SUPERVISION_FALLBACK_SCORE,
    ) -> None:
        if low_quality_threshold > polish_threshold:
            raise ValueError("low_quality_threshold must not exceed polish_threshold")
        self.supervisor = supervisor
        self.proofreader = proofreader
        self.low_quality_threshold = low_quality_threshold
        self.polish_threshold = polish_threshold
        self.fallback_supervision_score = fallback_supervision_score

    @staticmethod
    def combine(consistency_score: float, supervision_score: float) -> float:
        return round((consistency_score + supervision_score) / 2, 2)

    def decide(self, combined_score: float) -> GateDecision:
        if combined_score < self.low_quality_threshold:
            return GateDecision.REJECT
        if combined_score >= self.polish_threshold and self.proofreader is not None:
            return GateDecision.POLISH
        return GateDecision.ACCEPT

    async def _supervision_score(
        self, content: str, scene: SceneContext
    ) -> tuple[float, bool]:
        try:
            score = await self.supervisor.review_unit(content, scene)
        except FatalGenerationError:
            raise
        except FolioError as exc:
            logger.warning(
                "Supervision review failed, using fallback score",
                chapter=scene.chapter_number,
                unit=scene.unit_number,
                fallback=self.fallback_supervision_score,
                error=str(exc),
            )
            return self.fallback_supervision_score, True
        return max(0.0, min(100.0, float(score))), False

    async def evaluate(
        self, content: str, report: ConsistencyReport, scene: SceneContext
    ) -> GateOutcome:
        supervision, fallback = await self._supervision_score(content, scene)
        combined = self.combine(report.overall_score, supervision)
        decision = self.decide(combined)
        final_content = content

        if decision is GateDecision.POLISH:
            try:
                polished = await self.proofreader.polish(content, scene)
            except FatalGenerationError:
                raise
            except FolioError as exc:
                logger.warning(
                    "Polish pass failed, accepting unpolished content",
                    chapter=scene.chapter_number,
                    unit=scene.unit_number,
                    error=str(exc),
                )
                decision = GateDecision.ACCEPT
            else:
                if polished and polished.strip():
                    final_content = polished
                else:
                    decision = GateDecision.ACCEPT

        logger.info(
            "Quality gate decision",
            chapter=scene.chapter_number,
            unit=scene.unit_number,
            consistency=report.overall_score,
            supervision=supervision,
            combined=combined,
            decision=decision.value,
        )
        return GateOutcome(
            decision=decision,
            content=final_content,
            consistency_score=report.overall_score,
            supervision_score=supervision,
            combined_score=combined,
            supervision_fallback=fallback,
        )
