"""Rate-limited, retried, accounted access to a ``TextGenerator``."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from config import settings
from core.exceptions import GenerationTimeoutError
from core.llm_interface import GenerationOptions, GenerationResult, TextGenerator
from core.rate_limiter import RateLimiter, RequestPriority
from core.retry import RetryPolicy

if TYPE_CHECKING:  # pragma: no cover - type hints
    from orchestration.token_accountant import Stage, TokenAccountant

logger = structlog.get_logger(__name__)


class GenerationClient:
    """The one path every collaborator uses to reach the generator.

    Each attempt waits for rate-limiter admission, applies the optional
    timeout, reconciles actual token usage and records it per stage. The
    whole attempt is repeated according to ``retry_policy``.
    """

    def __init__(
        self,
        generator: TextGenerator,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        accountant: TokenAccountant | None = None,
    ) -> None:
        self.generator = generator
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.LLM_RETRY_ATTEMPTS,
            base_delay=settings.LLM_RETRY_DELAY_SECONDS,
            max_delay=settings.LLM_RETRY_MAX_DELAY_SECONDS,
        )
        self.accountant = accountant

    async def _attempt(
        self,
        prompt: str,
        options: GenerationOptions,
        stage: Stage | str,
        priority: RequestPriority,
        timeout: float | None,
    ) -> GenerationResult:
        estimate = self.rate_limiter.estimate_request_tokens(prompt, options.max_tokens)
        permit = await self.rate_limiter.request_permission(
            options.model, estimate, priority
        )
        try:
            if timeout is not None:
                result = await asyncio.wait_for(
                    self.generator.generate(prompt, options), timeout
                )
            else:
                result = await self.generator.generate(prompt, options)
        except asyncio.TimeoutError as exc:
            raise GenerationTimeoutError(
                f"Generation for stage '{stage}' exceeded {timeout:.0f}s"
            ) from exc
        if result.usage:
            self.rate_limiter.record_usage(options.model, result.usage, permit)
        if self.accountant is not None:
            self.accountant.record_usage(stage, result.usage)
        return result

    async def generate(
        self,
        prompt: str,
        options: GenerationOptions,
        *,
        stage: Stage | str,
        priority: RequestPriority = RequestPriority.NORMAL,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> GenerationResult:
        policy = retry_policy or self.retry_policy
        return await policy.run(
            lambda: self._attempt(prompt, options, stage, priority, timeout),
            description=str(getattr(stage, "value", stage)),
        )
