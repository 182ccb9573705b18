"""Retry policy shared by generation calls, extraction calls and queue drains."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import structlog

from core.exceptions import TransientGenerationError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Classifier = Callable[[BaseException], bool]
Sleeper = Callable[[float], Awaitable[None]]


def is_transient(exc: BaseException) -> bool:
    """Default classifier: only transient generation failures are retried."""
    return isinstance(exc, TransientGenerationError | asyncio.TimeoutError)


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter, bounded by ``max_attempts``.

    ``classifier`` decides whether an exception is worth another attempt.
    Anything it rejects propagates immediately, as does the last retryable
    failure once the ceiling is reached.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.5
    classifier: Classifier = is_transient
    sleep: Sleeper = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Return the backoff before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)

    async def backoff(self, attempt: int) -> None:
        await self.sleep(self.delay_for(attempt))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
    ) -> T:
        """Await ``operation`` until it succeeds or retries are exhausted."""
        attempt = 0
        while True:
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not self.classifier(exc):
                    raise
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(
                        "Retries exhausted",
                        operation=description,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise
                logger.warning(
                    "Retrying after transient failure",
                    operation=description,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(exc),
                )
                await self.backoff(attempt - 1)


def no_sleep_policy(max_attempts: int = 3, classifier: Classifier = is_transient) -> RetryPolicy:
    """Policy that never waits; handy for tests and dry runs."""

    async def _no_sleep(_delay: float) -> None:
        return None

    return RetryPolicy(
        max_attempts=max_attempts, base_delay=0.0, classifier=classifier, sleep=_no_sleep
    )
