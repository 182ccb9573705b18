# core/rate_limiter.py
"""Rolling-window admission control for outbound generation requests.

Each model class owns a budget of requests and tokens per window. Waiters
are admitted strictly from the head of a per-model priority queue, so a
large request at the front is never overtaken by smaller ones behind it.
Estimated tokens are charged on admission and later replaced by the actual
count through :meth:`RateLimiter.record_usage`.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

import structlog

from config import settings
from core.exceptions import RateLimiterClosedError
from core.usage import ModelUsageStats, TokenUsage

logger = structlog.get_logger(__name__)


class RequestPriority(IntEnum):
    """Lower value is admitted first."""

    HIGH = 0
    NORMAL = 1
    LOW = 2


@dataclass
class RateBudget:
    requests_per_window: int
    tokens_per_window: int


@dataclass
class _WindowEvent:
    timestamp: float
    tokens: int


@dataclass(order=True)
class _Ticket:
    priority: int
    sequence: int
    estimated_tokens: int = field(compare=False)
    rejected: bool = field(default=False, compare=False)


@dataclass
class Permit:
    """Proof of admission; pass it back to ``record_usage`` to reconcile."""

    model_class: str
    estimated_tokens: int
    event: _WindowEvent | None = None


@dataclass
class RateLimitStatus:
    model_class: str
    requests_in_window: int
    tokens_in_window: int
    requests_per_window: int | None
    tokens_per_window: int | None
    queue_length: int
    seconds_until_reset: float


@dataclass
class _ModelState:
    budget: RateBudget | None
    events: deque[_WindowEvent] = field(default_factory=deque)
    queue: list[_Ticket] = field(default_factory=list)


class RateLimiter:
    """Admit or delay requests against per-model rolling budgets."""

    def __init__(
        self,
        limits: dict[str, dict[str, int]] | None = None,
        window_seconds: float = settings.RATE_LIMIT_WINDOW_SECONDS,
        poll_interval: float = settings.RATE_LIMIT_POLL_INTERVAL,
        default_limit: dict[str, int] | None = settings.DEFAULT_RATE_LIMIT,
        pricing: dict[str, dict[str, float]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = dict(settings.RATE_LIMITS if limits is None else limits)
        self._default_limit = default_limit
        self._pricing = dict(settings.MODEL_PRICING if pricing is None else pricing)
        self.window_seconds = window_seconds
        self.poll_interval = poll_interval
        self._clock = clock
        self._models: dict[str, _ModelState] = {}
        self._sequence = itertools.count()
        self._stats: dict[str, ModelUsageStats] = {}
        logger.info(
            "RateLimiter initialized",
            models=sorted(self._limits),
            window_seconds=window_seconds,
        )

    # -- estimation helpers -------------------------------------------------

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Rough token estimate of roughly four characters per token."""
        if not text:
            return 0
        return math.ceil(len(text) / settings.FALLBACK_CHARS_PER_TOKEN)

    def estimate_request_tokens(self, prompt: str, max_tokens: int) -> int:
        return (
            self.estimate_tokens(prompt)
            + max_tokens
            + settings.RATE_LIMIT_REQUEST_BUFFER_TOKENS
        )

    # -- admission ----------------------------------------------------------

    def _state(self, model_class: str) -> _ModelState:
        state = self._models.get(model_class)
        if state is None:
            raw = self._limits.get(model_class, self._default_limit)
            budget = RateBudget(**raw) if raw else None
            state = _ModelState(budget=budget)
            self._models[model_class] = state
        return state

    def _evict(self, state: _ModelState, now: float) -> None:
        cutoff = now - self.window_seconds
        while state.events and state.events[0].timestamp <= cutoff:
            state.events.popleft()

    def _fits(self, state: _ModelState, tokens: int) -> bool:
        budget = state.budget
        if budget is None:
            return True
        if len(state.events) >= budget.requests_per_window:
            return False
        if not state.events:
            return True
        used = sum(event.tokens for event in state.events)
        return used + tokens <= budget.tokens_per_window

    def _wait_time(self, state: _ModelState, now: float) -> float:
        if not state.events:
            return self.poll_interval
        until_oldest_expires = state.events[0].timestamp + self.window_seconds - now
        return max(0.0, min(self.poll_interval, until_oldest_expires))

    async def request_permission(
        self,
        model_class: str,
        estimated_tokens: int,
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> Permit:
        """Block until ``model_class`` can absorb ``estimated_tokens``."""
        state = self._state(model_class)
        if state.budget is None:
            return Permit(model_class, estimated_tokens)

        ticket = _Ticket(int(priority), next(self._sequence), estimated_tokens)
        heapq.heappush(state.queue, ticket)
        waited = False
        try:
            while True:
                if ticket.rejected:
                    raise RateLimiterClosedError(
                        f"Rate limiter queue for '{model_class}' was cleared"
                    )
                now = self._clock()
                self._evict(state, now)
                if state.queue[0] is ticket and self._fits(state, estimated_tokens):
                    heapq.heappop(state.queue)
                    event = _WindowEvent(now, estimated_tokens)
                    state.events.append(event)
                    if waited:
                        logger.debug(
                            "Request admitted after waiting",
                            model_class=model_class,
                            estimated_tokens=estimated_tokens,
                        )
                    return Permit(model_class, estimated_tokens, event)
                if not waited:
                    logger.info(
                        "Rate limit reached, request queued",
                        model_class=model_class,
                        priority=RequestPriority(ticket.priority).name,
                        queue_length=len(state.queue),
                    )
                    waited = True
                await asyncio.sleep(self._wait_time(state, now))
        except BaseException:
            if ticket in state.queue:
                state.queue.remove(ticket)
                heapq.heapify(state.queue)
            raise

    def record_usage(
        self,
        model_class: str,
        actual_tokens: int | TokenUsage,
        permit: Permit | None = None,
    ) -> None:
        """Reconcile the window with the tokens the call actually consumed."""
        usage = (
            actual_tokens
            if isinstance(actual_tokens, TokenUsage)
            else TokenUsage(total_tokens=int(actual_tokens))
        )
        stats = self._stats.setdefault(model_class, ModelUsageStats(model_class))
        stats.record(usage, self._pricing.get(model_class))

        state = self._state(model_class)
        if state.budget is None:
            return
        if permit is not None and permit.event is not None:
            permit.event.tokens = usage.total_tokens
        else:
            state.events.append(_WindowEvent(self._clock(), usage.total_tokens))

    # -- introspection ------------------------------------------------------

    def get_status(self, model_class: str) -> RateLimitStatus:
        state = self._state(model_class)
        now = self._clock()
        self._evict(state, now)
        reset = (
            max(0.0, state.events[0].timestamp + self.window_seconds - now)
            if state.events
            else 0.0
        )
        return RateLimitStatus(
            model_class=model_class,
            requests_in_window=len(state.events),
            tokens_in_window=sum(e.tokens for e in state.events),
            requests_per_window=state.budget.requests_per_window if state.budget else None,
            tokens_per_window=state.budget.tokens_per_window if state.budget else None,
            queue_length=len(state.queue),
            seconds_until_reset=reset,
        )

    def get_all_status(self) -> dict[str, RateLimitStatus]:
        names = set(self._limits) | set(self._models)
        return {name: self.get_status(name) for name in sorted(names)}

    def clear_queue(self, model_class: str | None = None) -> int:
        """Reject every waiting request, optionally for one model only."""
        rejected = 0
        targets = [model_class] if model_class else list(self._models)
        for name in targets:
            state = self._models.get(name)
            if state is None:
                continue
            for ticket in state.queue:
                ticket.rejected = True
                rejected += 1
        if rejected:
            logger.warning("Rate limiter queue cleared", rejected=rejected)
        return rejected

    def usage_stats(self) -> dict[str, dict[str, Any]]:
        return {
            name: {
                "requests": stats.requests,
                **stats.usage.as_dict(),
                "estimated_cost": round(stats.estimated_cost, 6),
            }
            for name, stats in self._stats.items()
        }

    def total_cost(self) -> float:
        return sum(stats.estimated_cost for stats in self._stats.values())
