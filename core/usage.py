from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class TokenUsage:
    """Token counts reported for one or more generation calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_response(cls, usage: dict[str, int] | None) -> TokenUsage:
        """Build from an OpenAI style ``usage`` block, tolerating gaps."""
        if not usage:
            return cls()
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = int(usage.get("total_tokens") or (prompt + completion))
        return cls(prompt, completion, total)

    def add(self, usage: TokenUsage | dict[str, int] | None) -> None:
        """Accumulate usage values from another instance or dictionary."""
        if not usage:
            return
        if not isinstance(usage, TokenUsage):
            usage = TokenUsage.from_response(usage)
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.total_tokens += usage.total_tokens

    def __bool__(self) -> bool:
        return bool(self.prompt_tokens or self.completion_tokens or self.total_tokens)

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ModelUsageStats:
    """Running totals and estimated spend for a single model class."""

    model_class: str
    requests: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    estimated_cost: float = 0.0

    def record(
        self, usage: TokenUsage, pricing: dict[str, float] | None = None
    ) -> float:
        """Add ``usage`` and return the cost attributed to it."""
        self.requests += 1
        self.usage.add(usage)
        cost = 0.0
        if pricing:
            cost = (
                usage.prompt_tokens / 1000 * pricing.get("input", 0.0)
                + usage.completion_tokens / 1000 * pricing.get("output", 0.0)
            )
            self.estimated_cost += cost
        return cost
