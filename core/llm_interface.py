# core/llm_interface.py
"""
Handles direct interactions with the text-generation service.

``LLMService`` talks to any OpenAI compatible ``/chat/completions`` endpoint
and translates transport failures into the Folio error taxonomy. It makes a
single attempt per call; retries, rate limiting and token accounting are
layered on top by :class:`core.generation_client.GenerationClient`.
"""

from __future__ import annotations

import asyncio
import functools
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import structlog
import tiktoken

from config import settings
from core.exceptions import (
    GenerationRateLimitError,
    GenerationServiceError,
    GenerationTimeoutError,
    MalformedOutputError,
    TransientGenerationError,
)
from core.usage import TokenUsage

logger = structlog.get_logger(__name__)


@dataclass
class GenerationOptions:
    """Per-call knobs passed to the generator."""

    model: str
    temperature: float = settings.TEMPERATURE_DEFAULT
    max_tokens: int = settings.MAX_GENERATION_TOKENS
    system_prompt: str | None = None


@dataclass
class GenerationResult:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str | None = None


class TextGenerator(Protocol):
    """Anything that can turn a prompt into text."""

    async def generate(
        self, prompt: str, options: GenerationOptions
    ) -> GenerationResult: ...


def _completion_token_param(api_base: str) -> str:
    """Return the token count parameter expected by the provider."""
    if "api.openai.com" in api_base:
        return "max_completion_tokens"
    return "max_tokens"


@functools.lru_cache(maxsize=settings.TOKENIZER_CACHE_SIZE)
def _get_tokenizer(model_name: str) -> tiktoken.Encoding | None:
    """
    Gets a tiktoken encoder for the given model name, with caching.
    Tries model-specific encoding, then a default, then returns None.
    """
    try:
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            logger.debug(
                "No direct tiktoken encoding, using default",
                model=model_name,
                encoding=settings.TIKTOKEN_DEFAULT_ENCODING,
            )
            return tiktoken.get_encoding(settings.TIKTOKEN_DEFAULT_ENCODING)
    except Exception as exc:
        logger.error(
            "Tokenizer unavailable, using character heuristic",
            model=model_name,
            error=str(exc),
        )
        return None


def count_tokens(text: str, model_name: str) -> int:
    """Count tokens in ``text`` for ``model_name`` with a character fallback."""
    if not text:
        return 0
    encoder = _get_tokenizer(model_name)
    if encoder:
        return len(encoder.encode(text, allowed_special="all"))
    return int(len(text) / settings.FALLBACK_CHARS_PER_TOKEN)


_THINK_TAGS = ("think", "thought", "thinking", "reasoning", "analysis")

_PREAMBLE_PATTERNS = (
    r"^\s*(Okay,\s*)?(Sure,\s*)?(Here's|Here is)\s+(the|your)\s+[\w\s]+?:\s*",
    r"^\s*Certainly! Here is the text:\s*",
    r"^\s*(?:Output|Result|Response|Answer)\s*:\s*",
)

_SIGNOFF_PATTERNS = (
    r"\s*Let me know if you (need|have) any(thing else| other questions| further revisions| adjustments)\b.*?\.?[^\w\n]*$",
    r"\s*I hope this (meets your expectations|helps|is what you were looking for)\b.*?\.?[^\w\n]*$",
)


def clean_model_response(text: str) -> str:
    """Strip reasoning blocks, chatty preambles and sign-offs from prose."""
    if not isinstance(text, str):
        return ""
    cleaned = text
    for tag in _THINK_TAGS:
        cleaned = re.sub(
            rf"<\s*{tag}\s*>.*?<\s*/\s*{tag}\s*>",
            "",
            cleaned,
            flags=re.DOTALL | re.IGNORECASE,
        )
        cleaned = re.sub(rf"<\s*/?\s*{tag}\s*/?\s*>", "", cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.strip()
    for pattern in _PREAMBLE_PATTERNS:
        cleaned = re.sub(pattern, "", cleaned, count=1, flags=re.IGNORECASE).strip()
    for pattern in _SIGNOFF_PATTERNS:
        cleaned = re.sub(pattern, "", cleaned, count=1, flags=re.IGNORECASE).strip()
    return re.sub(r"\n{3,}", "\n\n", cleaned)


class LLMService:
    """OpenAI compatible chat-completions client."""

    def __init__(
        self,
        api_base: str = settings.OPENAI_API_BASE,
        api_key: str = settings.OPENAI_API_KEY,
        timeout: float = settings.HTTPX_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._api_key = api_key
        # Single client so connections are reused
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_LLM_CALLS)
        self.request_count = 0
        logger.info(
            "LLMService initialized",
            api_base=self.api_base,
            concurrency_limit=settings.MAX_CONCURRENT_LLM_CALLS,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _build_payload(self, prompt: str, options: GenerationOptions) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": options.model,
            "messages": messages,
            "temperature": options.temperature,
            "top_p": settings.LLM_TOP_P,
            _completion_token_param(self.api_base): options.max_tokens,
            "stream": False,
        }

    async def generate(
        self, prompt: str, options: GenerationOptions
    ) -> GenerationResult:
        if not prompt or not prompt.strip():
            raise ValueError("generate() requires a non-empty prompt")
        payload = self._build_payload(prompt, options)
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        logger.debug(
            "Calling LLM",
            model=options.model,
            prompt_tokens_est=count_tokens(prompt, options.model),
            max_tokens=options.max_tokens,
            temperature=options.temperature,
        )
        async with self._semaphore:
            self.request_count += 1
            try:
                response = await self._client.post(
                    f"{self.api_base}/chat/completions", json=payload, headers=headers
                )
                response.raise_for_status()
            except httpx.TimeoutException as exc:
                raise GenerationTimeoutError(
                    f"LLM '{options.model}' timed out: {exc}"
                ) from exc
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                body = exc.response.text[:200]
                if status == 429:
                    raise GenerationRateLimitError(
                        f"LLM '{options.model}' rate limited: {body}"
                    ) from exc
                if status >= 500:
                    raise TransientGenerationError(
                        f"LLM '{options.model}' server error {status}: {body}"
                    ) from exc
                raise GenerationServiceError(
                    f"LLM '{options.model}' rejected request ({status}): {body}",
                    status_code=status,
                ) from exc
            except httpx.RequestError as exc:
                raise TransientGenerationError(
                    f"LLM '{options.model}' request failed: {exc}"
                ) from exc

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise MalformedOutputError(
                f"LLM '{options.model}' returned an invalid response body",
                raw_text=response.text[:500],
            ) from exc

        usage = TokenUsage.from_response(data.get("usage"))
        if usage:
            logger.info(
                "LLM usage",
                model=options.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            )
        return GenerationResult(text=text, usage=usage, model=options.model)
