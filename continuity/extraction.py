# continuity/extraction.py
"""Schema-validated decoding of structured generator output.

Decoding walks a fixed ladder and reports where it landed:

1. strict: the whole response validates against the schema;
2. lenient: code fences and chatter are stripped, the outermost JSON object
   is taken, and any list items that fail validation are dropped;
3. stricter prompt: the caller re-asks for bare JSON.

The outcome is a :class:`DecodeResult` tagged ``SUCCESS``, ``PARTIAL`` or
``FAILED``. Nothing in this module raises on malformed output.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, TypeVar

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError
from pydantic.fields import FieldInfo

from config import settings
from core.exceptions import MalformedOutputError
from core.generation_client import GenerationClient
from core.llm_interface import GenerationOptions
from models.consistency_models import DecodeStatus
from prompt_renderer import render_prompt

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)


@dataclass
class DecodeResult(Generic[ModelT]):
    status: DecodeStatus
    value: ModelT | None = None
    errors: list[str] = field(default_factory=list)
    raw_text: str = ""
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status is not DecodeStatus.FAILED


def strip_code_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    return match.group(1) if match else text


def extract_json_object(text: str) -> str | None:
    """Return the substring from the first ``{`` to the last ``}``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _field_adapter(info: FieldInfo) -> TypeAdapter[Any]:
    if info.metadata:
        return TypeAdapter(Annotated[(info.annotation, *info.metadata)])
    return TypeAdapter(info.annotation)


def _salvage(data: dict[str, Any], schema: type[ModelT]) -> tuple[ModelT, list[str]]:
    """Keep every field and list item that validates on its own."""
    kept: dict[str, Any] = {}
    dropped: list[str] = []
    for name, info in schema.model_fields.items():
        key = info.alias if info.alias and info.alias in data else name
        if key not in data:
            continue
        value = data[key]
        adapter = _field_adapter(info)
        if isinstance(value, list):
            items = []
            for index, item in enumerate(value):
                try:
                    adapter.validate_python([item])
                except ValidationError:
                    dropped.append(f"{key}[{index}]")
                    continue
                items.append(item)
            kept[key] = items
            continue
        try:
            adapter.validate_python(value)
        except ValidationError:
            dropped.append(key)
            continue
        kept[key] = value
    return schema.model_validate(kept), dropped


def decode_structured(text: str, schema: type[ModelT]) -> DecodeResult[ModelT]:
    """Decode ``text`` into ``schema`` without raising."""
    if not text or not text.strip():
        return DecodeResult(DecodeStatus.FAILED, errors=["empty response"], raw_text=text)

    try:
        return DecodeResult(
            DecodeStatus.SUCCESS, schema.model_validate_json(text.strip()), raw_text=text
        )
    except ValidationError as exc:
        strict_error = str(exc).splitlines()[0]

    candidate = extract_json_object(strip_code_fences(text))
    if candidate is None:
        return DecodeResult(
            DecodeStatus.FAILED,
            errors=[strict_error, "no JSON object found"],
            raw_text=text,
        )
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return DecodeResult(
            DecodeStatus.FAILED, errors=[strict_error, str(exc)], raw_text=text
        )
    if not isinstance(data, dict):
        return DecodeResult(
            DecodeStatus.FAILED,
            errors=[strict_error, "top-level JSON is not an object"],
            raw_text=text,
        )

    try:
        return DecodeResult(
            DecodeStatus.SUCCESS, schema.model_validate(data), raw_text=text
        )
    except ValidationError:
        pass

    try:
        value, dropped = _salvage(data, schema)
    except ValidationError as exc:
        return DecodeResult(
            DecodeStatus.FAILED,
            errors=[strict_error, str(exc).splitlines()[0]],
            raw_text=text,
        )
    return DecodeResult(
        DecodeStatus.PARTIAL,
        value,
        errors=[f"dropped invalid entries: {', '.join(dropped)}"],
        raw_text=text,
    )


class StructuredCaller:
    """Ask the generator for JSON and walk the decode ladder."""

    def __init__(
        self,
        client: GenerationClient,
        parsing_retries: int = settings.CONTINUITY_PARSING_RETRIES,
    ) -> None:
        self.client = client
        self.parsing_retries = parsing_retries

    async def call(
        self,
        prompt: str,
        schema: type[ModelT],
        options: GenerationOptions,
        *,
        stage: Any,
        label: str,
    ) -> DecodeResult[ModelT]:
        """Return the first non-failed decode, re-prompting for bare JSON.

        Transient generation errors propagate once the client's own retry
        budget is spent; only malformed output is handled here.
        """
        attempts = self.parsing_retries + 1
        current_prompt = prompt
        errors: list[str] = []
        raw_text = ""
        for attempt in range(1, attempts + 1):
            try:
                result = await self.client.generate(current_prompt, options, stage=stage)
            except MalformedOutputError as exc:
                errors.append(str(exc))
                raw_text = exc.raw_text
            else:
                raw_text = result.text
                decoded = decode_structured(result.text, schema)
                if decoded.ok:
                    decoded.attempts = attempt
                    if decoded.status is DecodeStatus.PARTIAL:
                        logger.info(
                            "Structured output partially salvaged",
                            label=label,
                            attempt=attempt,
                            errors=decoded.errors,
                        )
                    return decoded
                errors.extend(decoded.errors)
            logger.warning(
                "Structured output could not be decoded",
                label=label,
                attempt=attempt,
                max_attempts=attempts,
            )
            current_prompt = render_prompt(
                "continuity/bare_json_retry.j2", {"original_prompt": prompt}
            )
        return DecodeResult(
            DecodeStatus.FAILED, errors=errors, raw_text=raw_text, attempts=attempts
        )
