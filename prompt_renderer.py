# prompt_renderer.py
"""Render the Jinja2 prompt templates shipped under ``prompts/``."""

import json
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader
from jinja2.utils import htmlsafe_json_dumps
from pydantic import BaseModel

PROMPTS_PATH = Path(__file__).parent / "prompts"


def _default_json_serializer(value: Any) -> Any:
    """Let ``json.dumps`` handle pydantic models and sets in prompt data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(
        f"Object of type {value.__class__.__name__} is not JSON serializable"
    )


def _dumps(obj: Any, **kwargs: Any) -> str:
    return json.dumps(obj, default=_default_json_serializer, ensure_ascii=False, **kwargs)


def _tojson(value: Any, indent: int | None = None) -> str:
    """``tojson`` filter that understands pydantic models."""
    kwargs: dict[str, Any] = {}
    if indent is not None:
        kwargs["indent"] = indent
    return htmlsafe_json_dumps(value, dumps=_dumps, **kwargs)


def build_environment(path: Path = PROMPTS_PATH) -> Environment:
    # Prompts are plain text sent to a model, so nothing is HTML-escaped.
    env = Environment(loader=FileSystemLoader(path), autoescape=False)
    env.policies["json.dumps_function"] = _dumps
    env.filters["tojson"] = _tojson
    return env


_env = build_environment()


def render_prompt(template_name: str, context: dict[str, Any]) -> str:
    """Render ``template_name`` (relative to ``prompts/``) with ``context``."""
    template = _env.get_template(template_name)
    return template.render(**context).strip()


def prompt_names() -> list[str]:
    """All template names, partials (leading underscore) excluded."""
    return sorted(
        name
        for name in _env.list_templates(extensions=["j2"])
        if not Path(name).name.startswith("_")
    )
