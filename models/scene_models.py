# models/scene_models.py
"""Closed set of scene contexts handed to the unit writer.

Each variant carries exactly the fields its kind of scene needs, and the
``kind`` tag lets pydantic pick the right one when decoding.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from models.book_models import ChapterOutline, ScenePlan, UnitPlan, UnitRole
from models.narrative_models import CharacterState


class SceneContextBase(BaseModel):
    book_title: str
    genre: str = ""
    chapter_number: int
    chapter_title: str = ""
    chapter_summary: str = ""
    unit_number: int
    total_units: int
    role: UnitRole = UnitRole.DEVELOPMENT
    target_words: int
    purpose: str = ""
    setting: str = ""
    characters: list[str] = Field(default_factory=list)
    mood: str = ""
    previous_content: str = ""
    character_states: list[CharacterState] = Field(default_factory=list)
    research_context: list[str] = Field(default_factory=list)


class ActionScene(SceneContextBase):
    kind: Literal["action"] = "action"
    conflict: str
    stakes: str


class DialogueScene(SceneContextBase):
    kind: Literal["dialogue"] = "dialogue"
    conflict: str
    speakers: list[str]


class DescriptionScene(SceneContextBase):
    kind: Literal["description"] = "description"
    focus: str


class EmotionScene(SceneContextBase):
    kind: Literal["emotion"] = "emotion"
    emotional_beat: str


class ExpositionScene(SceneContextBase):
    kind: Literal["exposition"] = "exposition"
    key_facts: list[str]


class TransitionScene(SceneContextBase):
    kind: Literal["transition"] = "transition"
    time_shift: str


SceneContext = Annotated[
    ActionScene
    | DialogueScene
    | DescriptionScene
    | EmotionScene
    | ExpositionScene
    | TransitionScene,
    Field(discriminator="kind"),
]

scene_context_adapter: TypeAdapter[SceneContext] = TypeAdapter(SceneContext)

_ACTION_WORDS = ("fight", "chase", "escape", "battle", "attack", "race", "action")
_DIALOGUE_WORDS = ("conversation", "argue", "confront", "negotiat", "dialogue", "talk")
_EMOTION_WORDS = ("grief", "love", "fear", "emotional", "reflect", "mourn", "sad", "joy")
_DESCRIPTION_WORDS = ("explore", "arrive", "describe", "discover", "landscape", "setting")
_EXPOSITION_WORDS = ("explain", "reveal", "history", "backstory", "learn", "research")


def determine_scene_kind(plan: ScenePlan, role: UnitRole) -> str:
    """Pick a scene kind from the plan's purpose, conflict and mood."""
    text = f"{plan.purpose} {plan.conflict} {plan.mood}".lower()
    if role is UnitRole.BRIDGE and not plan.conflict:
        return "transition"
    if any(word in text for word in _ACTION_WORDS):
        return "action"
    if any(word in text for word in _DIALOGUE_WORDS):
        return "dialogue"
    if any(word in text for word in _EMOTION_WORDS):
        return "emotion"
    if any(word in text for word in _EXPOSITION_WORDS):
        return "exposition"
    if any(word in text for word in _DESCRIPTION_WORDS):
        return "description"
    if plan.conflict:
        return "dialogue"
    return "description"


def build_scene_context(
    *,
    book_title: str,
    genre: str,
    chapter: ChapterOutline,
    unit: UnitPlan,
    total_units: int,
    previous_content: str,
    character_states: list[CharacterState],
    research_context: list[str],
) -> SceneContext:
    """Choose the variant for ``unit`` and fill in its required fields."""
    index = unit.unit_number - 1
    plan = chapter.scenes[index] if index < len(chapter.scenes) else ScenePlan(
        purpose=chapter.summary
    )
    common = {
        "book_title": book_title,
        "genre": genre,
        "chapter_number": chapter.number,
        "chapter_title": chapter.title,
        "chapter_summary": chapter.summary,
        "unit_number": unit.unit_number,
        "total_units": total_units,
        "role": unit.role,
        "target_words": unit.target_words,
        "purpose": plan.purpose,
        "setting": plan.setting,
        "characters": plan.characters,
        "mood": plan.mood,
        "previous_content": previous_content,
        "character_states": character_states,
        "research_context": research_context,
    }
    kind = determine_scene_kind(plan, unit.role)
    if kind == "action":
        return ActionScene(
            **common,
            conflict=plan.conflict or plan.purpose,
            stakes=plan.outcome or "the outcome of the chapter",
        )
    if kind == "dialogue":
        return DialogueScene(
            **common,
            conflict=plan.conflict or plan.purpose,
            speakers=plan.characters or [c.name for c in character_states][:2],
        )
    if kind == "emotion":
        return EmotionScene(**common, emotional_beat=plan.mood or plan.purpose)
    if kind == "exposition":
        return ExpositionScene(**common, key_facts=research_context or [plan.purpose])
    if kind == "transition":
        return TransitionScene(**common, time_shift=plan.outcome or "a short while later")
    return DescriptionScene(**common, focus=plan.setting or plan.purpose)
