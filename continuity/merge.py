# continuity/merge.py
"""Helpers for merging extracted updates into the narrative state.

Every helper is additive: fields the extractor did not report are left
alone, keys are never removed, and chapter references never move backwards.
"""

from __future__ import annotations

import bisect

import structlog

from models.narrative_models import (
    CharacterState,
    CharacterUpdate,
    NarrativeState,
    PlotPoint,
    ResearchReference,
    TimelineEntry,
    TrackerUpdate,
    WorldBuildingElement,
)

logger = structlog.get_logger(__name__)


def _reported(value: str | None) -> str | None:
    """Treat blank strings and the literal "null" as unreported."""
    if value is None:
        return None
    stripped = value.strip()
    if not stripped or stripped.lower() in {"null", "none", "unchanged", "n/a"}:
        return None
    return stripped


def initialize_new_character(
    update: CharacterUpdate, chapter_number: int
) -> CharacterState:
    state = CharacterState(name=update.name.strip(), last_seen_chapter=chapter_number)
    apply_character_update(state, update, chapter_number)
    return state


def apply_character_update(
    state: CharacterState, update: CharacterUpdate, chapter_number: int
) -> bool:
    """Overwrite only reported fields. Returns True if anything changed."""
    modified = False
    for field_name, value in (
        ("current_location", update.location),
        ("physical_state", update.physical_state),
        ("emotional_state", update.emotional_state),
        ("knowledge_state", update.knowledge_state),
    ):
        reported = _reported(value)
        if reported is not None and getattr(state, field_name) != reported:
            setattr(state, field_name, reported)
            modified = True
    for other, change in update.relationship_changes.items():
        if not isinstance(other, str) or not isinstance(change, str):
            continue
        reported = _reported(change)
        if reported is not None and state.relationships.get(other) != reported:
            state.relationships[other] = reported
            modified = True
    if chapter_number > state.last_seen_chapter:
        state.last_seen_chapter = chapter_number
        modified = True
    return modified


def _insert_by_chapter(entries: list, entry, chapter: int) -> None:
    """Insert after every entry of the same or an earlier chapter."""
    index = bisect.bisect_right([e.chapter for e in entries], chapter)
    entries.insert(index, entry)


def merge_tracker_update(
    state: NarrativeState, update: TrackerUpdate, chapter_number: int
) -> dict[str, int]:
    """Apply ``update`` for ``chapter_number`` and return change counts."""
    counts = {
        "characters_updated": 0,
        "characters_added": 0,
        "plot_points": 0,
        "timeline": 0,
        "facts": 0,
        "world_elements": 0,
    }

    for char_update in update.character_updates:
        if not char_update.name or not char_update.name.strip():
            continue
        existing = state.find_character(char_update.name)
        if existing is None:
            new_state = initialize_new_character(char_update, chapter_number)
            state.characters[new_state.name] = new_state
            counts["characters_added"] += 1
            logger.debug(
                "New character tracked", name=new_state.name, chapter=chapter_number
            )
        elif apply_character_update(existing, char_update, chapter_number):
            counts["characters_updated"] += 1

    for plot in update.plot_points:
        if not plot.event.strip():
            continue
        _insert_by_chapter(
            state.plot_points,
            PlotPoint(
                chapter=chapter_number,
                event=plot.event.strip(),
                consequences=plot.consequences,
                affected_characters=plot.affected_characters,
                established_facts=plot.established_facts,
            ),
            chapter_number,
        )
        counts["plot_points"] += 1

    for time_ref in update.time_references:
        if not time_ref.reference.strip():
            continue
        _insert_by_chapter(
            state.timeline,
            TimelineEntry(
                chapter=chapter_number,
                time_reference=time_ref.reference.strip(),
                absolute_time=_reported(time_ref.absolute_time),
                duration=_reported(time_ref.duration),
            ),
            chapter_number,
        )
        counts["timeline"] += 1

    known_facts = set(state.established_facts)
    for fact in update.new_facts:
        fact = fact.strip()
        if fact and fact not in known_facts:
            state.established_facts.append(fact)
            known_facts.add(fact)
            counts["facts"] += 1

    for world in update.world_building:
        name = world.element.strip()
        if not name:
            continue
        existing_element = state.find_element(name)
        if existing_element is None:
            state.world_building[name] = WorldBuildingElement(
                element=name,
                description=world.description.strip(),
                chapters=[chapter_number],
            )
        else:
            if chapter_number not in existing_element.chapters:
                bisect.insort(existing_element.chapters, chapter_number)
            if world.description.strip() and not existing_element.description:
                existing_element.description = world.description.strip()
        counts["world_elements"] += 1

    return counts


def record_research_references(
    state: NarrativeState, facts: list[str], chapter_number: int, context: str
) -> int:
    """Log research facts used by a chapter, skipping exact repeats."""
    seen = {(ref.fact, ref.chapter) for ref in state.research_references}
    added = 0
    for fact in facts:
        fact = fact.strip()
        if not fact or (fact, chapter_number) in seen:
            continue
        _insert_by_chapter(
            state.research_references,
            ResearchReference(fact=fact, chapter=chapter_number, context=context),
            chapter_number,
        )
        seen.add((fact, chapter_number))
        added += 1
    return added
