# models/narrative_models.py
"""The continuity tracker's narrative-state document."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_LOCATION = "Initial setting"
DEFAULT_PHYSICAL_STATE = "Normal"
DEFAULT_EMOTIONAL_STATE = "Starting state"
DEFAULT_KNOWLEDGE_STATE = "Initial knowledge"


class NarrativeModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CharacterState(NarrativeModel):
    name: str
    current_location: str = DEFAULT_LOCATION
    physical_state: str = DEFAULT_PHYSICAL_STATE
    emotional_state: str = DEFAULT_EMOTIONAL_STATE
    knowledge_state: str = DEFAULT_KNOWLEDGE_STATE
    relationships: dict[str, str] = Field(default_factory=dict)
    last_seen_chapter: int = 0


class PlotPoint(NarrativeModel):
    chapter: int
    event: str
    consequences: list[str] = Field(default_factory=list)
    affected_characters: list[str] = Field(default_factory=list)
    established_facts: list[str] = Field(default_factory=list)


class TimelineEntry(NarrativeModel):
    chapter: int
    time_reference: str
    absolute_time: str | None = None
    duration: str | None = None


class ResearchReference(NarrativeModel):
    fact: str
    chapter: int
    context: str = ""


class WorldBuildingElement(NarrativeModel):
    element: str
    description: str = ""
    chapters: list[int] = Field(default_factory=list)


class NarrativeState(NarrativeModel):
    """Characters, plot, timeline and world facts accumulated so far."""

    characters: dict[str, CharacterState] = Field(default_factory=dict)
    plot_points: list[PlotPoint] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)
    established_facts: list[str] = Field(default_factory=list)
    research_references: list[ResearchReference] = Field(default_factory=list)
    world_building: dict[str, WorldBuildingElement] = Field(default_factory=dict)

    def find_character(self, name: str) -> CharacterState | None:
        """Case-insensitive lookup by character name."""
        if name in self.characters:
            return self.characters[name]
        lowered = name.strip().lower()
        for key, state in self.characters.items():
            if key.lower() == lowered:
                return state
        return None

    def find_element(self, element: str) -> WorldBuildingElement | None:
        if element in self.world_building:
            return self.world_building[element]
        lowered = element.strip().lower()
        for key, state in self.world_building.items():
            if key.lower() == lowered:
                return state
        return None


# Restricted extraction schema. Every field except the identifying name is
# optional; ``None`` means "not reported" and must never overwrite state.


class CharacterUpdate(NarrativeModel):
    name: str
    location: str | None = None
    physical_state: str | None = Field(default=None, alias="physicalState")
    emotional_state: str | None = Field(default=None, alias="emotionalState")
    knowledge_state: str | None = Field(default=None, alias="knowledgeState")
    relationship_changes: dict[str, str] = Field(
        default_factory=dict, alias="relationshipChanges"
    )

    model_config = ConfigDict(populate_by_name=True)


class PlotPointUpdate(NarrativeModel):
    event: str
    consequences: list[str] = Field(default_factory=list)
    affected_characters: list[str] = Field(
        default_factory=list, alias="affectedCharacters"
    )
    established_facts: list[str] = Field(
        default_factory=list, alias="establishedFacts"
    )

    model_config = ConfigDict(populate_by_name=True)


class TimeReferenceUpdate(NarrativeModel):
    reference: str
    duration: str | None = None
    absolute_time: str | None = Field(default=None, alias="absoluteTime")

    model_config = ConfigDict(populate_by_name=True)


class WorldBuildingUpdate(NarrativeModel):
    element: str
    description: str = ""


class TrackerUpdate(NarrativeModel):
    """Structured deltas extracted from one generated unit."""

    character_updates: list[CharacterUpdate] = Field(
        default_factory=list, alias="characterUpdates"
    )
    plot_points: list[PlotPointUpdate] = Field(
        default_factory=list, alias="plotPoints"
    )
    time_references: list[TimeReferenceUpdate] = Field(
        default_factory=list, alias="timeReferences"
    )
    new_facts: list[str] = Field(default_factory=list, alias="newFacts")
    world_building: list[WorldBuildingUpdate] = Field(
        default_factory=list, alias="worldBuilding"
    )

    model_config = ConfigDict(populate_by_name=True)

    def is_empty(self) -> bool:
        return not (
            self.character_updates
            or self.plot_points
            or self.time_references
            or self.new_facts
            or self.world_building
        )
