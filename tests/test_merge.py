from continuity.merge import (
    apply_character_update,
    initialize_new_character,
    merge_tracker_update,
    record_research_references,
)
from models.narrative_models import (
    DEFAULT_PHYSICAL_STATE,
    CharacterState,
    CharacterUpdate,
    NarrativeState,
    TrackerUpdate,
)


def test_unreported_location_is_kept():
    state = NarrativeState()
    merge_tracker_update(
        state,
        TrackerUpdate(character_updates=[CharacterUpdate(name="Ana", location="Kitchen")]),
        1,
    )
    merge_tracker_update(
        state,
        TrackerUpdate(
            character_updates=[CharacterUpdate(name="Ana", emotional_state="Angry")]
        ),
        2,
    )
    ana = state.characters["Ana"]
    assert ana.current_location == "Kitchen"
    assert ana.emotional_state == "Angry"
    assert ana.last_seen_chapter == 2


def test_null_like_strings_do_not_overwrite():
    state = CharacterState(name="Ana", current_location="Kitchen")
    changed = apply_character_update(
        state, CharacterUpdate(name="Ana", location="null", physicalState=" "), 0
    )
    assert not changed
    assert state.current_location == "Kitchen"
    assert state.physical_state == DEFAULT_PHYSICAL_STATE


def test_last_seen_chapter_never_moves_backwards():
    state = CharacterState(name="Ben", last_seen_chapter=5)
    apply_character_update(state, CharacterUpdate(name="Ben", location="Dock"), 3)
    assert state.last_seen_chapter == 5
    assert state.current_location == "Dock"


def test_character_lookup_is_case_insensitive():
    state = NarrativeState()
    state.characters["Ana"] = CharacterState(name="Ana")
    counts = merge_tracker_update(
        state,
        TrackerUpdate(character_updates=[CharacterUpdate(name="ana", location="Roof")]),
        1,
    )
    assert list(state.characters) == ["Ana"]
    assert counts["characters_updated"] == 1
    assert counts["characters_added"] == 0


def test_keys_only_grow():
    state = NarrativeState()
    merge_tracker_update(
        state,
        TrackerUpdate.model_validate(
            {
                "characterUpdates": [{"name": "Ana"}, {"name": "Ben"}],
                "worldBuilding": [{"element": "Lighthouse", "description": "Tall"}],
                "newFacts": ["The lamp runs on oil"],
            }
        ),
        1,
    )
    before_chars = set(state.characters)
    before_world = set(state.world_building)
    merge_tracker_update(state, TrackerUpdate(), 2)
    merge_tracker_update(
        state,
        TrackerUpdate.model_validate(
            {"characterUpdates": [{"name": "Cleo"}], "newFacts": ["The lamp runs on oil"]}
        ),
        3,
    )
    assert before_chars < set(state.characters)
    assert before_world <= set(state.world_building)
    assert state.established_facts == ["The lamp runs on oil"]


def test_world_element_chapters_stay_sorted():
    state = NarrativeState()
    for chapter in (4, 1, 3, 1):
        merge_tracker_update(
            state,
            TrackerUpdate.model_validate({"worldBuilding": [{"element": "Harbor"}]}),
            chapter,
        )
    assert state.world_building["Harbor"].chapters == [1, 3, 4]


def test_plot_points_inserted_in_chapter_order():
    state = NarrativeState()
    merge_tracker_update(
        state, TrackerUpdate.model_validate({"plotPoints": [{"event": "Storm"}]}), 3
    )
    merge_tracker_update(
        state, TrackerUpdate.model_validate({"plotPoints": [{"event": "Arrival"}]}), 1
    )
    merge_tracker_update(
        state, TrackerUpdate.model_validate({"plotPoints": [{"event": "Wreck"}]}), 3
    )
    assert [(p.chapter, p.event) for p in state.plot_points] == [
        (1, "Arrival"),
        (3, "Storm"),
        (3, "Wreck"),
    ]


def test_initialize_new_character_uses_defaults_for_unreported():
    state = initialize_new_character(CharacterUpdate(name=" Dana "), 2)
    assert state.name == "Dana"
    assert state.physical_state == DEFAULT_PHYSICAL_STATE
    assert state.last_seen_chapter == 2


def test_research_references_skip_repeats():
    state = NarrativeState()
    assert record_research_references(state, ["Fresnel lens", "Fresnel lens"], 1, "c") == 1
    assert record_research_references(state, ["Fresnel lens"], 2, "c") == 1
    assert [ref.chapter for ref in state.research_references] == [1, 2]
