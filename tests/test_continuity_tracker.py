import asyncio
import json

import pytest

from conftest import EMPTY_ISSUES, ScriptedGenerator, make_client
from continuity.tracker import TRUNCATION_MARKER, ContinuityTracker, truncate_content
from core.exceptions import CriticalExtractionError
from core.llm_interface import GenerationResult
from models.book_models import BookOutline, ChapterOutline, CharacterSeed
from models.consistency_models import DecodeStatus

EXTRACTION = json.dumps(
    {
        "characterUpdates": [{"name": "Ana", "location": "Kitchen"}],
        "newFacts": ["The lamp is lit at dusk"],
        "timeReferences": [{"reference": "That evening"}],
    }
)


def route(responses: dict[str, str]):
    """Answer by the first line of the prompt."""

    def responder(prompt, _options):
        for marker, answer in responses.items():
            if marker in prompt.splitlines()[0]:
                return answer
        return EMPTY_ISSUES

    return responder


def make_tracker(responses: dict[str, str], **kwargs) -> tuple[ContinuityTracker, ScriptedGenerator]:
    generator = ScriptedGenerator(route(responses))
    tracker = ContinuityTracker(make_client(generator), model_name="m", **kwargs)
    tracker.caller.parsing_retries = 1
    tracker.initialize(
        [CharacterSeed(name="Ana", initial_location="Lighthouse")],
        BookOutline(chapters=[ChapterOutline(number=1, summary="Arrival")]),
        ["Fresnel lenses focus light"],
    )
    return tracker, generator


def test_initialize_seeds_state():
    tracker, _ = make_tracker({})
    state = tracker.state
    assert state.characters["Ana"].current_location == "Lighthouse"
    assert state.timeline[0].time_reference == "Story begins"
    assert state.research_references[0].context == "Arrival"


@pytest.mark.asyncio
async def test_clean_unit_scores_perfect_and_merges_updates():
    tracker, _ = make_tracker({"Extract": EXTRACTION})
    report = await tracker.check_unit(1, "Ana lit the lamp.", summary="Arrival")
    assert report.overall_score == 100.0
    assert report.extraction_status is DecodeStatus.SUCCESS
    assert tracker.state.characters["Ana"].current_location == "Kitchen"
    assert "The lamp is lit at dusk" in tracker.state.established_facts


@pytest.mark.asyncio
async def test_issues_are_tagged_with_category_and_chapter():
    timeline_issue = json.dumps(
        {"issues": [{"type": "plot", "severity": "critical", "description": "Time loop"}]}
    )
    tracker, _ = make_tracker({"Extract": EXTRACTION, "timeline": timeline_issue})
    report = await tracker.check_unit(2, "Ana waited.")
    assert len(report.issues) == 1
    issue = report.issues[0]
    assert issue.type.value == "timeline"
    assert issue.chapters == [2]
    assert report.overall_score == pytest.approx(62.5)
    assert report.category_scores["timeline"] == pytest.approx(62.5)


@pytest.mark.asyncio
async def test_character_check_only_for_mentioned_characters():
    tracker, generator = make_tracker({"Extract": EXTRACTION})
    await tracker.check_unit(1, "The sea was grey.")
    assert not any('"Ana"' in prompt.splitlines()[0] for prompt, _ in generator.calls)

    await tracker.check_unit(1, "Ana watched the sea.")
    assert any('"Ana"' in prompt.splitlines()[0] for prompt, _ in generator.calls)


@pytest.mark.asyncio
async def test_critical_category_decode_failure_raises():
    tracker, _ = make_tracker({"Extract": EXTRACTION, "character": "not json"})
    with pytest.raises(CriticalExtractionError) as excinfo:
        await tracker.check_unit(1, "Ana climbed the stairs.")
    assert excinfo.value.category == "character"


@pytest.mark.asyncio
async def test_non_critical_category_degrades_to_no_issues():
    tracker, _ = make_tracker({"Extract": EXTRACTION, "worldbuilding": "garbage"})
    report = await tracker.check_unit(1, "Ana climbed the stairs.")
    assert report.degraded_categories == ["worldbuilding"]
    assert report.overall_score == 100.0


@pytest.mark.asyncio
async def test_extraction_failure_keeps_state_and_reports_failed():
    tracker, _ = make_tracker({"Extract": "nonsense"})
    before = tracker.snapshot()
    report = await tracker.check_unit(1, "Ana slept.")
    assert report.extraction_status is DecodeStatus.FAILED
    assert tracker.state.characters == before.characters


@pytest.mark.asyncio
async def test_configured_critical_categories_are_honoured():
    tracker, _ = make_tracker(
        {"Extract": "nonsense"}, critical_categories={"extraction"}
    )
    with pytest.raises(CriticalExtractionError):
        await tracker.check_unit(1, "Ana slept.")


@pytest.mark.asyncio
async def test_research_check_runs_only_with_referenced_facts():
    tracker, generator = make_tracker({"Extract": EXTRACTION})
    await tracker.check_unit(1, "Light.")
    assert not any("research facts" in p.splitlines()[0] for p, _ in generator.calls)
    await tracker.check_unit(1, "Light.", referenced_facts=["Fresnel"])
    assert any("research facts" in p.splitlines()[0] for p, _ in generator.calls)


def test_truncate_content_prefers_sentence_boundary():
    text = "a" * 90 + ". " + "b" * 50
    result = truncate_content(text, 100)
    assert result == "a" * 90 + "." + TRUNCATION_MARKER
    assert truncate_content("short", 100) == "short"


class SlowFirstExtraction:
    """The first extraction answers late and introduces a new character."""

    def __init__(self) -> None:
        self.extraction_prompts: list[str] = []

    async def generate(self, prompt, options):
        if "Extract" not in prompt.splitlines()[0]:
            return GenerationResult(text=EMPTY_ISSUES)
        self.extraction_prompts.append(prompt)
        if len(self.extraction_prompts) == 1:
            await asyncio.sleep(0.02)
            return GenerationResult(
                text=json.dumps({"characterUpdates": [{"name": "Bram", "location": "Harbour"}]})
            )
        return GenerationResult(text="{}")


@pytest.mark.asyncio
async def test_overlapping_checks_run_one_after_another():
    generator = SlowFirstExtraction()
    tracker = ContinuityTracker(make_client(generator), model_name="m")
    tracker.initialize(
        [CharacterSeed(name="Ana")],
        BookOutline(chapters=[ChapterOutline(number=1, summary="Arrival")]),
        [],
    )

    await asyncio.gather(
        tracker.check_unit(1, "Ana met Bram at the harbour."),
        tracker.check_unit(1, "Ana slept."),
    )

    assert len(generator.extraction_prompts) == 2
    known = next(
        line
        for line in generator.extraction_prompts[1].splitlines()
        if line.startswith("KNOWN CHARACTERS:")
    )
    assert "Bram" in known
    assert tracker.state.characters["Bram"].current_location == "Harbour"
