import json

import pytest

from agents.planning_agent import PlanningAgent
from agents.proofreader_agent import ProofreaderAgent
from agents.supervision_agent import SupervisionAgent
from agents.unit_writer_agent import UnitWriterAgent
from conftest import ScriptedGenerator, make_client
from core.exceptions import MalformedOutputError
from models.scene_models import DialogueScene


def make_scene() -> DialogueScene:
    return DialogueScene(
        book_title="The Lighthouse Keeper",
        genre="literary",
        chapter_number=1,
        unit_number=2,
        total_units=3,
        target_words=500,
        conflict="Who let the lamp go out",
        speakers=["Ana", "Ben"],
    )


@pytest.mark.asyncio
async def test_outline_fills_missing_chapters(book):
    payload = {
        "chapters": [
            {"number": 1, "title": "Arrival", "summary": "Ana arrives."},
            {"number": 9, "title": "Out of range"},
        ],
        "characters": [{"name": "Ana", "role": "keeper"}],
        "researchFacts": ["Lamps burned whale oil"],
    }
    generator = ScriptedGenerator(lambda *_: json.dumps(payload))
    outline = await PlanningAgent(make_client(generator), model_name="m").generate_outline(
        book, "premise"
    )
    assert [c.number for c in outline.chapters] == [1, 2, 3]
    assert outline.chapters[0].title == "Arrival"
    assert outline.chapters[2].title == "Chapter 3"
    assert outline.characters[0].name == "Ana"
    assert outline.research_facts == ["Lamps burned whale oil"]


@pytest.mark.asyncio
async def test_outline_decode_failure_raises(book):
    agent = PlanningAgent(make_client(ScriptedGenerator(lambda *_: "no outline")), model_name="m")
    agent.caller.parsing_retries = 0
    with pytest.raises(MalformedOutputError):
        await agent.generate_outline(book, "premise")


@pytest.mark.asyncio
async def test_premise_is_cleaned(book):
    generator = ScriptedGenerator(lambda *_: "<think>hmm</think>A keeper and a storm.")
    premise = await PlanningAgent(make_client(generator), model_name="m").generate_premise(book)
    assert premise == "A keeper and a storm."
    assert '"The Lighthouse Keeper"' in generator.calls[0][0]


@pytest.mark.asyncio
async def test_supervision_scores_unit():
    generator = ScriptedGenerator(lambda *_: '{"score": 77, "notes": ["tight"]}')
    agent = SupervisionAgent(make_client(generator), model_name="m")
    assert await agent.review_unit("Text.", make_scene()) == 77
    review = await agent.review_chapter(4, "Storm", "Text.")
    assert review.chapter_number == 4
    assert review.notes == ["tight"]


@pytest.mark.asyncio
async def test_supervision_decode_failure_raises():
    agent = SupervisionAgent(make_client(ScriptedGenerator(lambda *_: '{"score": 400}')), model_name="m")
    agent.caller.parsing_retries = 0
    with pytest.raises(MalformedOutputError):
        await agent.review_unit("Text.", make_scene())


@pytest.mark.asyncio
async def test_proofreader_keeps_original_when_output_collapses():
    content = "Ana argued with Ben about the lamp for a long while."
    agent = ProofreaderAgent(make_client(ScriptedGenerator(lambda *_: "Ana.")), model_name="m")
    assert await agent.polish(content, make_scene()) == content


@pytest.mark.asyncio
async def test_proofreader_returns_polished_text():
    content = "Ana argued with Ben about the lamp."
    polished = "Ana argued with Ben over the lamp, voice low."
    agent = ProofreaderAgent(make_client(ScriptedGenerator(lambda *_: polished)), model_name="m")
    assert await agent.polish(content, make_scene()) == polished


@pytest.mark.asyncio
async def test_writer_sends_scene_and_system_prompt():
    generator = ScriptedGenerator(lambda *_: "Ben shrugged.")
    result = await UnitWriterAgent(make_client(generator), model_name="m").write_unit(make_scene())
    prompt, options = generator.calls[0]
    assert result.text == "Ben shrugged."
    assert "SPEAKERS: Ana, Ben" in prompt
    assert "literary" in options.system_prompt
    assert options.max_tokens == int(500 * 1.6) + 256


@pytest.mark.asyncio
async def test_writer_empty_output_is_malformed():
    agent = UnitWriterAgent(make_client(ScriptedGenerator(lambda *_: "   ")), model_name="m")
    with pytest.raises(MalformedOutputError):
        await agent.write_unit(make_scene())
