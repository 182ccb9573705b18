import asyncio
import json
import re

import pytest

from config import settings
from conftest import (
    EMPTY_ISSUES,
    EchoProofreader,
    FakePlanner,
    FakeSupervisor,
    FakeWriter,
    ScriptedGenerator,
    make_client,
)
from continuity.tracker import ContinuityTracker
from core.exceptions import (
    BookNotFoundError,
    FatalGenerationError,
    GenerationAlreadyRunningError,
)
from core.retry import no_sleep_policy
from models.book_models import BookStatus, ChapterStatus, GenerationStep, UnitStatus
from orchestration.book_orchestrator import BookOrchestrator
from orchestration.progress import ProgressReporter


def make_orchestrator(
    client,
    repository,
    checkpoint_store,
    *,
    planner=None,
    writer=None,
    supervisor=None,
    progress=None,
    tracker_responder=None,
):
    tracker_client = make_client(ScriptedGenerator(tracker_responder))
    return BookOrchestrator(
        client,
        repository,
        checkpoint_store,
        planner=planner or FakePlanner(),
        writer=writer or FakeWriter(),
        supervisor=supervisor or FakeSupervisor(),
        proofreader=EchoProofreader(),
        tracker_factory=lambda: ContinuityTracker(tracker_client, model_name="m"),
        progress=progress or ProgressReporter(),
        unit_retry_policy=no_sleep_policy(),
    )


@pytest.mark.asyncio
async def test_full_run_completes_book(client, repository, checkpoint_store, book):
    await repository.save_book(book)
    progress = ProgressReporter()
    records = []
    progress.subscribe(records.append)
    writer = FakeWriter()
    orchestrator = make_orchestrator(
        client, repository, checkpoint_store, writer=writer, progress=progress
    )

    report = await orchestrator.run(book.id)

    assert report.status is BookStatus.COMPLETE
    assert report.completed_chapters == [1, 2, 3]
    assert report.accepted_units == 6
    assert report.polished_units == 6
    assert report.permanently_failed_units == []
    assert report.supervision_average == 82.0
    assert not report.resumed
    assert len(writer.calls) == 6

    stored = await repository.get_book(book.id)
    assert stored.status is BookStatus.COMPLETE
    assert stored.premise == "A keeper guards a failing light."
    chapters = await repository.list_chapters(book.id)
    assert [c.status for c in chapters] == [ChapterStatus.COMPLETE] * 3
    assert sum(c.target_words for c in chapters) == book.target_word_count
    assert await checkpoint_store.load(book.id) is None

    percents = [r.percent_complete for r in records]
    assert percents == sorted(percents)
    assert records[-1].step is GenerationStep.COMPLETE
    assert records[-1].percent_complete == 100.0


@pytest.mark.asyncio
async def test_units_see_previous_accepted_content(client, repository, checkpoint_store, book):
    await repository.save_book(book)
    writer = FakeWriter()
    await make_orchestrator(client, repository, checkpoint_store, writer=writer).run(book.id)
    first_of_chapter_two = next(
        s for s in writer.scenes if (s.chapter_number, s.unit_number) == (2, 1)
    )
    assert first_of_chapter_two.previous_content.endswith("chapter 1, part 2.")


@pytest.mark.asyncio
async def test_rejected_unit_is_retried_then_left_for_revision(
    client, repository, checkpoint_store, book
):
    await repository.save_book(book)
    supervisor = FakeSupervisor(scores={(2, 1): 10.0})
    orchestrator = make_orchestrator(
        client, repository, checkpoint_store, supervisor=supervisor
    )

    report = await orchestrator.run(book.id)

    assert report.status is BookStatus.COMPLETE
    assert report.permanently_failed_units == [(2, 1)]
    assert report.chapters_needing_revision == [2]
    assert report.completed_chapters == [1, 3]
    # first pass plus three queue retries
    assert supervisor.unit_reviews.count((2, 1)) == 4
    assert supervisor.chapter_reviews == [1, 3]

    chapters = {c.number: c.status for c in await repository.list_chapters(book.id)}
    assert chapters[2] is ChapterStatus.NEEDS_REVISION
    unit = await repository.get_unit(book.id, 2, 1)
    assert unit.status is UnitStatus.NEEDS_REVISION
    assert unit.content is None


@pytest.mark.asyncio
async def test_queued_unit_recovers_on_retry(client, repository, checkpoint_store, book):
    await repository.save_book(book)

    class FlakySupervisor(FakeSupervisor):
        async def review_unit(self, content, scene):
            score = await super().review_unit(content, scene)
            key = (scene.chapter_number, scene.unit_number)
            return 10.0 if key == (1, 2) and self.unit_reviews.count(key) == 1 else score

    report = await make_orchestrator(
        client, repository, checkpoint_store, supervisor=FlakySupervisor()
    ).run(book.id)

    assert report.completed_chapters == [1, 2, 3]
    assert report.permanently_failed_units == []
    chapters = {c.number: c.status for c in await repository.list_chapters(book.id)}
    assert chapters[1] is ChapterStatus.COMPLETE


@pytest.mark.asyncio
async def test_crash_then_resume_skips_finished_work(
    client, repository, checkpoint_store, book
):
    await repository.save_book(book)
    planner = FakePlanner()
    crashing = FakeWriter(fail={(2, 1): FatalGenerationError("disk full")})

    with pytest.raises(FatalGenerationError):
        await make_orchestrator(
            client, repository, checkpoint_store, planner=planner, writer=crashing
        ).run(book.id)

    assert (await repository.get_book(book.id)).status is BookStatus.PLANNING
    checkpoint = await checkpoint_store.load(book.id)
    assert checkpoint.completed_chapters == [1]
    chapter_one = await repository.get_unit(book.id, 1, 1)

    writer = FakeWriter()
    report = await make_orchestrator(
        client, repository, checkpoint_store, planner=planner, writer=writer
    ).run(book.id)

    assert report.resumed
    assert report.completed_chapters == [1, 2, 3]
    assert all(chapter != 1 for chapter, _ in writer.calls)
    assert planner.premise_calls == 1
    assert planner.outline_calls == 1
    assert (await repository.get_unit(book.id, 1, 1)).content == chapter_one.content


@pytest.mark.asyncio
async def test_completed_book_is_not_regenerated(client, repository, checkpoint_store, book):
    await repository.save_book(book)
    await make_orchestrator(client, repository, checkpoint_store).run(book.id)

    writer = FakeWriter()
    report = await make_orchestrator(
        client, repository, checkpoint_store, writer=writer
    ).run(book.id)
    assert report.status is BookStatus.COMPLETE
    assert report.accepted_units == 6
    assert writer.calls == []


@pytest.mark.asyncio
async def test_fatal_outline_error_resets_status(client, repository, checkpoint_store, book):
    await repository.save_book(book)

    class BrokenPlanner(FakePlanner):
        async def generate_outline(self, book, premise):
            raise FatalGenerationError("planner offline")

    progress = ProgressReporter()
    with pytest.raises(FatalGenerationError):
        await make_orchestrator(
            client, repository, checkpoint_store, planner=BrokenPlanner(), progress=progress
        ).run(book.id)

    stored = await repository.get_book(book.id)
    assert stored.status is BookStatus.PLANNING
    assert stored.premise
    latest = progress.latest(book.id)
    assert latest.step is GenerationStep.ERROR
    assert latest.error == "FatalGenerationError: planner offline"
    assert not BookOrchestrator.is_running(book.id)


@pytest.mark.asyncio
async def test_unknown_book(client, repository, checkpoint_store):
    with pytest.raises(BookNotFoundError):
        await make_orchestrator(client, repository, checkpoint_store).run("ghost")


@pytest.mark.asyncio
async def test_second_run_for_same_book_is_refused(client, repository, checkpoint_store, book):
    await repository.save_book(book)
    release = asyncio.Event()

    class SlowPlanner(FakePlanner):
        async def generate_premise(self, book):
            await release.wait()
            return await super().generate_premise(book)

    first = asyncio.create_task(
        make_orchestrator(client, repository, checkpoint_store, planner=SlowPlanner()).run(
            book.id
        )
    )
    await asyncio.sleep(0.01)
    assert BookOrchestrator.is_running(book.id)
    with pytest.raises(GenerationAlreadyRunningError):
        await make_orchestrator(client, repository, checkpoint_store).run(book.id)

    release.set()
    report = await asyncio.wait_for(first, timeout=5)
    assert report.status is BookStatus.COMPLETE
    assert not BookOrchestrator.is_running(book.id)


def plot_event_responder(prompt, _options):
    """Report one plot event per unit, named after the unit's chapter and part."""
    if "Extract" not in prompt.splitlines()[0]:
        return EMPTY_ISSUES
    match = re.search(r"chapter (\d+), part (\d+)", prompt)
    return json.dumps({"plotPoints": [{"event": f"event {match.group(1)}.{match.group(2)}"}]})


@pytest.mark.asyncio
async def test_rejected_units_leave_no_plot_points(client, repository, checkpoint_store, book):
    await repository.save_book(book)

    class PickySupervisor(FakeSupervisor):
        async def review_unit(self, content, scene):
            score = await super().review_unit(content, scene)
            key = (scene.chapter_number, scene.unit_number)
            if key == (1, 1):
                return 0.0
            # (1, 2) is rejected once, then recovers in the queue drain
            return 10.0 if key == (1, 2) and self.unit_reviews.count(key) == 1 else score

    report = await make_orchestrator(
        client,
        repository,
        checkpoint_store,
        supervisor=PickySupervisor(),
        tracker_responder=plot_event_responder,
    ).run(book.id)

    assert report.permanently_failed_units == [(1, 1)]
    assert (await repository.get_unit(book.id, 1, 1)).content is None
    state = repository._documents[book.id].narrative_state
    events = [point.event for point in state.plot_points]
    assert "event 1.1" not in events
    assert events.count("event 1.2") == 1
    assert sorted(events) == ["event 1.2", "event 2.1", "event 2.2", "event 3.1", "event 3.2"]


@pytest.mark.asyncio
async def test_fatal_draft_cancels_sibling_drafts(
    client, repository, checkpoint_store, book, monkeypatch
):
    await repository.save_book(book)
    monkeypatch.setattr(settings, "MAX_CONCURRENT_UNITS", 2)

    class StallingWriter(FakeWriter):
        def __init__(self):
            super().__init__(fail={(1, 1): FatalGenerationError("disk full")})
            self.started: list[tuple[int, int]] = []
            self.finished: list[tuple[int, int]] = []

        async def write_unit(self, scene):
            key = (scene.chapter_number, scene.unit_number)
            self.started.append(key)
            if key == (1, 2):
                await asyncio.sleep(0.05)
            result = await super().write_unit(scene)
            self.finished.append(key)
            return result

    writer = StallingWriter()
    with pytest.raises(FatalGenerationError):
        await make_orchestrator(client, repository, checkpoint_store, writer=writer).run(
            book.id
        )
    await asyncio.sleep(0.1)

    assert sorted(writer.started) == [(1, 1), (1, 2)]
    assert writer.finished == []


@pytest.mark.asyncio
async def test_cancelled_run_resumes_like_a_crash(client, repository, checkpoint_store, book):
    await repository.save_book(book)
    reached = asyncio.Event()

    class BlockingWriter(FakeWriter):
        async def write_unit(self, scene):
            if scene.chapter_number == 2:
                reached.set()
                await asyncio.Event().wait()
            return await super().write_unit(scene)

    first_writer = BlockingWriter()
    task = asyncio.create_task(
        make_orchestrator(client, repository, checkpoint_store, writer=first_writer).run(
            book.id
        )
    )
    await asyncio.wait_for(reached.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not BookOrchestrator.is_running(book.id)
    assert (await repository.get_book(book.id)).status is BookStatus.GENERATING
    checkpoint = await checkpoint_store.load(book.id)
    assert checkpoint.completed_chapters == [1]
    chapter_one = await repository.get_unit(book.id, 1, 2)

    writer = FakeWriter()
    report = await make_orchestrator(
        client, repository, checkpoint_store, writer=writer
    ).run(book.id)

    assert report.resumed
    assert report.completed_chapters == [1, 2, 3]
    assert sorted(writer.calls) == [(2, 1), (2, 2), (3, 1), (3, 2)]
    assert (await repository.get_unit(book.id, 1, 2)).content == chapter_one.content
