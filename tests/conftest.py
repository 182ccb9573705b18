# tests/conftest.py
import os
import sys
from collections.abc import Callable

import pytest

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Ensure placeholder secrets do not trigger validators during tests
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from core.generation_client import GenerationClient  # noqa: E402
from core.llm_interface import GenerationOptions, GenerationResult  # noqa: E402
from core.rate_limiter import RateLimiter  # noqa: E402
from core.retry import no_sleep_policy  # noqa: E402
from core.usage import TokenUsage  # noqa: E402
from models.book_models import (  # noqa: E402
    Book,
    BookOutline,
    ChapterOutline,
    ChapterReview,
    CharacterSeed,
    ScenePlan,
)
from orchestration.token_accountant import TokenAccountant  # noqa: E402
from storage.book_repository import InMemoryBookRepository  # noqa: E402
from storage.checkpoint_store import CheckpointStore  # noqa: E402

Responder = Callable[[str, GenerationOptions], "str | BaseException"]

EMPTY_ISSUES = '{"issues": []}'


class ScriptedGenerator:
    """TextGenerator double answering from a responder function."""

    def __init__(self, responder: Responder | None = None) -> None:
        self.responder = responder or (lambda _prompt, _options: EMPTY_ISSUES)
        self.calls: list[tuple[str, GenerationOptions]] = []

    async def generate(
        self, prompt: str, options: GenerationOptions
    ) -> GenerationResult:
        self.calls.append((prompt, options))
        answer = self.responder(prompt, options)
        if isinstance(answer, BaseException):
            raise answer
        return GenerationResult(
            text=answer,
            usage=TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30),
            model=options.model,
        )


def make_client(generator, accountant: TokenAccountant | None = None) -> GenerationClient:
    return GenerationClient(
        generator,
        RateLimiter(limits={}, default_limit=None),
        retry_policy=no_sleep_policy(max_attempts=2),
        accountant=accountant,
    )


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def client(generator: ScriptedGenerator) -> GenerationClient:
    return make_client(generator, TokenAccountant())


@pytest.fixture
def repository() -> InMemoryBookRepository:
    return InMemoryBookRepository()


@pytest.fixture
def checkpoint_store(tmp_path) -> CheckpointStore:
    return CheckpointStore(str(tmp_path / "checkpoints"))


@pytest.fixture
def book() -> Book:
    return Book(
        id="lighthouse",
        title="The Lighthouse Keeper",
        genre="literary",
        target_word_count=6000,
        chapter_count=3,
    )


def make_outline(chapter_count: int = 3) -> BookOutline:
    return BookOutline(
        chapters=[
            ChapterOutline(
                number=n,
                title=f"Night {n}",
                summary=f"Ana keeps the light on night {n}.",
                scenes=[
                    ScenePlan(purpose="Ana explores the tower", characters=["Ana"]),
                    ScenePlan(purpose="Ana reflects on the storm", characters=["Ana"]),
                ],
                research_focus=["lens"],
            )
            for n in range(1, chapter_count + 1)
        ],
        characters=[CharacterSeed(name="Ana", initial_location="Lighthouse")],
        research_facts=["A Fresnel lens focuses the lamp", "Tides turn twice a day"],
    )


class FakePlanner:
    def __init__(self) -> None:
        self.premise_calls = 0
        self.outline_calls = 0

    async def generate_premise(self, book: Book) -> str:
        self.premise_calls += 1
        return "A keeper guards a failing light."

    async def generate_outline(self, book: Book, premise: str) -> BookOutline:
        self.outline_calls += 1
        return make_outline(book.chapter_count)


class FakeWriter:
    """Writes deterministic prose; can be told to fail for given units."""

    def __init__(self, fail: dict[tuple[int, int], BaseException] | None = None) -> None:
        self.fail = fail or {}
        self.calls: list[tuple[int, int]] = []
        self.scenes: list = []

    async def write_unit(self, scene) -> GenerationResult:
        key = (scene.chapter_number, scene.unit_number)
        self.calls.append(key)
        self.scenes.append(scene)
        if key in self.fail:
            raise self.fail[key]
        return GenerationResult(
            text=f"Ana tended the lamp in chapter {key[0]}, part {key[1]}.",
            usage=TokenUsage(prompt_tokens=5, completion_tokens=15, total_tokens=20),
        )


class FakeSupervisor:
    def __init__(self, scores: dict[tuple[int, int], float] | None = None, default: float = 70.0):
        self.scores = scores or {}
        self.default = default
        self.unit_reviews: list[tuple[int, int]] = []
        self.chapter_reviews: list[int] = []

    async def review_unit(self, content: str, scene) -> float:
        key = (scene.chapter_number, scene.unit_number)
        self.unit_reviews.append(key)
        return self.scores.get(key, self.default)

    async def review_chapter(self, chapter_number: int, title: str, text: str) -> ChapterReview:
        self.chapter_reviews.append(chapter_number)
        return ChapterReview(chapter_number=chapter_number, score=82.0)


class EchoProofreader:
    def __init__(self) -> None:
        self.calls = 0

    async def polish(self, content: str, scene) -> str:
        self.calls += 1
        return content
