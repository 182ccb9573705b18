# storage/book_repository.py
"""Persistent store boundary for books, chapters, units and narrative state.

The orchestration core only talks to :class:`BookRepository`. Two
implementations are provided: an in-memory one and a JSON document per book
written under ``BOOKS_DIR``, with each chapter's accepted text also exported
as a plain text file.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field, ValidationError

from config import BOOKS_DIR
from core.exceptions import BookNotFoundError, StoreUnavailableError
from models.book_models import (
    Book,
    BookOutline,
    BookStatus,
    ChapterRecord,
    ChapterStatus,
    GenerationUnit,
    SupervisionReport,
    UnitPlan,
    UnitStatus,
)
from models.checkpoint_models import FailedUnit
from models.narrative_models import NarrativeState

logger = structlog.get_logger(__name__)


class BookRepository(Protocol):
    async def get_book(self, book_id: str) -> Book: ...

    async def save_book(self, book: Book) -> None: ...

    async def update_book_status(self, book_id: str, status: BookStatus) -> None: ...

    async def save_premise(self, book_id: str, premise: str) -> None: ...

    async def get_outline(self, book_id: str) -> BookOutline | None: ...

    async def save_outline(self, book_id: str, outline: BookOutline) -> None: ...

    async def save_chapters(self, book_id: str, chapters: list[ChapterRecord]) -> None: ...

    async def list_chapters(self, book_id: str) -> list[ChapterRecord]: ...

    async def update_chapter_status(
        self, book_id: str, chapter_number: int, status: ChapterStatus
    ) -> None: ...

    async def ensure_units(
        self, book_id: str, chapter_number: int, plans: list[UnitPlan]
    ) -> list[GenerationUnit]: ...

    async def get_unit(
        self, book_id: str, chapter_number: int, unit_number: int
    ) -> GenerationUnit | None: ...

    async def list_units(
        self, book_id: str, chapter_number: int | None = None
    ) -> list[GenerationUnit]: ...

    async def save_unit(self, unit: GenerationUnit) -> None: ...

    async def save_narrative_state(self, book_id: str, state: NarrativeState) -> None: ...

    async def save_failed_units(self, book_id: str, failed: list[FailedUnit]) -> None: ...

    async def save_supervision_report(self, report: SupervisionReport) -> None: ...


class BookDocument(BaseModel):
    """Everything stored for one book."""

    book: Book
    outline: BookOutline | None = None
    chapters: dict[int, ChapterRecord] = Field(default_factory=dict)
    units: dict[str, GenerationUnit] = Field(default_factory=dict)
    narrative_state: NarrativeState | None = None
    failed_units: list[FailedUnit] = Field(default_factory=list)
    supervision_report: SupervisionReport | None = None


def _unit_key(chapter_number: int, unit_number: int) -> str:
    return f"{chapter_number}:{unit_number}"


class InMemoryBookRepository:
    """Dictionary-backed repository; subclasses may persist after changes."""

    def __init__(self) -> None:
        self._documents: dict[str, BookDocument] = {}

    async def _document(self, book_id: str) -> BookDocument:
        document = self._documents.get(book_id)
        if document is None:
            raise BookNotFoundError(f"Book '{book_id}' not found")
        return document

    async def _changed(self, book_id: str) -> None:
        """Hook called after each mutation."""

    async def get_book(self, book_id: str) -> Book:
        return (await self._document(book_id)).book.model_copy()

    async def save_book(self, book: Book) -> None:
        try:
            document = await self._document(book.id)
        except BookNotFoundError:
            self._documents[book.id] = BookDocument(book=book.model_copy())
        else:
            document.book = book.model_copy()
        await self._changed(book.id)

    async def update_book_status(self, book_id: str, status: BookStatus) -> None:
        document = await self._document(book_id)
        document.book.status = status
        await self._changed(book_id)

    async def save_premise(self, book_id: str, premise: str) -> None:
        document = await self._document(book_id)
        document.book.premise = premise
        await self._changed(book_id)

    async def get_outline(self, book_id: str) -> BookOutline | None:
        outline = (await self._document(book_id)).outline
        return outline.model_copy(deep=True) if outline else None

    async def save_outline(self, book_id: str, outline: BookOutline) -> None:
        document = await self._document(book_id)
        document.outline = outline.model_copy(deep=True)
        await self._changed(book_id)

    async def save_chapters(self, book_id: str, chapters: list[ChapterRecord]) -> None:
        document = await self._document(book_id)
        for chapter in chapters:
            existing = document.chapters.get(chapter.number)
            if existing is not None and existing.status is ChapterStatus.COMPLETE:
                continue
            document.chapters[chapter.number] = chapter.model_copy()
        await self._changed(book_id)

    async def list_chapters(self, book_id: str) -> list[ChapterRecord]:
        document = await self._document(book_id)
        return [document.chapters[n].model_copy() for n in sorted(document.chapters)]

    async def update_chapter_status(
        self, book_id: str, chapter_number: int, status: ChapterStatus
    ) -> None:
        document = await self._document(book_id)
        chapter = document.chapters.get(chapter_number)
        if chapter is None:
            chapter = ChapterRecord(book_id=book_id, number=chapter_number)
            document.chapters[chapter_number] = chapter
        chapter.status = status
        await self._changed(book_id)

    async def ensure_units(
        self, book_id: str, chapter_number: int, plans: list[UnitPlan]
    ) -> list[GenerationUnit]:
        """Create planned units, retarget unstarted ones, drop the excess."""
        document = await self._document(book_id)
        wanted = {plan.unit_number for plan in plans}
        for key in [
            k
            for k, unit in document.units.items()
            if unit.chapter_number == chapter_number and unit.unit_number not in wanted
        ]:
            logger.info("Removing unit after re-planning", book_id=book_id, unit=key)
            del document.units[key]

        units: list[GenerationUnit] = []
        for plan in plans:
            key = _unit_key(chapter_number, plan.unit_number)
            unit = document.units.get(key)
            if unit is None:
                unit = GenerationUnit(
                    book_id=book_id,
                    chapter_number=chapter_number,
                    unit_number=plan.unit_number,
                    target_words=plan.target_words,
                )
                document.units[key] = unit
            elif unit.status is UnitStatus.PLANNED:
                unit.target_words = plan.target_words
            units.append(unit.model_copy())
        await self._changed(book_id)
        return units

    async def get_unit(
        self, book_id: str, chapter_number: int, unit_number: int
    ) -> GenerationUnit | None:
        document = await self._document(book_id)
        unit = document.units.get(_unit_key(chapter_number, unit_number))
        return unit.model_copy() if unit else None

    async def list_units(
        self, book_id: str, chapter_number: int | None = None
    ) -> list[GenerationUnit]:
        document = await self._document(book_id)
        units = [
            unit.model_copy()
            for unit in document.units.values()
            if chapter_number is None or unit.chapter_number == chapter_number
        ]
        return sorted(units, key=lambda u: u.key)

    async def save_unit(self, unit: GenerationUnit) -> None:
        document = await self._document(unit.book_id)
        document.units[_unit_key(unit.chapter_number, unit.unit_number)] = (
            unit.model_copy()
        )
        await self._changed(unit.book_id)

    async def save_narrative_state(self, book_id: str, state: NarrativeState) -> None:
        document = await self._document(book_id)
        document.narrative_state = state.model_copy(deep=True)
        await self._changed(book_id)

    async def save_failed_units(self, book_id: str, failed: list[FailedUnit]) -> None:
        document = await self._document(book_id)
        document.failed_units = [unit.model_copy() for unit in failed]
        await self._changed(book_id)

    async def save_supervision_report(self, report: SupervisionReport) -> None:
        document = await self._document(report.book_id)
        document.supervision_report = report.model_copy(deep=True)
        await self._changed(report.book_id)


class JsonFileBookRepository(InMemoryBookRepository):
    """Persist each book as ``{books_dir}/{book_id}/book.json``."""

    def __init__(self, books_dir: str = BOOKS_DIR) -> None:
        super().__init__()
        self.books_dir = books_dir
        os.makedirs(self.books_dir, exist_ok=True)

    def _book_dir(self, book_id: str) -> str:
        return os.path.join(self.books_dir, book_id)

    async def _document(self, book_id: str) -> BookDocument:
        if book_id not in self._documents:
            loop = asyncio.get_running_loop()
            raw = await loop.run_in_executor(None, self._read_sync, book_id)
            if raw is not None:
                try:
                    self._documents[book_id] = BookDocument.model_validate(raw)
                except ValidationError as exc:
                    raise StoreUnavailableError(
                        f"Stored document for '{book_id}' is unreadable: {exc}"
                    ) from exc
        return await super()._document(book_id)

    def _read_sync(self, book_id: str) -> dict[str, Any] | None:
        path = os.path.join(self._book_dir(book_id), "book.json")
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreUnavailableError(f"Could not read '{path}': {exc}") from exc

    async def _changed(self, book_id: str) -> None:
        document = self._documents[book_id]
        payload = document.model_dump_json(indent=2)
        chapter_texts = {
            number: self._chapter_text(document, number)
            for number, chapter in document.chapters.items()
            if chapter.status is ChapterStatus.COMPLETE
        }
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, self._write_sync, book_id, payload, chapter_texts
        )

    @staticmethod
    def _chapter_text(document: BookDocument, number: int) -> str:
        units = sorted(
            (
                u
                for u in document.units.values()
                if u.chapter_number == number and u.content
            ),
            key=lambda u: u.unit_number,
        )
        return "\n\n".join(u.content or "" for u in units)

    def _write_sync(
        self, book_id: str, payload: str, chapter_texts: dict[int, str]
    ) -> None:
        book_dir = self._book_dir(book_id)
        try:
            os.makedirs(book_dir, exist_ok=True)
            temp_path = os.path.join(book_dir, "book.json.tmp")
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(temp_path, os.path.join(book_dir, "book.json"))
            for number, text in chapter_texts.items():
                chapter_path = os.path.join(book_dir, f"chapter_{number:04d}.txt")
                with open(chapter_path, "w", encoding="utf-8") as f:
                    f.write(text)
        except OSError as exc:
            raise StoreUnavailableError(
                f"Could not write book '{book_id}': {exc}"
            ) from exc
