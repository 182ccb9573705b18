# orchestration/cli_runner.py
"""Command-line runner for the book orchestrator."""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass

import structlog
from rich.console import Console
from rich.table import Table

from config import settings
from core.exceptions import BookNotFoundError, FolioError
from core.generation_client import GenerationClient
from core.llm_interface import LLMService
from core.rate_limiter import RateLimiter
from models.book_models import Book
from orchestration.book_orchestrator import BookOrchestrator, GenerationReport
from orchestration.progress import ProgressReporter
from orchestration.token_accountant import TokenAccountant
from storage.book_repository import JsonFileBookRepository
from storage.checkpoint_store import CheckpointStore
from ui.rich_display import RichDisplayManager
from utils.logging import setup_logging_folio

logger = structlog.get_logger(__name__)


@dataclass
class NewBookRequest:
    title: str
    target_word_count: int
    chapter_count: int
    genre: str = ""
    description: str = ""


def make_book_id(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:40] or "book"
    return f"{slug}-{uuid.uuid4().hex[:8]}"


def _print_report(console: Console, report: GenerationReport) -> None:
    table = Table(title=f"Folio run: {report.book_id}", show_header=False)
    table.add_row("Status", report.status.value)
    table.add_row("Chapters complete", str(len(report.completed_chapters)))
    table.add_row("Units accepted", str(report.accepted_units))
    table.add_row("Units polished", str(report.polished_units))
    table.add_row(
        "Needs manual revision",
        ", ".join(f"{c}.{u}" for c, u in report.permanently_failed_units) or "none",
    )
    table.add_row(
        "Supervision average",
        f"{report.supervision_average:.1f}"
        if report.supervision_average is not None
        else "n/a",
    )
    table.add_row("Tokens generated", f"{report.tokens.get('completion_tokens', 0):,}")
    table.add_row("Estimated cost", f"${report.estimated_cost:.4f}")
    table.add_row("Resumed", "yes" if report.resumed else "no")
    console.print(table)


async def _list_checkpoints(console: Console, store: CheckpointStore) -> None:
    book_ids = store.list_checkpoints()
    if not book_ids:
        console.print("No checkpoints found.")
        return
    table = Table(title="Checkpoints")
    for column in ("Book", "Chapters", "Units", "Failed", "Permanent", "Saved"):
        table.add_column(column)
    for book_id in book_ids:
        try:
            summary = await store.summary(book_id)
        except FolioError as exc:
            table.add_row(book_id, "-", "-", "-", "-", f"unreadable: {exc}")
            continue
        if summary is None:
            continue
        table.add_row(
            book_id,
            str(summary.completed_chapters),
            str(summary.completed_units),
            str(summary.failed_units),
            str(summary.permanently_failed_units),
            summary.last_saved.isoformat(timespec="seconds"),
        )
    console.print(table)


async def _generate(
    book_id: str | None,
    new_book: NewBookRequest | None,
    resume_only: bool,
    console: Console,
) -> GenerationReport | None:
    repository = JsonFileBookRepository()
    store = CheckpointStore()
    if new_book is not None:
        book = Book(
            id=make_book_id(new_book.title),
            title=new_book.title,
            genre=new_book.genre,
            description=new_book.description,
            target_word_count=new_book.target_word_count,
            chapter_count=new_book.chapter_count,
        )
        await repository.save_book(book)
        book_id = book.id
        logger.info("Book created", book_id=book_id, title=book.title)
    if book_id is None:
        raise BookNotFoundError("No book id given and no new book requested")

    if resume_only and not await store.exists(book_id):
        logger.info("No checkpoint to resume", book_id=book_id)
        return None

    book = await repository.get_book(book_id)
    accountant = TokenAccountant()
    llm = LLMService()
    client = GenerationClient(llm, RateLimiter(), accountant=accountant)
    progress = ProgressReporter()
    display = RichDisplayManager(accountant)
    progress.subscribe(display.on_progress)
    orchestrator = BookOrchestrator(client, repository, store, progress=progress)

    display.start(book.title)
    try:
        report = await orchestrator.run(book_id)
    finally:
        await display.stop()
        await llm.aclose()
    _print_report(console, report)
    return report


def run(
    *,
    book_id: str | None = None,
    new_book: NewBookRequest | None = None,
    resume_only: bool = False,
    list_checkpoints: bool = False,
    cleanup_days: int | None = None,
) -> int:
    """Run the requested operation and return a process exit code."""
    setup_logging_folio()
    console = Console()
    store = CheckpointStore()
    try:
        if list_checkpoints:
            asyncio.run(_list_checkpoints(console, store))
            return 0
        if cleanup_days is not None:
            removed = asyncio.run(store.cleanup_old_checkpoints(cleanup_days))
            console.print(f"Removed {len(removed)} checkpoint(s) older than {cleanup_days} days.")
            return 0
        report = asyncio.run(_generate(book_id, new_book, resume_only, console))
    except KeyboardInterrupt:
        logger.info("Folio shutting down; the last checkpoint is kept for resume")
        return 130
    except FolioError as exc:
        logger.critical("Folio run failed", error=str(exc), error_type=type(exc).__name__)
        return 1
    if report is None:
        return 0
    return 0 if not report.permanently_failed_units else 2


def default_cleanup_days() -> int:
    return settings.CHECKPOINT_MAX_AGE_DAYS
