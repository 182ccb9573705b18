from __future__ import annotations

import asyncio
import time

from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from config import settings
from models.book_models import GenerationProgress
from orchestration.token_accountant import TokenAccountant


class RichDisplayManager:
    """Live console panel fed by progress records."""

    def __init__(
        self,
        accountant: TokenAccountant | None = None,
        enabled: bool | None = None,
    ) -> None:
        self.accountant = accountant
        self.enabled = settings.ENABLE_RICH_PROGRESS if enabled is None else enabled
        self.live: Live | None = None
        self.status_text_book: Text = Text("Book: N/A")
        self.status_text_chapter: Text = Text("Current Chapter: N/A")
        self.status_text_step: Text = Text("Current Step: Initializing...")
        self.status_text_percent: Text = Text("Progress: 0%")
        self.status_text_tokens: Text = Text("Tokens Generated (this run): 0")
        self.status_text_queue: Text = Text("Failed Units Queued: 0")
        self.status_text_elapsed: Text = Text("Elapsed Time: 00:00:00")
        self.run_start_time: float = 0.0
        self._stop_event: asyncio.Event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.last_progress: GenerationProgress | None = None

        if self.enabled:
            group = Group(
                self.status_text_book,
                self.status_text_chapter,
                self.status_text_step,
                self.status_text_percent,
                self.status_text_tokens,
                self.status_text_queue,
                self.status_text_elapsed,
            )
            self.live = Live(
                Panel(group, title="Folio Progress", border_style="blue", expand=True),
                refresh_per_second=4,
                transient=False,
                redirect_stdout=False,
                redirect_stderr=False,
            )

    def start(self, title: str) -> None:
        self.run_start_time = time.time()
        self.status_text_book.plain = f"Book: {title}"
        if self.live:
            self.live.start()
            self._stop_event.clear()
            self._task = asyncio.create_task(self._auto_refresh())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        if self.live and self.live.is_started:
            self.live.stop()

    async def _auto_refresh(self) -> None:
        while not self._stop_event.is_set():
            self.refresh()
            await asyncio.sleep(1)

    def on_progress(self, progress: GenerationProgress) -> None:
        """Progress listener; subscribe with ``ProgressReporter.subscribe``."""
        self.last_progress = progress
        if progress.total_chapters:
            self.status_text_chapter.plain = (
                f"Current Chapter: {progress.current_chapter}/{progress.total_chapters}"
            )
        step = progress.step.value
        if progress.message:
            step = f"{step} ({progress.message})"
        if progress.error:
            step = f"{step} ERROR: {progress.error}"
        self.status_text_step.plain = f"Current Step: {step}"
        self.status_text_percent.plain = f"Progress: {progress.percent_complete:.0f}%"
        self.status_text_queue.plain = f"Failed Units Queued: {progress.queued_units}"
        self.refresh()

    def refresh(self) -> None:
        if self.accountant is not None:
            self.status_text_tokens.plain = (
                f"Tokens Generated (this run): {self.accountant.total:,}"
            )
        elapsed_seconds = time.time() - self.run_start_time if self.run_start_time else 0
        self.status_text_elapsed.plain = (
            f"Elapsed Time: {time.strftime('%H:%M:%S', time.gmtime(elapsed_seconds))}"
        )
