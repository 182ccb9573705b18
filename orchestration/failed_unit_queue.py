# orchestration/failed_unit_queue.py
"""Backlog of units that failed the quality gate or errored."""

from __future__ import annotations

from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from config import settings
from core.exceptions import FatalGenerationError, FolioError
from core.retry import RetryPolicy
from models.book_models import GenerationUnit
from models.checkpoint_models import FailedUnit, FailureMetadata, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class RetryAttempt:
    """What a single retry of a failed unit produced."""

    succeeded: bool
    reason: str | None = None
    metadata: FailureMetadata | None = None


RetryFn = Callable[[FailedUnit], Awaitable[RetryAttempt]]


@dataclass
class RetrySummary:
    book_id: str
    passes: int = 0
    attempted: int = 0
    recovered: list[tuple[int, int]] = field(default_factory=list)
    still_failing: list[tuple[int, int]] = field(default_factory=list)
    permanently_failed: list[tuple[int, int]] = field(default_factory=list)


class FailedUnitQueue:
    """Failed units keyed by book, chapter and unit number.

    An entry is retried while ``retry_count < max_retries``. Once it
    reaches the ceiling it is flagged ``permanently_failed`` and stays
    listed for operators, but ``retry_all`` no longer touches it.
    """

    def __init__(
        self,
        entries: list[FailedUnit] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._entries: dict[tuple[str, int, int], FailedUnit] = {}
        for entry in entries or []:
            self._entries[(entry.book_id, *entry.key)] = entry.model_copy(deep=True)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.MAX_UNIT_RETRIES,
            base_delay=settings.FAILED_QUEUE_RETRY_BASE_DELAY,
            max_delay=settings.LLM_RETRY_MAX_DELAY_SECONDS,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def enqueue(
        self,
        unit: GenerationUnit,
        reason: str,
        metadata: FailureMetadata | None = None,
    ) -> FailedUnit:
        """Add ``unit``; an existing entry keeps its retry count."""
        key = (unit.book_id, unit.chapter_number, unit.unit_number)
        entry = self._entries.get(key)
        if entry is None:
            entry = FailedUnit(
                book_id=unit.book_id,
                chapter_number=unit.chapter_number,
                unit_number=unit.unit_number,
                reason=reason,
                metadata=metadata or FailureMetadata(),
            )
            self._entries[key] = entry
        else:
            entry.reason = reason
            entry.timestamp = utc_now()
            if metadata is not None:
                entry.metadata = metadata
        logger.warning(
            "Unit added to failed queue",
            book_id=unit.book_id,
            chapter=unit.chapter_number,
            unit=unit.unit_number,
            reason=reason,
            retry_count=entry.retry_count,
        )
        return entry

    def get(self, book_id: str, chapter_number: int, unit_number: int) -> FailedUnit | None:
        return self._entries.get((book_id, chapter_number, unit_number))

    def contains(self, book_id: str, chapter_number: int, unit_number: int) -> bool:
        return (book_id, chapter_number, unit_number) in self._entries

    def list_for_book(self, book_id: str) -> list[FailedUnit]:
        return sorted(
            (entry for (bid, _, _), entry in self._entries.items() if bid == book_id),
            key=lambda entry: entry.key,
        )

    def retryable_for_book(self, book_id: str, max_retries: int) -> list[FailedUnit]:
        return [
            entry
            for entry in self.list_for_book(book_id)
            if not entry.permanently_failed and entry.retry_count < max_retries
        ]

    def remove(self, book_id: str, chapter_number: int, unit_number: int) -> bool:
        return self._entries.pop((book_id, chapter_number, unit_number), None) is not None

    def clear_for_book(self, book_id: str) -> int:
        keys = [key for key in self._entries if key[0] == book_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def _record_failure(
        self, entry: FailedUnit, attempt: RetryAttempt, max_retries: int
    ) -> None:
        entry.retry_count += 1
        entry.timestamp = utc_now()
        if attempt.reason:
            entry.reason = attempt.reason
        if attempt.metadata is not None:
            entry.metadata = attempt.metadata
        if entry.retry_count >= max_retries:
            entry.permanently_failed = True
            logger.error(
                "Unit permanently failed, needs manual revision",
                book_id=entry.book_id,
                chapter=entry.chapter_number,
                unit=entry.unit_number,
                retries=entry.retry_count,
                reason=entry.reason,
            )

    async def retry_all(
        self, book_id: str, max_retries: int, retry_fn: RetryFn
    ) -> RetrySummary:
        """Retry every eligible entry in passes until none remain eligible."""
        summary = RetrySummary(book_id=book_id)
        while True:
            eligible = self.retryable_for_book(book_id, max_retries)
            if not eligible:
                break
            if summary.passes:
                await self.retry_policy.backoff(summary.passes - 1)
            summary.passes += 1
            logger.info(
                "Retrying failed units",
                book_id=book_id,
                pass_number=summary.passes,
                eligible=len(eligible),
            )
            for entry in eligible:
                summary.attempted += 1
                try:
                    attempt = await retry_fn(entry)
                except FatalGenerationError:
                    raise
                except FolioError as exc:
                    attempt = RetryAttempt(
                        succeeded=False,
                        reason=f"Retry error: {exc}",
                        metadata=FailureMetadata(
                            error_message=str(exc), error_type=type(exc).__name__
                        ),
                    )
                if attempt.succeeded:
                    self.remove(book_id, *entry.key)
                    summary.recovered.append(entry.key)
                    logger.info(
                        "Failed unit recovered",
                        book_id=book_id,
                        chapter=entry.chapter_number,
                        unit=entry.unit_number,
                        retries=entry.retry_count + 1,
                    )
                else:
                    self._record_failure(entry, attempt, max_retries)

        for entry in self.list_for_book(book_id):
            if entry.retry_count >= max_retries and not entry.permanently_failed:
                entry.permanently_failed = True
            if entry.permanently_failed:
                summary.permanently_failed.append(entry.key)
            else:
                summary.still_failing.append(entry.key)
        return summary

    def summary(self, book_id: str) -> dict[str, object]:
        entries = self.list_for_book(book_id)
        by_chapter = Counter(entry.chapter_number for entry in entries)
        return {
            "total": len(entries),
            "permanently_failed": sum(1 for e in entries if e.permanently_failed),
            "by_chapter": dict(sorted(by_chapter.items())),
            "average_retries": (
                round(sum(e.retry_count for e in entries) / len(entries), 2)
                if entries
                else 0.0
            ),
        }

    def restore(self, book_id: str, entries: list[FailedUnit]) -> None:
        """Replace this book's entries with ``entries`` from a checkpoint."""
        self.clear_for_book(book_id)
        for entry in entries:
            if entry.book_id == book_id:
                self._entries[(book_id, *entry.key)] = entry.model_copy(deep=True)

    def snapshot(self, book_id: str) -> list[FailedUnit]:
        return [entry.model_copy(deep=True) for entry in self.list_for_book(book_id)]
