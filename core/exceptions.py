"""Error taxonomy for book generation.

Four families matter to the orchestrator:

* transient external-call failures, retried with backoff and then routed to
  the failed-unit queue;
* malformed-output failures, retried with a stricter prompt and then either
  degraded or escalated depending on the continuity category;
* quality failures, which are routing decisions and never raised;
* fatal failures, which abort the run and leave the book revisable.
"""

from __future__ import annotations


class FolioError(Exception):
    """Base class for all Folio errors."""


class TransientGenerationError(FolioError):
    """An external call failed in a way that may succeed if repeated."""


class GenerationTimeoutError(TransientGenerationError):
    """The generation collaborator did not answer in time."""


class GenerationRateLimitError(TransientGenerationError):
    """The generation collaborator refused the call due to rate limiting."""


class GenerationServiceError(FolioError):
    """The generation collaborator rejected the request outright."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedOutputError(FolioError):
    """Structured output could not be decoded after every fallback."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class CriticalExtractionError(MalformedOutputError):
    """Malformed output in a category configured as safety-critical."""

    def __init__(self, category: str, message: str, raw_text: str = "") -> None:
        super().__init__(f"{category}: {message}", raw_text)
        self.category = category


class FatalGenerationError(FolioError):
    """Generation cannot continue without operator intervention."""


class StoreUnavailableError(FatalGenerationError):
    """The persistent store could not be reached or refused a write."""


class BookNotFoundError(FatalGenerationError):
    """The store has no book with the requested id."""


class CheckpointCorruptError(FatalGenerationError):
    """A checkpoint exists but cannot be decoded."""

    def __init__(self, book_id: str, message: str) -> None:
        super().__init__(f"Checkpoint for book '{book_id}' is corrupt: {message}")
        self.book_id = book_id


class GenerationAlreadyRunningError(FolioError):
    """A pipeline for this book is already active in this process."""


class RateLimiterClosedError(FolioError):
    """A waiting request was rejected because the queue was cleared."""
