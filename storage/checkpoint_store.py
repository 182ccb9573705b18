# storage/checkpoint_store.py
"""Durable, atomically overwritten checkpoints keyed by book id."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from datetime import timedelta
from urllib.parse import quote, unquote

import structlog
from pydantic import ValidationError

from config import CHECKPOINT_DIR
from core.exceptions import CheckpointCorruptError, StoreUnavailableError
from models.checkpoint_models import (
    CHECKPOINT_VERSION,
    Checkpoint,
    CheckpointSummary,
    utc_now,
)

logger = structlog.get_logger(__name__)

_SUFFIX = "-checkpoint.json"


class CheckpointStore:
    """Read and write checkpoint files under ``checkpoint_dir``.

    ``load`` distinguishes a missing checkpoint (``None``) from an unreadable
    one (:class:`CheckpointCorruptError`). Writes go to a temporary file in
    the same directory and are moved into place with ``os.replace``.
    """

    def __init__(self, checkpoint_dir: str = CHECKPOINT_DIR) -> None:
        self.checkpoint_dir = checkpoint_dir
        os.makedirs(self.checkpoint_dir, exist_ok=True)

    def path_for(self, book_id: str) -> str:
        # Percent-encoding keeps distinct ids in distinct files.
        return os.path.join(self.checkpoint_dir, f"{quote(book_id, safe='')}{_SUFFIX}")

    async def save(self, book_id: str, checkpoint: Checkpoint) -> None:
        if checkpoint.book_id != book_id:
            raise ValueError(
                f"Checkpoint belongs to '{checkpoint.book_id}', not '{book_id}'"
            )
        payload = checkpoint.model_dump_json(indent=2)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._save_sync, book_id, payload)
        logger.debug(
            "Checkpoint saved",
            book_id=book_id,
            completed_chapters=len(checkpoint.completed_chapters),
            failed_units=len(checkpoint.failed_units),
        )

    def _save_sync(self, book_id: str, payload: str) -> None:
        target = self.path_for(book_id)
        try:
            fd, temp_path = tempfile.mkstemp(
                prefix=".tmp-", suffix=_SUFFIX, dir=self.checkpoint_dir
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, target)
            except BaseException:
                if os.path.exists(temp_path):
                    os.remove(temp_path)
                raise
        except OSError as exc:
            raise StoreUnavailableError(
                f"Could not write checkpoint for '{book_id}': {exc}"
            ) from exc

    async def load(self, book_id: str) -> Checkpoint | None:
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, self._read_sync, book_id)
        if raw is None:
            return None
        return self._decode(book_id, raw)

    def _read_sync(self, book_id: str) -> str | None:
        path = self.path_for(book_id)
        try:
            with open(path, encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailableError(
                f"Could not read checkpoint for '{book_id}': {exc}"
            ) from exc

    def _decode(self, book_id: str, raw: str) -> Checkpoint:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CheckpointCorruptError(book_id, f"invalid JSON ({exc})") from exc
        if not isinstance(data, dict):
            raise CheckpointCorruptError(book_id, "top-level value is not an object")
        version = data.get("version")
        if version != CHECKPOINT_VERSION:
            raise CheckpointCorruptError(
                book_id, f"unsupported schema version {version!r}"
            )
        try:
            checkpoint = Checkpoint.model_validate(data)
        except ValidationError as exc:
            raise CheckpointCorruptError(book_id, str(exc).splitlines()[0]) from exc
        if checkpoint.book_id != book_id:
            raise CheckpointCorruptError(
                book_id, f"file holds checkpoint for '{checkpoint.book_id}'"
            )
        return checkpoint

    async def clear(self, book_id: str) -> bool:
        """Delete the checkpoint; returns False when there was none."""
        path = self.path_for(book_id)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, os.remove, path)
        except FileNotFoundError:
            return False
        logger.info("Checkpoint cleared", book_id=book_id)
        return True

    async def exists(self, book_id: str) -> bool:
        return os.path.exists(self.path_for(book_id))

    async def summary(self, book_id: str) -> CheckpointSummary | None:
        checkpoint = await self.load(book_id)
        if checkpoint is None:
            return None
        return CheckpointSummary(
            book_id=book_id,
            completed_chapters=len(checkpoint.completed_chapters),
            completed_units=sum(len(u) for u in checkpoint.completed_units.values()),
            failed_units=len(checkpoint.failed_units),
            permanently_failed_units=sum(
                1 for unit in checkpoint.failed_units if unit.permanently_failed
            ),
            last_saved=checkpoint.timestamp,
            version=checkpoint.version,
        )

    def list_checkpoints(self) -> list[str]:
        """Return the book ids that currently have a checkpoint."""
        try:
            names = os.listdir(self.checkpoint_dir)
        except FileNotFoundError:
            return []
        return sorted(
            unquote(name[: -len(_SUFFIX)])
            for name in names
            if name.endswith(_SUFFIX) and not name.startswith(".tmp-")
        )

    async def cleanup_old_checkpoints(self, max_age_days: int = 30) -> list[str]:
        """Remove checkpoints last saved more than ``max_age_days`` ago.

        Corrupt checkpoints are reported and left in place for inspection.
        """
        cutoff = utc_now() - timedelta(days=max_age_days)
        removed: list[str] = []
        for book_id in self.list_checkpoints():
            try:
                checkpoint = await self.load(book_id)
            except CheckpointCorruptError as exc:
                logger.warning("Skipping corrupt checkpoint", book_id=book_id, error=str(exc))
                continue
            if checkpoint is not None and checkpoint.timestamp < cutoff:
                await self.clear(book_id)
                removed.append(book_id)
        if removed:
            logger.info("Old checkpoints removed", count=len(removed))
        return removed
