from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from taskmaster.jsonutil import write_text_atomic
from taskmaster.schemas import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Last fully processed block height plus the state snapshot taken there.

    The block only moves forward. Writes are atomic; a write failure is logged
    and the in-memory checkpoint stays current, so the worst case after a crash
    is replaying a few more blocks.
    """

    def __init__(self, path: Path | None, *, now: Callable[[], datetime] | None = None) -> None:
        self._path = path
        self._now = now or (lambda: datetime.now(tz=UTC))
        self._current = Checkpoint()

    @property
    def current(self) -> Checkpoint:
        return self._current

    def load(self) -> Checkpoint:
        if self._path is None or not self._path.exists():
            return self._current
        try:
            self._current = Checkpoint.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("ignoring unreadable checkpoint %s: %s", self._path, e)
        return self._current

    def save(self, block: int, snapshot: dict[str, Any] | None = None) -> bool:
        """Advance to `block`. Returns False if that would move the checkpoint backwards."""
        if block < self._current.block:
            logger.warning("refusing to move checkpoint back from %d to %d", self._current.block, block)
            return False
        self._current = Checkpoint(block=block, snapshot=snapshot, saved_at=self._now())
        if self._path is not None:
            try:
                write_text_atomic(self._path, self._current.model_dump_json())
            except OSError as e:
                logger.error("failed to persist checkpoint at block %d: %s", block, e)
        return True
