"""
Per-job watchdog deadline.

A Deadline is created once per ingestion job and handed to every stage
that can block (extraction, each embedding call, each write batch).
Nothing runs in the background: stages ask how much time is left, and
awaitables are bounded with asyncio.wait_for.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from knowledge_ingest.core.errors import IngestionTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:

    def __init__(
        self,
        seconds: float,
        clock:   Callable[[], float] = time.monotonic,
    ) -> None:
        self._seconds  = seconds
        self._clock    = clock
        self._deadline = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._deadline

    def _timeout_error(self, stage: str) -> IngestionTimeoutError:
        minutes = self._seconds / 60
        return IngestionTimeoutError(
            f"Ingestion timed out after {minutes:g} minutes during {stage}. "
            "Try splitting the document into smaller files."
        )

    def check(self, stage: str) -> None:
        """Raise IngestionTimeoutError if the deadline has passed."""
        if self.expired:
            logger.warning("Deadline expired | stage=%s budget=%.0fs", stage, self._seconds)
            raise self._timeout_error(stage)

    async def run(self, awaitable: Awaitable[T], stage: str) -> T:
        """Await `awaitable`, cancelling it if the deadline passes first."""
        if self.expired and asyncio.iscoroutine(awaitable):
            awaitable.close()
        self.check(stage)
        try:
            return await asyncio.wait_for(awaitable, timeout=self.remaining())
        except IngestionTimeoutError:
            raise
        except asyncio.TimeoutError as exc:
            logger.warning("Deadline expired | stage=%s budget=%.0fs", stage, self._seconds)
            raise self._timeout_error(stage) from exc
