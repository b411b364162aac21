"""Unit tests for the per-job watchdog Deadline."""

from __future__ import annotations

import asyncio

import pytest

from knowledge_ingest.core.errors import IngestionError, IngestionTimeoutError
from knowledge_ingest.services.deadline import Deadline


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.unit
class TestDeadline:

    def test_remaining_counts_down_and_floors_at_zero(self):
        clock = FakeClock()
        deadline = Deadline(300, clock=clock)
        assert deadline.remaining() == 300
        clock.now += 120
        assert deadline.remaining() == 180
        clock.now += 500
        assert deadline.remaining() == 0.0
        assert deadline.expired

    def test_check_passes_before_expiry(self):
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)
        clock.now += 9.9
        deadline.check("chunking")

    def test_check_raises_with_stage_and_minutes(self):
        clock = FakeClock()
        deadline = Deadline(300, clock=clock)
        clock.now += 300
        with pytest.raises(IngestionTimeoutError) as exc_info:
            deadline.check("storing")
        message = exc_info.value.message
        assert message.startswith("Ingestion timed out after 5 minutes during storing")
        assert isinstance(exc_info.value, IngestionError)
        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.code == "INGESTION_TIMEOUT"

    async def test_run_returns_result(self):
        async def work():
            return 42

        assert await Deadline(5).run(work(), stage="embedding") == 42

    async def test_run_cancels_slow_awaitable(self):
        async def slow():
            await asyncio.sleep(5)

        with pytest.raises(IngestionTimeoutError, match="during embedding"):
            await Deadline(0.05).run(slow(), stage="embedding")

    async def test_run_refuses_to_start_after_expiry(self):
        clock = FakeClock()
        deadline = Deadline(1, clock=clock)
        clock.now += 2
        started = []

        async def work():
            started.append(True)

        with pytest.raises(IngestionTimeoutError):
            await deadline.run(work(), stage="extraction")
        assert started == []

    async def test_run_propagates_inner_errors(self):
        async def broken():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await Deadline(5).run(broken(), stage="embedding")
