"""Tests for process startup wiring in main._start."""

from unittest.mock import AsyncMock

import pytest

from conftest import FIXED_NOW
from pricekeeper.exceptions import TransientUpstreamFailure
from pricekeeper.main import _start
from pricekeeper.scheduler import SchedulerPhase, SchedulerStatus


@pytest.fixture
def components() -> dict:
    client = AsyncMock()
    scheduler = AsyncMock()
    scheduler.initialize.return_value = SchedulerStatus(
        phase=SchedulerPhase.READY, last_run_at=FIXED_NOW, last_error=None
    )
    return {"client": client, "scheduler": scheduler}


class TestStart:
    @pytest.mark.asyncio
    async def test_connects_then_initializes(self, components):
        await _start(components)

        components["client"].connect.assert_awaited_once()
        components["scheduler"].initialize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreachable_exchange_still_initializes(self, components):
        components["client"].connect.side_effect = TransientUpstreamFailure("load_markets timed out")

        await _start(components)

        components["scheduler"].initialize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_initialization_does_not_raise(self, components):
        components["scheduler"].initialize.return_value = SchedulerStatus(
            phase=SchedulerPhase.ERROR, last_run_at=None, last_error="store unreachable"
        )

        await _start(components)

        components["scheduler"].initialize.assert_awaited_once()
