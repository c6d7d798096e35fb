"""Tests for the batch driver."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from docsorter.services.batch_driver import BatchDriver


class TestBatchDriver:
    def test_partition(self):
        assert BatchDriver(group_size=3).partition(list(range(7))) == [[0, 1, 2], [3, 4, 5], [6]]

    def test_group_size_floor(self):
        assert BatchDriver(group_size=0).group_size == 1

    @pytest.mark.asyncio
    async def test_results_follow_input_order(self):
        async def worker(n):
            # Later items finish first
            await asyncio.sleep(0.01 * (5 - n))
            return n * 10

        results = await BatchDriver(group_size=5, delay_ms=0).run(list(range(5)), worker)

        assert [r.index for r in results] == [0, 1, 2, 3, 4]
        assert [r.value for r in results] == [0, 10, 20, 30, 40]

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self):
        async def worker(n):
            if n == 1:
                raise ValueError("bad document")
            return n

        results = await BatchDriver(group_size=2, delay_ms=0).run([0, 1, 2], worker)

        assert [r.ok for r in results] == [True, False, True]
        assert isinstance(results[1].error, ValueError)
        assert results[2].value == 2

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded_by_group_size(self):
        running = 0
        peak = 0

        async def worker(n):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return n

        await BatchDriver(group_size=3, delay_ms=0).run(list(range(10)), worker)

        assert peak == 3

    @pytest.mark.asyncio
    async def test_delay_between_groups(self):
        worker = AsyncMock(side_effect=lambda n: n)

        with patch("docsorter.services.batch_driver.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await BatchDriver(group_size=2, delay_ms=100).run([1, 2, 3, 4, 5], worker)

        assert mock_sleep.await_count == 2
        assert mock_sleep.await_args.args[0] == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_delay_override(self):
        worker = AsyncMock(side_effect=lambda n: n)

        with patch("docsorter.services.batch_driver.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await BatchDriver(group_size=1, delay_ms=100).run([1, 2, 3], worker, delay_ms=0)

        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await BatchDriver().run([], AsyncMock()) == []
