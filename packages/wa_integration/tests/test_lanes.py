"""
Tests for keyed concurrent batch processing.
"""

import asyncio

import pytest

from wa_integration.streams.lanes import run_keyed


def first(item):
    return item[0]


class TestRunKeyed:
    async def test_slow_account_does_not_block_other_accounts(self):
        other_done = asyncio.Event()

        async def handle(item):
            account, name = item
            if name == "slow":
                # Only finishes once the other account's entry has been handled
                await other_done.wait()
            else:
                other_done.set()
            return name

        items = [("acme_1", "slow"), ("acme_2", "fast")]

        results = await asyncio.wait_for(run_keyed(items, first, handle, limit=4), timeout=2)

        assert results == ["slow", "fast"]

    async def test_same_key_keeps_arrival_order(self):
        finished = []

        async def handle(item):
            account, n = item
            await asyncio.sleep(0.05 if n == 1 else 0)
            finished.append(n)
            return n

        await run_keyed([("acme_1", 1), ("acme_1", 2), ("acme_1", 3)], first, handle, limit=4)

        assert finished == [1, 2, 3]

    async def test_concurrency_is_bounded(self):
        running = 0
        peak = 0

        async def handle(item):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return item[1]

        items = [(f"acme_{i}", i) for i in range(6)]

        results = await run_keyed(items, first, handle, limit=2)

        assert results == list(range(6))
        assert peak == 2

    async def test_error_raised_after_other_lanes_finish(self):
        handled = []

        async def handle(item):
            account, name = item
            if name == "bad":
                raise RuntimeError("boom")
            await asyncio.sleep(0.01)
            handled.append(name)
            return name

        with pytest.raises(RuntimeError):
            await run_keyed([("acme_1", "bad"), ("acme_2", "ok")], first, handle, limit=2)
        assert handled == ["ok"]

    async def test_invalid_limit(self):
        async def handle(item):
            return item

        with pytest.raises(ValueError):
            await run_keyed([("acme_1", 1)], first, handle, limit=0)
