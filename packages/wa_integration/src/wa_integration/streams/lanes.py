"""
Keyed concurrent processing of stream batches.

Entries that share a key run one after another in arrival order; entries with
different keys run concurrently, at most `limit` lanes at a time. The worker
keys inbound webhooks by account so a slow auto-response for one account never
holds up another account's events.
"""

import asyncio
from collections.abc import Awaitable, Callable, Hashable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_keyed(
    items: Sequence[T],
    key: Callable[[T], Hashable],
    handle: Callable[[T], Awaitable[R]],
    limit: int,
) -> list[R]:
    """
    Run `handle` over `items` with per-key ordering and bounded concurrency.

    `handle` is expected to deal with its own errors; the first exception it
    lets through is re-raised after the other lanes finish.

    Returns:
        Results in the order of `items`
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")

    lanes: dict[Hashable, list[tuple[int, T]]] = {}
    for index, item in enumerate(items):
        lanes.setdefault(key(item), []).append((index, item))

    results: list = [None] * len(items)
    semaphore = asyncio.Semaphore(limit)

    async def run_lane(lane: list[tuple[int, T]]) -> None:
        async with semaphore:
            for index, item in lane:
                results[index] = await handle(item)

    outcomes = await asyncio.gather(*(run_lane(lane) for lane in lanes.values()), return_exceptions=True)
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return results
