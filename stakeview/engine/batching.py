"""
Bounded-concurrency batch runner.

Items are processed in consecutive groups of at most ``batch_size``. All fetches
of a group run concurrently and the whole group settles before the next one
starts, so at most ``batch_size`` remote calls are outstanding. Control is
yielded to the event loop between groups.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

import bittensor as bt

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    size = max(1, int(size))
    return [items[i : i + size] for i in range(0, len(items), size)]


async def run_in_batches(
    items: Sequence[T],
    batch_size: int,
    fetch: Callable[[T], Awaitable[R]],
    *,
    on_error: Optional[Callable[[T, BaseException], R]] = None,
    on_batch: Optional[Callable[[List[tuple]], None]] = None,
    label: str = "batch",
) -> List[R]:
    """
    Run ``fetch`` over ``items`` in bounded groups and return results in input order.

    A failing item never aborts its siblings: its result is ``on_error(item, exc)``
    (or ``None`` without a handler). ``on_batch`` receives ``(item, result)``
    pairs as each group settles, which is where callers merge into the cache.
    """
    results: List[R] = []
    groups = chunked(list(items), batch_size)
    for index, group in enumerate(groups):
        settled = await asyncio.gather(*(fetch(item) for item in group), return_exceptions=True)

        group_results: List[R] = []
        for item, outcome in zip(group, settled):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                bt.logging.debug(f"[{label}] item {item!r} failed: {outcome}")
                outcome = on_error(item, outcome) if on_error is not None else None
            group_results.append(outcome)

        if on_batch is not None:
            on_batch(list(zip(group, group_results)))
        results.extend(group_results)

        if index + 1 < len(groups):
            # Let rendering and other jobs run between groups.
            await asyncio.sleep(0)
    return results
