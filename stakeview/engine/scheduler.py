"""Low-priority background job queue for the aggregation engine."""

from __future__ import annotations

import asyncio
import traceback
from typing import Awaitable, Callable, Dict, Optional

import bittensor as bt

JobFactory = Callable[[], Awaitable[None]]


class BackgroundScheduler:
    """
    Runs background jobs after bootstrap-critical work.

    Jobs submitted before :meth:`release` wait on a gate; once released they run
    after their (hint-only) delay. Job names are single-flight: submitting a name
    that is already pending or running is a no-op.
    """

    def __init__(self, on_error: Optional[Callable[[str, BaseException], None]] = None) -> None:
        self._gate = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._on_error = on_error

    @property
    def released(self) -> bool:
        return self._gate.is_set()

    def release(self) -> None:
        self._gate.set()

    def hold(self) -> None:
        self._gate.clear()

    def is_pending(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def submit(self, name: str, factory: JobFactory, *, delay_s: float = 0.0) -> bool:
        if self.is_pending(name):
            bt.logging.debug(f"Background job {name!r} already scheduled; skipping.")
            return False
        self._tasks[name] = asyncio.get_running_loop().create_task(
            self._run(name, factory, delay_s), name=f"stakeview:{name}"
        )
        return True

    async def _run(self, name: str, factory: JobFactory, delay_s: float) -> None:
        await self._gate.wait()
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        bt.logging.debug(f"Background job {name!r} starting")
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            bt.logging.error(f"Background job {name!r} failed:\n{traceback.format_exc()}")
            if self._on_error is not None:
                self._on_error(name, e)

    async def drain(self) -> None:
        """Wait until no job is pending, including jobs submitted by other jobs."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
