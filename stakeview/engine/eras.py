from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from stakeview.chain.client import ChainQueryClient
from stakeview.chain.schemas import EraRewardPoints

MAX_HISTORY_ERAS = 84


def max_history_length(active_era: int) -> int:
    # Era 0 has no completed era to look back on.
    return max(0, min(MAX_HISTORY_ERAS, int(active_era)))


def historical_eras(active_era: int, length: int) -> List[int]:
    """Completed eras, newest first: last era, last era - 1, ..."""
    return [era for era in (active_era - i - 1 for i in range(max(0, length))) if era >= 0]


class EraLedger:
    """
    Per-session memo of era-wide data (total reward, reward points).

    Completed eras are immutable on chain, so their values are cached once
    fetched. Concurrent lookups for the same era share one request.
    """

    def __init__(self, client: ChainQueryClient, active_era: int) -> None:
        self.client = client
        self.active_era = active_era
        self._values: Dict[Tuple[str, int], Any] = {}
        self._inflight: Dict[Tuple[str, int], asyncio.Task] = {}

    async def reward(self, era: int) -> Optional[int]:
        return await self._lookup("reward", era, self.client.get_era_total_reward)

    async def points(self, era: int) -> Optional[EraRewardPoints]:
        return await self._lookup("points", era, self.client.get_era_reward_points)

    async def _lookup(self, kind: str, era: int, fetch: Callable[[int], Awaitable[Any]]) -> Any:
        key = (kind, era)
        if key in self._values:
            return self._values[key]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(fetch(era))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, key=key: self._inflight.pop(key, None))

        value = await asyncio.shield(task)
        if value is not None and era < self.active_era:
            self._values[key] = value
        return value
