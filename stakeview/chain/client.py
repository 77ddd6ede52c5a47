"""
Chain query collaborator contract.

Every method may raise (network, timeout) or return ``None`` when the chain has
no value for the key. Only a failing :meth:`ChainQueryClient.get_active_era` is
fatal to a session; the engine treats every other failure as "unknown" and
applies defaults.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, List, Optional, TypeVar

from stakeview.chain.schemas import ActiveEra, EraRewardPoints, StakeOverview, ValidatorPrefs

R = TypeVar("R")


class ChainQueryClient(ABC):
    @abstractmethod
    async def get_active_era(self) -> Optional[ActiveEra]: ...

    @abstractmethod
    async def get_era_total_reward(self, era: int) -> Optional[int]: ...

    @abstractmethod
    async def get_era_reward_points(self, era: int) -> Optional[EraRewardPoints]: ...

    @abstractmethod
    async def get_validator_set(self) -> List[str]: ...

    @abstractmethod
    async def get_validator_preferences(self, address: str) -> Optional[ValidatorPrefs]: ...

    @abstractmethod
    async def get_era_validator_preferences(self, era: int, address: str) -> Optional[ValidatorPrefs]: ...

    @abstractmethod
    async def get_era_stake_overview(self, era: int, address: str) -> Optional[StakeOverview]: ...

    async def close(self) -> None:
        return None


async def with_timeout(awaitable: Awaitable[R], timeout_s: Optional[float]) -> R:
    """Bound a collaborator call so a hung request only stalls its own batch."""
    if timeout_s is None or timeout_s <= 0:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout_s)
