"""Relay-chain collaborator backed by ``substrate-interface``."""

from __future__ import annotations

import asyncio
import threading
from typing import Any, List, Optional, Sequence

import bittensor as bt
from substrateinterface import SubstrateInterface

from stakeview.chain.client import ChainQueryClient, with_timeout
from stakeview.chain.schemas import ActiveEra, EraRewardPoints, StakeOverview, ValidatorPrefs


class SubstrateChainClient(ChainQueryClient):
    """
    Thin async wrapper over a blocking ``SubstrateInterface`` connection.

    The websocket is not safe for concurrent use, so storage queries run in a
    worker thread one at a time. Each call is bounded by ``timeout_s``.
    """

    def __init__(self, url: str, *, timeout_s: float = 15.0) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self._substrate: Optional[SubstrateInterface] = None
        self._lock = threading.Lock()

    def _connection(self) -> SubstrateInterface:
        if self._substrate is None:
            bt.logging.info(f"Connecting to {self.url}")
            self._substrate = SubstrateInterface(url=self.url)
        return self._substrate

    def _query_blocking(self, module: str, storage: str, params: Sequence[Any]) -> Any:
        with self._lock:
            try:
                result = self._connection().query(module, storage, list(params))
            except (ConnectionError, BrokenPipeError):
                # Drop the socket so the next call reconnects.
                self._reset()
                raise
        return None if result is None else result.value

    def _reset(self) -> None:
        if self._substrate is not None:
            try:
                self._substrate.close()
            except Exception as e:
                bt.logging.debug(f"Ignoring error while closing substrate connection: {e}")
        self._substrate = None

    async def _query(self, module: str, storage: str, *params: Any) -> Any:
        return await with_timeout(
            asyncio.to_thread(self._query_blocking, module, storage, params),
            self.timeout_s,
        )

    async def get_active_era(self) -> Optional[ActiveEra]:
        value = await self._query("Staking", "ActiveEra")
        if not value:
            return None
        return ActiveEra(index=int(value["index"]), start=value.get("start"))

    async def get_era_total_reward(self, era: int) -> Optional[int]:
        value = await self._query("Staking", "ErasValidatorReward", era)
        return None if value is None else int(value)

    async def get_era_reward_points(self, era: int) -> Optional[EraRewardPoints]:
        value = await self._query("Staking", "ErasRewardPoints", era)
        if not value:
            return None
        individual = value.get("individual") or []
        if isinstance(individual, dict):
            individual = list(individual.items())
        return EraRewardPoints(total=int(value.get("total") or 0), individual=individual)

    async def get_validator_set(self) -> List[str]:
        value = await self._query("Session", "Validators")
        return [str(addr) for addr in (value or [])]

    async def get_validator_preferences(self, address: str) -> Optional[ValidatorPrefs]:
        value = await self._query("Staking", "Validators", address)
        return _prefs(value)

    async def get_era_validator_preferences(self, era: int, address: str) -> Optional[ValidatorPrefs]:
        value = await self._query("Staking", "ErasValidatorPrefs", era, address)
        return _prefs(value)

    async def get_era_stake_overview(self, era: int, address: str) -> Optional[StakeOverview]:
        value = await self._query("Staking", "ErasStakersOverview", era, address)
        if not value:
            return None
        return StakeOverview(
            total=int(value.get("total") or 0),
            own=int(value.get("own") or 0),
            nominator_count=int(value.get("nominator_count") or 0),
            page_count=int(value.get("page_count") or 0),
        )

    async def close(self) -> None:
        await asyncio.to_thread(self._close_blocking)

    def _close_blocking(self) -> None:
        with self._lock:
            self._reset()


def _prefs(value: Any) -> Optional[ValidatorPrefs]:
    if not value:
        return None
    return ValidatorPrefs(commission=int(value.get("commission") or 0), blocked=bool(value.get("blocked")))
