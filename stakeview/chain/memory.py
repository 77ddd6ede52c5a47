"""
In-memory chain used for local development (``STAKEVIEW_PROVIDER=memory``) and
tests.

Failures can be injected per method and key, e.g.
``client.fail("get_era_stake_overview", (99, "A"))``.
"""

from __future__ import annotations

import asyncio
import random
from collections import Counter
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from stakeview.chain.client import ChainQueryClient
from stakeview.chain.schemas import ActiveEra, EraRewardPoints, StakeOverview, ValidatorPrefs


class InMemoryChainClient(ChainQueryClient):
    def __init__(
        self,
        *,
        active_era: Optional[int],
        validators: Sequence[str],
        era_rewards: Optional[Mapping[int, int]] = None,
        era_points: Optional[Mapping[int, EraRewardPoints]] = None,
        prefs: Optional[Mapping[str, ValidatorPrefs]] = None,
        era_prefs: Optional[Mapping[Tuple[int, str], ValidatorPrefs]] = None,
        stakes: Optional[Mapping[Tuple[int, str], StakeOverview]] = None,
        latency_s: float = 0.0,
    ) -> None:
        self.active_era = active_era
        self.validators = list(validators)
        self.era_rewards: Dict[int, int] = dict(era_rewards or {})
        self.era_points: Dict[int, EraRewardPoints] = dict(era_points or {})
        self.prefs: Dict[str, ValidatorPrefs] = dict(prefs or {})
        self.era_prefs: Dict[Tuple[int, str], ValidatorPrefs] = dict(era_prefs or {})
        self.stakes: Dict[Tuple[int, str], StakeOverview] = dict(stakes or {})
        self.latency_s = latency_s
        self.calls: Counter = Counter()
        self.in_flight = 0
        self.max_in_flight = 0
        self._failures: Set[Tuple[str, object]] = set()

    def fail(self, method: str, key: object = None) -> None:
        """Make ``method`` raise for ``key`` (``None`` = every key)."""
        self._failures.add((method, key))

    async def _call(self, method: str, key: object = None) -> None:
        self.calls[method] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency_s)
            if (method, None) in self._failures or (method, key) in self._failures:
                raise ConnectionError(f"injected failure: {method}({key!r})")
        finally:
            self.in_flight -= 1

    async def get_active_era(self) -> Optional[ActiveEra]:
        await self._call("get_active_era")
        if self.active_era is None:
            return None
        return ActiveEra(index=self.active_era)

    async def get_era_total_reward(self, era: int) -> Optional[int]:
        await self._call("get_era_total_reward", era)
        return self.era_rewards.get(era)

    async def get_era_reward_points(self, era: int) -> Optional[EraRewardPoints]:
        await self._call("get_era_reward_points", era)
        return self.era_points.get(era)

    async def get_validator_set(self) -> List[str]:
        await self._call("get_validator_set")
        return list(self.validators)

    async def get_validator_preferences(self, address: str) -> Optional[ValidatorPrefs]:
        await self._call("get_validator_preferences", address)
        return self.prefs.get(address)

    async def get_era_validator_preferences(self, era: int, address: str) -> Optional[ValidatorPrefs]:
        await self._call("get_era_validator_preferences", (era, address))
        return self.era_prefs.get((era, address))

    async def get_era_stake_overview(self, era: int, address: str) -> Optional[StakeOverview]:
        await self._call("get_era_stake_overview", (era, address))
        return self.stakes.get((era, address))


def build_demo_chain(
    *,
    n_validators: int = 120,
    active_era: int = 1500,
    history: int = 84,
    seed: int = 7,
    latency_s: float = 0.01,
) -> InMemoryChainClient:
    """Synthetic relay chain with plausible points, rewards, commissions and stakes."""
    rng = random.Random(seed)
    validators = [f"1demo{i:04d}" for i in range(n_validators)]

    prefs: Dict[str, ValidatorPrefs] = {}
    for addr in validators:
        roll = rng.random()
        if roll < 0.08:
            commission = 1_000_000_000
        elif roll < 0.2:
            commission = 0
        else:
            commission = rng.randint(10_000_000, 150_000_000)
        prefs[addr] = ValidatorPrefs(commission=commission, blocked=rng.random() < 0.05)

    era_rewards: Dict[int, int] = {}
    era_points: Dict[int, EraRewardPoints] = {}
    era_prefs: Dict[Tuple[int, str], ValidatorPrefs] = {}
    stakes: Dict[Tuple[int, str], StakeOverview] = {}
    first_era = max(0, active_era - history)
    for era in range(first_era, active_era + 1):
        individual = []
        for addr in validators:
            if rng.random() < 0.9:
                individual.append((addr, rng.randint(20, 120) * 20))
        era_points[era] = EraRewardPoints(total=sum(p for _, p in individual), individual=individual)
        if era < active_era:
            era_rewards[era] = rng.randint(2_700_000, 3_000_000) * 10**10
        for addr in validators:
            era_prefs[(era, addr)] = prefs[addr]
            own = rng.randint(5_000, 50_000) * 10**10
            stakes[(era, addr)] = StakeOverview(
                total=own + rng.randint(1_500_000, 3_000_000) * 10**10,
                own=own,
                nominator_count=rng.randint(1, 512),
                page_count=1,
            )

    return InMemoryChainClient(
        active_era=active_era,
        validators=validators,
        era_rewards=era_rewards,
        era_points=era_points,
        prefs=prefs,
        era_prefs=era_prefs,
        stakes=stakes,
        latency_s=latency_s,
    )
