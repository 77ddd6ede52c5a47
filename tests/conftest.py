import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest

# Ensure repo root is on sys.path so `import stakeview` works under all pytest import modes.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from stakeview.chain.memory import InMemoryChainClient  # noqa: E402
from stakeview.chain.schemas import EraRewardPoints, StakeOverview, ValidatorPrefs  # noqa: E402
from stakeview.utils.config import EngineConfig  # noqa: E402

ERA_REWARD = 10**12
TEN_PERCENT = 100_000_000


def make_chain(
    *,
    n: int = 25,
    active_era: Optional[int] = 10,
    full_commission: Iterable[int] = (3,),
    blocked: Iterable[int] = (5,),
    latency_s: float = 0.0,
) -> InMemoryChainClient:
    """
    Small deterministic chain.

    Validator ``vNN`` earns ``(n - NN) * 100`` points every era and is backed by
    ``(n - NN) ** 2 * 1e12`` planck, so APY order is the reverse of points order.
    """
    full_commission = set(full_commission)
    blocked = set(blocked)
    validators = [f"v{i:02d}" for i in range(n)]

    prefs: Dict[str, ValidatorPrefs] = {}
    for i, addr in enumerate(validators):
        commission = 1_000_000_000 if i in full_commission else TEN_PERCENT
        prefs[addr] = ValidatorPrefs(commission=commission, blocked=i in blocked)

    last = active_era or 0
    era_points = {}
    era_rewards = {}
    era_prefs = {}
    stakes = {}
    for era in range(0, last + 1):
        individual = [(addr, (n - i) * 100) for i, addr in enumerate(validators)]
        era_points[era] = EraRewardPoints(total=sum(p for _, p in individual), individual=individual)
        if era < last:
            era_rewards[era] = ERA_REWARD
        for i, addr in enumerate(validators):
            era_prefs[(era, addr)] = prefs[addr]
            stake = (n - i) ** 2 * 10**12
            stakes[(era, addr)] = StakeOverview(total=stake, own=stake // 10, nominator_count=3, page_count=1)

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


def fast_config(**overrides) -> EngineConfig:
    base = dict(apy_delay_s=0.0, prefetch_delay_s=0.0, history_length=5)
    base.update(overrides)
    return EngineConfig(**base)


@pytest.fixture
def chain_factory():
    return make_chain


@pytest.fixture
def engine_config():
    return fast_config
