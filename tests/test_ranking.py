import asyncio

import pytest

from stakeview.chain.memory import InMemoryChainClient
from stakeview.chain.schemas import EraRewardPoints
from stakeview.core.models import FilteredEntry, FilterState
from stakeview.engine.eras import EraLedger, historical_eras, max_history_length
from stakeview.engine.ranking import (
    build_ranking,
    passes_filter,
    rank_validators,
    resolve_active_era,
    sort_by_apy,
)
from stakeview.errors import DataUnavailable


def test_rank_is_stable_on_ties_and_defaults_missing_points():
    points = EraRewardPoints(total=60, individual=[("C", 20), ("A", 20), ("B", 20)])
    ranked = rank_validators(["A", "B", "C", "D"], points)
    assert [v.address for v in ranked] == ["A", "B", "C", "D"]
    assert ranked[-1].points == 0


def test_build_ranking_tolerates_missing_points():
    client = InMemoryChainClient(active_era=5, validators=["A", "B"])
    client.fail("get_era_reward_points", 5)

    ranking, points = asyncio.run(build_ranking(client, 5))
    assert points is None
    assert [(v.address, v.points) for v in ranking] == [("A", 0), ("B", 0)]


def test_resolve_active_era_raises_data_unavailable():
    client = InMemoryChainClient(active_era=None, validators=[])
    with pytest.raises(DataUnavailable):
        asyncio.run(resolve_active_era(client))

    failing = InMemoryChainClient(active_era=3, validators=[])
    failing.fail("get_active_era")
    with pytest.raises(DataUnavailable):
        asyncio.run(resolve_active_era(failing))


def test_filter_membership():
    default = FilterState()
    assert passes_filter(0.1, False, default)
    assert not passes_filter(1.0, False, default)
    assert not passes_filter(0.1, True, default)
    assert passes_filter(1.0, True, FilterState(include_full_commission=True, include_blocked_nominations=True))
    assert FilterState(True, True).is_passthrough()


def test_sort_by_apy_is_stable_and_treats_missing_as_zero():
    entries = [FilteredEntry("A", 10, 5.0), FilteredEntry("B", 9, None), FilteredEntry("C", 8, 5.0)]
    assert [e.address for e in sort_by_apy(entries)] == ["A", "C", "B"]


def test_history_window():
    assert historical_eras(10, 3) == [9, 8, 7]
    assert historical_eras(2, 5) == [1, 0]
    assert max_history_length(1500) == 84
    assert max_history_length(10) == 10
    assert max_history_length(0) == 0


def test_era_ledger_memoizes_completed_eras_and_dedupes_requests():
    client = InMemoryChainClient(active_era=10, validators=["A"], era_rewards={9: 100, 10: 5}, latency_s=0.01)

    async def run():
        ledger = EraLedger(client, active_era=10)
        await asyncio.gather(ledger.reward(9), ledger.reward(9), ledger.reward(9))
        await ledger.reward(9)
        await ledger.reward(10)
        await ledger.reward(10)

    asyncio.run(run())
    # era 9: one request total; active era 10 is never memoised
    assert client.calls["get_era_total_reward"] == 3
