"""
Historical drill-down for a single validator.

Both jobs work era by era through :func:`run_in_batches`; a failing era is
reported as a :class:`SoftWarning` and never fails the whole series.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

import bittensor as bt

from stakeview.chain.client import ChainQueryClient
from stakeview.core.models import HistoricalSeries, RecordUpdate, ValidatorRecord
from stakeview.engine.batching import run_in_batches
from stakeview.engine.eras import EraLedger
from stakeview.errors import PartialFetchFailure, SoftWarning
from stakeview.score import apy as apy_math


@dataclass
class _EraHistory:
    points: Optional[int] = None
    reward: Optional[int] = None
    commission: Optional[float] = None


@dataclass
class HistoryResult:
    update: RecordUpdate
    warnings: List[SoftWarning] = field(default_factory=list)


async def fetch_era_history(
    client: ChainQueryClient,
    ledger: EraLedger,
    address: str,
    eras: Sequence[int],
    *,
    batch_size: int = 5,
) -> HistoryResult:
    """Points, reward share and commission of ``address`` for each era."""
    warnings: List[SoftWarning] = []

    async def fetch_one(era: int) -> _EraHistory:
        out = _EraHistory()
        try:
            points = await ledger.points(era)
            reward = await ledger.reward(era)
        except Exception as e:
            raise PartialFetchFailure(address, f"era {era} points/reward: {e}") from e

        if points is not None:
            out.points = points.points_of(address)
            if reward is not None:
                out.reward = apy_math.validator_era_reward(reward, out.points, points.total)

        try:
            prefs = await client.get_era_validator_preferences(era, address)
        except Exception as e:
            warnings.append(SoftWarning(job="history", key=address, era=era, message=f"commission lookup failed: {e}"))
            prefs = None
        if prefs is not None:
            out.commission = prefs.commission_fraction
        return out

    def on_error(era: int, exc: BaseException) -> _EraHistory:
        warnings.append(SoftWarning(job="history", key=address, era=era, message=str(exc)))
        return _EraHistory()

    per_era = await run_in_batches(eras, batch_size, fetch_one, on_error=on_error, label=f"history:{address}")

    points_map: Dict[int, int] = {}
    rewards_map: Dict[int, int] = {}
    commission_map: Dict[int, float] = {}
    for era, item in zip(eras, per_era):
        if item.points is not None:
            points_map[era] = item.points
        if item.reward is not None:
            rewards_map[era] = item.reward
        if item.commission is not None:
            commission_map[era] = item.commission

    bt.logging.debug(
        f"History for {address}: {len(points_map)}/{len(eras)} eras with points, {len(warnings)} warnings"
    )
    return HistoryResult(
        update=RecordUpdate(
            previous_eras_points=points_map,
            previous_eras_rewards=rewards_map,
            historical_commission=commission_map,
        ),
        warnings=warnings,
    )


async def compute_era_apys(
    client: ChainQueryClient,
    ledger: EraLedger,
    record: ValidatorRecord,
    eras: Sequence[int],
    *,
    batch_size: int = 3,
) -> HistoryResult:
    """Nominator APY of one validator for each era of the window."""
    address = record.address
    warnings: List[SoftWarning] = []
    failed: Set[int] = set()

    async def fetch_one(era: int) -> float:
        try:
            reward = await ledger.reward(era)
            points = await ledger.points(era)
            if reward is None or points is None:
                return 0.0

            validator_points = points.points_of(address)
            # inactive era: skip the stake query
            if validator_points <= 0 or points.total <= 0:
                return 0.0

            commission = record.historical_commission.get(era)
            if commission is None:
                commission = record.commission

            stake = await client.get_era_stake_overview(era, address)
        except Exception as e:
            raise PartialFetchFailure(address, f"era {era} apy: {e}") from e

        total_stake = stake.total if stake is not None else 0
        return apy_math.compute_era_apy(validator_points, points.total, reward, commission, total_stake)

    def on_error(era: int, exc: BaseException) -> float:
        failed.add(era)
        warnings.append(SoftWarning(job="apy", key=address, era=era, message=str(exc)))
        return 0.0

    values = await run_in_batches(eras, batch_size, fetch_one, on_error=on_error, label=f"apy:{address}")
    apy_by_era = {era: value for era, value in zip(eras, values) if era not in failed}
    return HistoryResult(
        update=RecordUpdate(apy_by_era=apy_by_era, failed_apy_eras=frozenset(failed)),
        warnings=warnings,
    )


def build_series(record: ValidatorRecord, eras: Sequence[int]) -> HistoricalSeries:
    """Window view over the record's era maps; averages cover the window only."""
    perf = record.performance
    rewards = record.rewards
    points = tuple(perf.previous_eras_points.get(era) for era in eras)
    apys = tuple(rewards.apy_by_era.get(era) for era in eras)
    commissions = tuple(record.historical_commission.get(era) for era in eras)

    window_apy = {era: v for era, v in zip(eras, apys) if v is not None}
    window_points = {era: p for era, p in zip(eras, points) if p is not None}
    window_commission = {era: c for era, c in zip(eras, commissions) if c is not None}
    return HistoricalSeries(
        address=record.address,
        eras=tuple(eras),
        points=points,
        rewards=tuple(rewards.previous_eras_rewards.get(era) for era in eras),
        commission=commissions,
        apy=apys,
        average_points=apy_math.average_points(window_points),
        average_apy=apy_math.average_apy(window_apy),
        active_only_average_apy=apy_math.active_only_average_apy(window_apy),
        average_commission=apy_math.average_commission(window_commission, fallback=record.commission),
    )
