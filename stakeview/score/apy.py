"""
APY estimation for validator nominators.

An era's nominator return is extrapolated over a year:

    validator_reward = R * p // P
    nominator_reward = validator_reward * (1 - c)   (perbill integer math)
    apy              = nominator_reward / S * 365.25 * 100

Monetary amounts stay in exact integers; floats are only used for the final
return-rate ratio.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

import numpy as np

from stakeview.errors import ComputationSkipped

PERBILL = 1_000_000_000
DAYS_PER_YEAR = 365.25


def commission_to_perbill(commission: float) -> int:
    """Fraction in [0, 1] -> parts per billion, clamped."""
    perbill = int(round(float(commission) * PERBILL))
    return max(0, min(PERBILL, perbill))


def perbill_to_commission(perbill: int) -> float:
    return int(perbill) / PERBILL


def validator_era_reward(era_reward: int, points: int, total_points: int) -> int:
    """Share of the era payout earned by one validator's points."""
    if points <= 0 or total_points <= 0 or era_reward <= 0:
        return 0
    return int(era_reward) * int(points) // int(total_points)


def nominator_era_reward(validator_reward: int, commission: float) -> int:
    """Validator reward left for nominators after commission."""
    return int(validator_reward) * (PERBILL - commission_to_perbill(commission)) // PERBILL


def apy_skip_reason(points: int, total_points: int, total_stake: int) -> Optional[ComputationSkipped]:
    if points <= 0:
        return ComputationSkipped.ZERO_POINTS
    if total_points <= 0:
        return ComputationSkipped.ZERO_TOTAL_POINTS
    if total_stake <= 0:
        return ComputationSkipped.ZERO_STAKE
    return None


def compute_era_apy(
    points: int,
    total_points: int,
    era_reward: int,
    commission: float,
    total_stake: int,
) -> float:
    """Annualized nominator yield, in percent, for a single era."""
    if apy_skip_reason(points, total_points, total_stake) is not None:
        return 0.0

    validator_reward = validator_era_reward(era_reward, points, total_points)
    nominator_reward = nominator_era_reward(validator_reward, commission)
    era_return_rate = nominator_reward / int(total_stake)
    return era_return_rate * DAYS_PER_YEAR * 100


def _mean(values: Iterable[float]) -> float:
    arr = np.asarray(list(values), dtype=np.float64)
    if arr.size == 0:
        return 0.0
    return float(arr.mean())


def average_apy(apy_by_era: Mapping[int, float]) -> float:
    """Mean over every era, inactive (0) eras included."""
    return _mean(apy_by_era.values())


def active_only_average_apy(apy_by_era: Mapping[int, float]) -> float:
    """Mean over eras with a nonzero APY."""
    return _mean(v for v in apy_by_era.values() if v > 0)


def average_points(points_by_era: Mapping[int, int]) -> float:
    return _mean(points_by_era.values())


def average_commission(commission_by_era: Mapping[int, float], fallback: float) -> float:
    if not commission_by_era:
        return float(fallback)
    return _mean(commission_by_era.values())
