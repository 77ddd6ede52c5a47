"""
In-memory validator record cache.

Merge-only: records are never evicted and a merge never replaces a known value
with "unknown". Averages are always recomputed from the merged era maps.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterator, Optional

import bittensor as bt

from stakeview.core.models import (
    FetchStatus,
    Performance,
    RecordUpdate,
    Rewards,
    ValidatorRecord,
)
from stakeview.score import apy as apy_math


def default_record(address: str, points: int = 0, last_era_apy: Optional[float] = None) -> ValidatorRecord:
    """Row shown for a validator whose detail is not (or could not be) fetched."""
    return ValidatorRecord(
        address=address,
        last_era_apy=last_era_apy,
        performance=Performance(current_era_points=int(points)),
    )


class ValidatorCache:
    def __init__(self) -> None:
        self._records: Dict[str, ValidatorRecord] = {}

    def __contains__(self, address: str) -> bool:
        return address in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def get(self, address: str) -> Optional[ValidatorRecord]:
        return self._records.get(address)

    def get_or_default(self, address: str, points: int = 0, last_era_apy: Optional[float] = None) -> ValidatorRecord:
        rec = self._records.get(address)
        if rec is not None:
            return rec
        return default_record(address, points=points, last_era_apy=last_era_apy)

    def needs_detail(self, address: str) -> bool:
        rec = self._records.get(address)
        return rec is None or rec.needs_detail

    def merge(self, address: str, update: RecordUpdate) -> ValidatorRecord:
        current = self._records.get(address) or default_record(address)
        merged = _merge_record(current, update)
        self._records[address] = merged
        return merged

    def clear(self) -> None:
        self._records.clear()


def _merge_status(current: FetchStatus, new: Optional[FetchStatus]) -> FetchStatus:
    # A failure after a successful fetch keeps the earlier data authoritative.
    if new is None or (new is FetchStatus.FAILED and current is FetchStatus.OK):
        return current
    return new


def _pick(new, old):
    return old if new is None else new


def _merge_record(current: ValidatorRecord, update: RecordUpdate) -> ValidatorRecord:
    prefs_status = _merge_status(current.prefs_status, update.prefs_status)
    detail_status = _merge_status(current.detail_status, update.detail_status)

    commission = _pick(update.commission, current.commission)
    blocked = _pick(update.blocked_nominations, current.blocked_nominations)
    total_stake = _pick(update.total_stake, current.total_stake)
    own_stake = _pick(update.own_stake, current.own_stake)
    # last-era APY is computed independently of the detail fetch
    last_era_apy = update.last_era_apy if update.last_era_apy is not None else current.last_era_apy

    points_map = current.performance.previous_eras_points.union(update.previous_eras_points)
    rewards_map = current.rewards.previous_eras_rewards.union(update.previous_eras_rewards)
    commission_map = current.historical_commission.union(update.historical_commission)

    # Computed APYs win; failed eras only fill gaps and stay flagged while unresolved.
    apy_map = current.rewards.apy_by_era.union(update.apy_by_era)
    failed = (current.rewards.failed_apy_eras - set(update.apy_by_era)) | {
        era for era in update.failed_apy_eras if era not in apy_map or era in current.rewards.failed_apy_eras
    }
    apy_map = apy_map.fill_missing({era: 0.0 for era in update.failed_apy_eras})

    performance = Performance(
        current_era_points=_pick(update.current_era_points, current.performance.current_era_points),
        previous_eras_points=points_map,
        average_points=apy_math.average_points(points_map),
    )
    rewards = Rewards(
        current_era_reward=_pick(update.current_era_reward, current.rewards.current_era_reward),
        previous_eras_rewards=rewards_map,
        apy_by_era=apy_map,
        failed_apy_eras=frozenset(failed),
        average_apy=apy_math.average_apy(apy_map),
        active_only_average_apy=apy_math.active_only_average_apy(apy_map),
    )
    merged = replace(
        current,
        commission=float(commission),
        blocked_nominations=bool(blocked),
        total_stake=int(total_stake),
        own_stake=int(own_stake),
        last_era_apy=last_era_apy,
        performance=performance,
        rewards=rewards,
        historical_commission=commission_map,
        average_commission=apy_math.average_commission(commission_map, fallback=commission),
        prefs_status=prefs_status,
        detail_status=detail_status,
    )
    bt.logging.trace(
        f"cache merge {current.address}: prefs={prefs_status.value} detail={detail_status.value} apy_eras={len(apy_map)}"
    )
    return merged
