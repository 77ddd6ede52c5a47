"""Ranking and filter membership for the validator projection."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import bittensor as bt

from stakeview.chain.client import ChainQueryClient
from stakeview.chain.schemas import ActiveEra, EraRewardPoints
from stakeview.core.models import FilteredEntry, FilterState, ValidatorSummary
from stakeview.errors import DataUnavailable


async def resolve_active_era(client: ChainQueryClient) -> ActiveEra:
    try:
        active = await client.get_active_era()
    except Exception as e:
        raise DataUnavailable(f"failed getting the active era: {e}") from e
    if active is None:
        raise DataUnavailable("failed getting the active era: chain returned nothing")
    return active


def rank_validators(addresses: Sequence[str], points: Optional[EraRewardPoints]) -> List[ValidatorSummary]:
    """Validators sorted by points, highest first; ties keep the validator-set order."""
    by_address: Dict[str, int] = points.points_by_address() if points is not None else {}
    summaries = [ValidatorSummary(address=str(a), points=int(by_address.get(str(a), 0))) for a in addresses]
    # list.sort is stable
    summaries.sort(key=lambda s: s.points, reverse=True)
    return summaries


async def build_ranking(
    client: ChainQueryClient, active_era: int
) -> Tuple[List[ValidatorSummary], Optional[EraRewardPoints]]:
    """
    Fetch the validator set and the active era's points and rank them.

    A missing points entry for the active era is not fatal (the era may have
    just started): every validator then ranks with 0 points.
    """
    addresses = await client.get_validator_set()
    try:
        points = await client.get_era_reward_points(active_era)
    except Exception as e:
        bt.logging.warning(f"Could not fetch reward points for era {active_era}: {e}")
        points = None
    ranking = rank_validators(addresses, points)
    bt.logging.info(f"Ranked {len(ranking)} validators for era {active_era}")
    return ranking, points


def passes_filter(commission: float, blocked: bool, state: FilterState) -> bool:
    if not state.include_full_commission and commission >= 1.0:
        return False
    if not state.include_blocked_nominations and blocked:
        return False
    return True


def sort_by_apy(entries: Sequence[FilteredEntry]) -> List[FilteredEntry]:
    """Highest last-era APY first; entries without an APY sort as 0."""
    return sorted(entries, key=lambda e: e.last_era_apy or 0.0, reverse=True)
