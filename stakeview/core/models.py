"""
Core data models for validator staking performance.

Amounts are plain ints in the chain's smallest unit (planck). Commission is a
fraction in [0, 1].
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Generic, Iterator, List, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")


class FetchStatus(str, Enum):
    """Whether a group of record fields came from the chain."""

    UNKNOWN = "unknown"
    OK = "ok"
    FAILED = "failed"


class EraMap(Mapping[int, T], Generic[T]):
    """Immutable era -> value mapping, iterated newest era first.

    ``get(era)`` returns ``None`` for an era that was never stored, which is not
    the same thing as a stored ``0``.
    """

    __slots__ = ("_data",)

    def __init__(self, items: Optional[Mapping[int, T]] = None) -> None:
        data = dict(items or {})
        for era in data:
            if int(era) < 0:
                raise ValueError(f"era index must be non-negative, got {era}")
        self._data: Dict[int, T] = {int(k): data[k] for k in sorted(data, reverse=True)}

    def __getitem__(self, era: int) -> T:
        return self._data[era]

    def __iter__(self) -> Iterator[int]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, EraMap):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(self._data.items()))

    def __repr__(self) -> str:
        return f"EraMap({self._data!r})"

    def union(self, other: Mapping[int, T]) -> "EraMap[T]":
        """Key-wise union; values from ``other`` win on shared eras."""
        if not other:
            return self
        merged = dict(self._data)
        merged.update(other)
        return EraMap(merged)

    def fill_missing(self, other: Mapping[int, T]) -> "EraMap[T]":
        """Key-wise union that only adds eras not already present."""
        missing = {era: v for era, v in other.items() if era not in self._data}
        return self.union(missing) if missing else self

    def covers(self, eras: Tuple[int, ...] | List[int]) -> bool:
        return all(era in self._data for era in eras)

    def to_dict(self) -> Dict[int, T]:
        return dict(self._data)


@dataclass(frozen=True)
class ValidatorSummary:
    """Minimal ranking unit for the active era."""

    address: str
    points: int


@dataclass(frozen=True)
class FilteredEntry:
    address: str
    points: int
    last_era_apy: Optional[float] = None


@dataclass(frozen=True)
class FilterState:
    include_full_commission: bool = False
    include_blocked_nominations: bool = False

    def is_passthrough(self) -> bool:
        return self.include_full_commission and self.include_blocked_nominations


@dataclass(frozen=True)
class Performance:
    current_era_points: int = 0
    previous_eras_points: EraMap[int] = field(default_factory=EraMap)
    average_points: float = 0.0


@dataclass(frozen=True)
class Rewards:
    current_era_reward: int = 0
    previous_eras_rewards: EraMap[int] = field(default_factory=EraMap)
    apy_by_era: EraMap[float] = field(default_factory=EraMap)
    # Eras whose APY is a 0 default after a failed fetch, not a computed 0.
    failed_apy_eras: FrozenSet[int] = frozenset()
    average_apy: float = 0.0
    active_only_average_apy: float = 0.0


@dataclass(frozen=True)
class ValidatorRecord:
    """Cached, possibly partially hydrated, view of one validator."""

    address: str
    commission: float = 0.0
    blocked_nominations: bool = False
    total_stake: int = 0
    own_stake: int = 0
    last_era_apy: Optional[float] = None
    performance: Performance = field(default_factory=Performance)
    rewards: Rewards = field(default_factory=Rewards)
    historical_commission: EraMap[float] = field(default_factory=EraMap)
    average_commission: float = 0.0
    # commission/blocked (prefs) and stake/reward (detail) are fetched separately
    prefs_status: FetchStatus = FetchStatus.UNKNOWN
    detail_status: FetchStatus = FetchStatus.UNKNOWN

    @property
    def needs_detail(self) -> bool:
        return self.detail_status is not FetchStatus.OK

    @property
    def needs_prefs(self) -> bool:
        return self.prefs_status is not FetchStatus.OK and self.detail_status is not FetchStatus.OK

    def to_payload(self) -> Dict[str, object]:
        return {
            "address": self.address,
            "commission": self.commission,
            "blocked_nominations": self.blocked_nominations,
            "total_stake": self.total_stake,
            "own_stake": self.own_stake,
            "last_era_apy": self.last_era_apy,
            "performance": {
                "current_era_points": self.performance.current_era_points,
                "previous_eras_points": self.performance.previous_eras_points.to_dict(),
                "average_points": self.performance.average_points,
            },
            "rewards": {
                "current_era_reward": self.rewards.current_era_reward,
                "previous_eras_rewards": self.rewards.previous_eras_rewards.to_dict(),
                "apy_by_era": self.rewards.apy_by_era.to_dict(),
                "failed_apy_eras": sorted(self.rewards.failed_apy_eras, reverse=True),
                "average_apy": self.rewards.average_apy,
                "active_only_average_apy": self.rewards.active_only_average_apy,
            },
            "historical_commission": self.historical_commission.to_dict(),
            "average_commission": self.average_commission,
            "prefs_status": self.prefs_status.value,
            "detail_status": self.detail_status.value,
        }


@dataclass(frozen=True)
class RecordUpdate:
    """
    Partial record produced by one fetch.

    ``None`` scalars mean "not part of this fetch" and leave the cached value
    alone. Era maps are merged key by key.
    """

    commission: Optional[float] = None
    blocked_nominations: Optional[bool] = None
    total_stake: Optional[int] = None
    own_stake: Optional[int] = None
    last_era_apy: Optional[float] = None
    current_era_points: Optional[int] = None
    current_era_reward: Optional[int] = None
    previous_eras_points: Mapping[int, int] = field(default_factory=dict)
    previous_eras_rewards: Mapping[int, int] = field(default_factory=dict)
    historical_commission: Mapping[int, float] = field(default_factory=dict)
    apy_by_era: Mapping[int, float] = field(default_factory=dict)
    failed_apy_eras: FrozenSet[int] = frozenset()
    prefs_status: Optional[FetchStatus] = None
    detail_status: Optional[FetchStatus] = None


@dataclass(frozen=True)
class HistoricalSeries:
    """Per-era history of one validator over the requested window."""

    address: str
    eras: Tuple[int, ...]
    points: Tuple[Optional[int], ...]
    rewards: Tuple[Optional[int], ...]
    commission: Tuple[Optional[float], ...]
    apy: Tuple[Optional[float], ...]
    average_points: float = 0.0
    average_apy: float = 0.0
    active_only_average_apy: float = 0.0
    average_commission: float = 0.0

    def rows(self) -> List[Dict[str, object]]:
        return [
            {"era": era, "points": p, "reward": r, "commission": c, "apy": a}
            for era, p, r, c, a in zip(self.eras, self.points, self.rewards, self.commission, self.apy)
        ]
