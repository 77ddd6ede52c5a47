"""Error taxonomy for the aggregation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
import time


class StakeviewError(Exception):
    """Base class for stakeview errors."""


class DataUnavailable(StakeviewError):
    """Session bootstrap could not resolve data it cannot run without (the active era)."""


class PartialFetchFailure(StakeviewError):
    """A single item of a batch could not be fetched.

    Never escapes a batch: the batch runner turns it into a default value and a
    :class:`SoftWarning`.
    """

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class ComputationSkipped(str, Enum):
    """Why an APY was left at 0. Policy, not an error."""

    ZERO_POINTS = "zero_points"
    ZERO_TOTAL_POINTS = "zero_total_points"
    ZERO_STAKE = "zero_stake"


@dataclass(frozen=True)
class SoftWarning:
    job: str
    key: str
    message: str
    era: Optional[int] = None
    timestamp: float = field(default_factory=time.time)
