from __future__ import annotations

from typing import Dict, List, Tuple

from pydantic import BaseModel, Field, field_validator

from stakeview.score.apy import perbill_to_commission


class ActiveEra(BaseModel):
    index: int = Field(ge=0)
    start: int | None = None


class EraRewardPoints(BaseModel):
    total: int = 0
    # (address, points) in the order the chain returned them
    individual: List[Tuple[str, int]] = Field(default_factory=list)

    @field_validator("individual", mode="before")
    @classmethod
    def _coerce_individual(cls, value):
        out: List[Tuple[str, int]] = []
        for entry in value or []:
            if isinstance(entry, dict):
                entry = (entry.get("account") or entry.get("address"), entry.get("points"))
            if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                continue
            address, points = entry
            if address is None:
                continue
            out.append((str(address), int(points or 0)))
        return out

    def points_by_address(self) -> Dict[str, int]:
        return {address: points for address, points in self.individual}

    def points_of(self, address: str) -> int:
        for addr, points in self.individual:
            if addr == address:
                return points
        return 0


class ValidatorPrefs(BaseModel):
    # Perbill (parts per 1e9), as stored on chain.
    commission: int = Field(default=0, ge=0)
    blocked: bool = False

    @property
    def commission_fraction(self) -> float:
        return perbill_to_commission(self.commission)


class StakeOverview(BaseModel):
    total: int = 0
    own: int = 0
    nominator_count: int = 0
    page_count: int = 0
