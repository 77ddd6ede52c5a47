from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from stakeview.core.models import HistoricalSeries, ValidatorRecord
from stakeview.engine.aggregator import EngineSnapshot
from stakeview.utils.misc import format_apy, format_planck


class ValidatorRow(BaseModel):
    address: str
    commission: float
    blocked_nominations: bool
    total_stake: int
    own_stake: int
    # Display strings, e.g. "1,234.56 DOT"
    total_stake_display: str
    own_stake_display: str
    last_era_apy: Optional[float] = None
    # e.g. "13.46%"
    last_era_apy_display: str = "0.00%"
    current_era_points: int = 0
    current_era_reward: int = 0
    average_points: float = 0.0
    average_apy: float = 0.0
    active_only_average_apy: float = 0.0
    average_commission: float = 0.0
    detail_status: str = "unknown"

    @classmethod
    def from_record(cls, record: ValidatorRecord) -> "ValidatorRow":
        return cls(
            address=record.address,
            commission=record.commission,
            blocked_nominations=record.blocked_nominations,
            total_stake=record.total_stake,
            own_stake=record.own_stake,
            total_stake_display=format_planck(record.total_stake),
            own_stake_display=format_planck(record.own_stake),
            last_era_apy=record.last_era_apy,
            last_era_apy_display=format_apy(record.last_era_apy),
            current_era_points=record.performance.current_era_points,
            current_era_reward=record.rewards.current_era_reward,
            average_points=record.performance.average_points,
            average_apy=record.rewards.average_apy,
            active_only_average_apy=record.rewards.active_only_average_apy,
            average_commission=record.average_commission,
            detail_status=record.detail_status.value,
        )


class PageResponse(BaseModel):
    page: int
    page_size: int
    total_pages: int
    total_validators: int
    validators: List[ValidatorRow]


class WarningItem(BaseModel):
    job: str
    key: str
    message: str
    era: Optional[int] = None
    timestamp: float


class StateResponse(BaseModel):
    active_era: int
    last_era: Optional[int] = None
    current_page: int
    page_size: int
    total_pages: int
    total_validators: int
    all_validators: int
    history_length: int
    max_history_length: int
    selected_validator: Optional[str] = None
    include_full_commission: bool
    include_blocked_nominations: bool
    loading: bool
    loading_page: bool
    loading_apy: bool
    loading_historical_data: bool
    calculating_last_era_apy: bool
    last_era_apy_ready: bool
    error: Optional[str] = None
    warnings: List[WarningItem] = Field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snap: EngineSnapshot) -> "StateResponse":
        return cls(
            active_era=snap.active_era,
            last_era=snap.last_era,
            current_page=snap.current_page,
            page_size=snap.page_size,
            total_pages=snap.total_pages,
            total_validators=snap.total_validators,
            all_validators=snap.all_validators,
            history_length=snap.history_length,
            max_history_length=snap.max_history_length,
            selected_validator=snap.selected_validator,
            include_full_commission=snap.filter_state.include_full_commission,
            include_blocked_nominations=snap.filter_state.include_blocked_nominations,
            loading=snap.loading,
            loading_page=snap.loading_page,
            loading_apy=snap.loading_apy,
            loading_historical_data=snap.loading_historical_data,
            calculating_last_era_apy=snap.calculating_last_era_apy,
            last_era_apy_ready=snap.last_era_apy_ready,
            error=snap.error,
            warnings=[
                WarningItem(job=w.job, key=w.key, message=w.message, era=w.era, timestamp=w.timestamp)
                for w in snap.warnings
            ],
        )


class HistoryRow(BaseModel):
    era: int
    points: Optional[int] = None
    reward: Optional[int] = None
    commission: Optional[float] = None
    apy: Optional[float] = None


class HistoryResponse(BaseModel):
    address: str
    eras: List[int]
    rows: List[HistoryRow]
    average_points: float
    average_apy: float
    active_only_average_apy: float
    average_commission: float

    @classmethod
    def from_series(cls, series: HistoricalSeries) -> "HistoryResponse":
        return cls(
            address=series.address,
            eras=list(series.eras),
            rows=[HistoryRow(**row) for row in series.rows()],
            average_points=series.average_points,
            average_apy=series.average_apy,
            active_only_average_apy=series.active_only_average_apy,
            average_commission=series.average_commission,
        )


class PageRequest(BaseModel):
    page: int = Field(ge=1)


class PageSizeRequest(BaseModel):
    page_size: int = Field(ge=1, le=500)


class FilterRequest(BaseModel):
    include_full_commission: Optional[bool] = None
    include_blocked_nominations: Optional[bool] = None


class HistorySelectRequest(BaseModel):
    # null clears the selection
    address: Optional[str] = None


class HistoryLengthRequest(BaseModel):
    length: int = Field(ge=1)
