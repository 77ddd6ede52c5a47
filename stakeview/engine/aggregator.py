"""
Validator data aggregation engine.

One :class:`ValidatorDataEngine` per session owns the record cache, the ranked
and filtered projections, pagination and history state, and the background
jobs that backfill the cache. Reads never hit the chain; every fetch happens
inside a batch run and merges its results into the cache when the batch
settles.
"""

from __future__ import annotations

import math
import traceback
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Deque, Dict, Iterator, List, Optional, Sequence, Tuple

import bittensor as bt

from stakeview.chain.client import ChainQueryClient
from stakeview.chain.schemas import EraRewardPoints
from stakeview.core.cache import ValidatorCache
from stakeview.core.models import (
    FetchStatus,
    FilteredEntry,
    FilterState,
    HistoricalSeries,
    RecordUpdate,
    ValidatorRecord,
    ValidatorSummary,
)
from stakeview.engine.batching import run_in_batches
from stakeview.engine.eras import EraLedger, historical_eras, max_history_length, MAX_HISTORY_ERAS
from stakeview.engine.history import build_series, compute_era_apys, fetch_era_history
from stakeview.engine.ranking import build_ranking, passes_filter, resolve_active_era, sort_by_apy
from stakeview.engine.scheduler import BackgroundScheduler
from stakeview.errors import DataUnavailable, PartialFetchFailure, SoftWarning
from stakeview.score import apy as apy_math
from stakeview.utils.config import EngineConfig

LAST_ERA_APY_JOB = "last_era_apy"
PREFETCH_JOB = "prefetch"


@dataclass(frozen=True)
class EngineSnapshot:
    active_era: int
    last_era: Optional[int]
    current_page: int
    page_size: int
    total_pages: int
    total_validators: int
    all_validators: int
    history_length: int
    max_history_length: int
    selected_validator: Optional[str]
    filter_state: FilterState
    loading: bool
    loading_page: bool
    loading_apy: bool
    loading_historical_data: bool
    calculating_last_era_apy: bool
    last_era_apy_ready: bool
    error: Optional[str]
    warnings: Tuple[SoftWarning, ...]


class ValidatorDataEngine:
    def __init__(self, client: ChainQueryClient, config: Optional[EngineConfig] = None) -> None:
        self.client = client
        self.config = config or EngineConfig()
        self.cache = ValidatorCache()
        self.scheduler = BackgroundScheduler(on_error=self._on_job_error)
        self.ledger: Optional[EraLedger] = None

        self.active_era = 0
        # None until the chain has a completed era
        self.last_era: Optional[int] = None
        self.max_history_length = MAX_HISTORY_ERAS
        self.current_era_reward = 0
        self.current_era_points: Optional[EraRewardPoints] = None

        self.all_validators: List[ValidatorSummary] = []
        self.filtered_validators: List[FilteredEntry] = []
        # Bumped on every projection rebuild and every filter change.
        self._projection_version = 0
        self._filter_generation = 0
        self.displayed_validators: List[ValidatorRecord] = []
        self.current_page = 1
        self.page_size = max(1, int(self.config.page_size))
        self.filter_state = FilterState(
            include_full_commission=self.config.include_full_commission,
            include_blocked_nominations=self.config.include_blocked_nominations,
        )

        self.history_length = max(1, min(int(self.config.history_length), MAX_HISTORY_ERAS))
        self.historical_eras: List[int] = []
        self.selected_validator: Optional[str] = None

        self.loading = False
        self._busy: Counter = Counter()
        self.calculating_last_era_apy = False
        self.last_era_apy_ready = False
        self.error: Optional[str] = None
        self.warnings: Deque[SoftWarning] = deque(maxlen=max(1, self.config.max_warnings))

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------
    @property
    def total_validators(self) -> int:
        return len(self.filtered_validators)

    @property
    def loading_page(self) -> bool:
        return self._busy["page"] > 0

    @property
    def loading_apy(self) -> bool:
        return self._busy["apy"] > 0

    @property
    def loading_historical_data(self) -> bool:
        return self._busy["history"] > 0

    @contextmanager
    def _working(self, kind: str) -> Iterator[None]:
        # Overlapping operations of one kind keep the flag up until the last one ends.
        self._busy[kind] += 1
        try:
            yield
        finally:
            self._busy[kind] -= 1

    def _set_projection(self, entries: List[FilteredEntry]) -> None:
        self.filtered_validators = entries
        self._projection_version += 1

    def get_displayed_page(self) -> List[ValidatorRecord]:
        return list(self.displayed_validators)

    def get_total_pages(self) -> int:
        return math.ceil(self.total_validators / self.page_size)

    def get_historical_series(self) -> Optional[HistoricalSeries]:
        if not self.selected_validator:
            return None
        record = self.cache.get_or_default(self.selected_validator)
        eras = historical_eras(self.active_era, self.history_length)
        return build_series(record, eras)

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            active_era=self.active_era,
            last_era=self.last_era,
            current_page=self.current_page,
            page_size=self.page_size,
            total_pages=self.get_total_pages(),
            total_validators=self.total_validators,
            all_validators=len(self.all_validators),
            history_length=self.history_length,
            max_history_length=self.max_history_length,
            selected_validator=self.selected_validator,
            filter_state=self.filter_state,
            loading=self.loading,
            loading_page=self.loading_page,
            loading_apy=self.loading_apy,
            loading_historical_data=self.loading_historical_data,
            calculating_last_era_apy=self.calculating_last_era_apy,
            last_era_apy_ready=self.last_era_apy_ready,
            error=self.error,
            warnings=tuple(self.warnings),
        )

    def clear_error(self) -> None:
        self.error = None

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------
    async def bootstrap(self) -> bool:
        """
        Resolve the active era, rank validators, build the filtered projection
        and render page 1, then release the background jobs.

        Returns False (with :attr:`error` set) when the session cannot start.
        """
        self.loading = True
        self.error = None
        self.scheduler.hold()
        try:
            active = await resolve_active_era(self.client)
            self.active_era = active.index
            self.last_era = active.index - 1 if active.index > 0 else None
            self.max_history_length = max_history_length(self.active_era)
            self.history_length = min(self.history_length, self.max_history_length)
            self.historical_eras = historical_eras(self.active_era, self.history_length)
            self.ledger = EraLedger(self.client, self.active_era)

            self.all_validators, self.current_era_points = await build_ranking(self.client, self.active_era)
            try:
                self.current_era_reward = await self.ledger.reward(self.active_era) or 0
            except Exception as e:
                self._warn(SoftWarning(job="bootstrap", key="era_reward", era=self.active_era, message=str(e)))
                self.current_era_reward = 0
        except DataUnavailable as e:
            bt.logging.error(f"Session bootstrap failed: {e}")
            self.error = str(e)
            self.loading = False
            return False
        except Exception as e:
            bt.logging.error(f"Session bootstrap failed:\n{traceback.format_exc()}")
            self.error = f"failed loading validators: {e}"
            self.loading = False
            return False

        self.loading = False
        bt.logging.info(
            f"Active era {self.active_era}: {len(self.all_validators)} validators, "
            f"history up to {self.max_history_length} eras"
        )

        await self.apply_filters()
        await self.fetch_page(1)

        self.scheduler.release()
        self.scheduler.submit(LAST_ERA_APY_JOB, self.compute_last_era_apy_for_all, delay_s=self.config.apy_delay_s)
        self.scheduler.submit(PREFETCH_JOB, self.prefetch_validators, delay_s=self.config.prefetch_delay_s)
        return True

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------
    async def set_filter(
        self,
        *,
        include_full_commission: Optional[bool] = None,
        include_blocked_nominations: Optional[bool] = None,
    ) -> None:
        state = self.filter_state
        self.filter_state = FilterState(
            include_full_commission=(
                state.include_full_commission if include_full_commission is None else bool(include_full_commission)
            ),
            include_blocked_nominations=(
                state.include_blocked_nominations
                if include_blocked_nominations is None
                else bool(include_blocked_nominations)
            ),
        )
        self._filter_generation += 1
        generation = self._filter_generation
        self.current_page = 1
        await self.apply_filters()
        # A later filter change owns the page refresh.
        if generation == self._filter_generation:
            await self.fetch_page(1)

    async def apply_filters(self) -> None:
        """
        Rebuild the filtered projection from the ranking and the cache.

        If the filter changes while preferences are being looked up, this run
        only feeds the cache; the newer run publishes the projection.
        """
        generation = self._filter_generation
        state = self.filter_state
        with self._working("page"):
            try:
                if not state.is_passthrough():
                    await self._lookup_prefs()
                if generation != self._filter_generation:
                    bt.logging.debug(f"Filter {state} superseded; dropping its projection")
                    return

                entries = self._build_projection(state)
                self._set_projection(entries)
                bt.logging.debug(f"Filter {state}: {len(entries)}/{len(self.all_validators)} validators")
            except Exception as e:
                # Keep the last good projection.
                bt.logging.error(f"Applying filters failed:\n{traceback.format_exc()}")
                self.error = str(e)

        if any(e.last_era_apy is None for e in self.filtered_validators) and not self.calculating_last_era_apy:
            self.scheduler.submit(LAST_ERA_APY_JOB, self.compute_last_era_apy_for_all, delay_s=self.config.apy_delay_s)

    async def _lookup_prefs(self) -> None:
        lookups = [v for v in self.all_validators if self._needs_prefs(v.address)]
        if not lookups:
            return
        await run_in_batches(
            lookups,
            self.config.batches.filter,
            self._fetch_prefs,
            on_error=self._prefs_failed,
            on_batch=self._merge_batch,
            label="filter",
        )

    def _build_projection(self, state: FilterState) -> List[FilteredEntry]:
        entries: List[FilteredEntry] = []
        for summary in self.all_validators:
            record = self.cache.get(summary.address)
            if record is not None and not passes_filter(record.commission, record.blocked_nominations, state):
                continue
            entries.append(
                FilteredEntry(
                    address=summary.address,
                    points=summary.points,
                    last_era_apy=record.last_era_apy if record is not None else None,
                )
            )
        if self.last_era_apy_ready:
            entries = sort_by_apy(entries)
        return entries

    def _needs_prefs(self, address: str) -> bool:
        record = self.cache.get(address)
        return record is None or record.needs_prefs

    async def _fetch_prefs(self, summary: ValidatorSummary) -> RecordUpdate:
        prefs = await self.client.get_validator_preferences(summary.address)
        if prefs is None:
            # Nothing on chain: keep whatever the cache already knows.
            return RecordUpdate()
        return RecordUpdate(
            commission=prefs.commission_fraction,
            blocked_nominations=prefs.blocked,
            prefs_status=FetchStatus.OK,
        )

    def _prefs_failed(self, summary: ValidatorSummary, exc: BaseException) -> RecordUpdate:
        self._warn(SoftWarning(job="filter", key=summary.address, message=f"preferences lookup failed: {exc}"))
        return RecordUpdate(prefs_status=FetchStatus.FAILED)

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------
    async def set_page(self, page: int) -> List[ValidatorRecord]:
        return await self.fetch_page(page)

    async def set_page_size(self, size: int) -> List[ValidatorRecord]:
        self.page_size = max(1, int(size))
        self.current_page = 1
        return await self.fetch_page(1)

    async def fetch_page(self, page: int) -> List[ValidatorRecord]:
        """Hydrate and display one page of the filtered projection."""
        if not self.filtered_validators:
            self.current_page = 1
            self.displayed_validators = []
            return []

        page = max(1, min(int(page), self.get_total_pages()))
        self.current_page = requested = page
        with self._working("page"):
            try:
                while True:
                    version = self._projection_version
                    page = max(1, min(page, self.get_total_pages()))
                    start = (page - 1) * self.page_size
                    entries = self.filtered_validators[start : start + self.page_size]

                    missing = [e for e in entries if self.cache.needs_detail(e.address)]
                    if missing:
                        await run_in_batches(
                            missing,
                            self.config.batches.page,
                            self._hydrate,
                            on_error=self._hydrate_failed,
                            on_batch=self._merge_batch,
                            label="page",
                        )
                    # The projection was rebuilt while fetching; slice it again.
                    if version == self._projection_version:
                        break

                displayed = [self._display_record(e) for e in entries]
                # A newer page request may have landed while this one was fetching.
                if self.current_page == requested:
                    self.current_page = page
                    self.displayed_validators = displayed
                return displayed
            except Exception as e:
                bt.logging.error(f"Fetching page {page} failed:\n{traceback.format_exc()}")
                self.error = str(e)
                return self.get_displayed_page()

    def _display_record(self, entry: FilteredEntry) -> ValidatorRecord:
        record = self.cache.get_or_default(entry.address, points=entry.points, last_era_apy=entry.last_era_apy)
        if record.last_era_apy is None and entry.last_era_apy is not None:
            record = replace(record, last_era_apy=entry.last_era_apy)
        return record

    async def prefetch_validators(self) -> None:
        """Warm the cache with detail for the first uncached filtered validators."""
        to_prefetch = [e for e in self.filtered_validators if self.cache.needs_detail(e.address)]
        to_prefetch = to_prefetch[: self.config.prefetch_size]
        if not to_prefetch:
            return
        bt.logging.info(f"Prefetching {len(to_prefetch)} validators")
        await run_in_batches(
            to_prefetch,
            self.config.batches.prefetch,
            self._hydrate,
            on_error=self._hydrate_failed,
            on_batch=self._merge_batch,
            label="prefetch",
        )

    async def refresh_validator(self, address: str) -> ValidatorRecord:
        """Re-fetch current preferences and stake of one validator."""
        points = next((v.points for v in self.all_validators if v.address == address), 0)
        entry = FilteredEntry(address=address, points=points)
        try:
            update = await self._hydrate(entry)
        except Exception as e:
            update = self._hydrate_failed(entry, e)
        record = self.cache.merge(address, update)
        self._refresh_displayed(address)
        return record

    async def _hydrate(self, entry: FilteredEntry) -> RecordUpdate:
        address = entry.address
        try:
            prefs = await self.client.get_validator_preferences(address)
        except Exception as e:
            raise PartialFetchFailure(address, f"preferences: {e}") from e

        # The stake lookup completed even when the validator has no exposure;
        # absent values leave the cached stake untouched.
        detail_status = FetchStatus.OK
        total_stake: Optional[int] = None
        own_stake: Optional[int] = None
        try:
            overview = await self.client.get_era_stake_overview(self.active_era, address)
            if overview is not None:
                total_stake, own_stake = overview.total, overview.own
        except Exception as e:
            self._warn(SoftWarning(job="page", key=address, era=self.active_era, message=f"stake lookup failed: {e}"))
            detail_status = FetchStatus.FAILED

        era_reward = 0
        if self.current_era_points is not None and self.current_era_reward:
            era_reward = apy_math.validator_era_reward(
                self.current_era_reward, entry.points, self.current_era_points.total
            )

        return RecordUpdate(
            commission=prefs.commission_fraction if prefs is not None else None,
            blocked_nominations=prefs.blocked if prefs is not None else None,
            total_stake=total_stake,
            own_stake=own_stake,
            current_era_points=entry.points,
            current_era_reward=era_reward,
            prefs_status=FetchStatus.OK if prefs is not None else None,
            detail_status=detail_status,
        )

    def _hydrate_failed(self, entry: FilteredEntry, exc: BaseException) -> RecordUpdate:
        self._warn(SoftWarning(job="page", key=entry.address, message=str(exc)))
        return RecordUpdate(current_era_points=entry.points, detail_status=FetchStatus.FAILED)

    # ------------------------------------------------------------------
    # Last-era APY for every validator
    # ------------------------------------------------------------------
    async def compute_last_era_apy_for_all(self) -> None:
        """
        Compute last-era APY for every ranked validator, then re-sort the
        filtered projection by it. Single-flight per session.
        """
        if self.calculating_last_era_apy or self.ledger is None or self.last_era is None:
            return
        self.calculating_last_era_apy = True
        era = self.last_era
        try:
            reward = await self.ledger.reward(era)
            points = await self.ledger.points(era)
            if reward is None or points is None or points.total <= 0:
                self._warn(SoftWarning(job="last_era_apy", key="era", era=era, message="no reward data for last era"))
                return

            async def fetch_one(summary: ValidatorSummary) -> Optional[RecordUpdate]:
                return await self._last_era_apy(summary.address, era, reward, points)

            def on_error(summary: ValidatorSummary, exc: BaseException) -> Optional[RecordUpdate]:
                self._warn(SoftWarning(job="last_era_apy", key=summary.address, era=era, message=str(exc)))
                return None

            await run_in_batches(
                self.all_validators,
                self.config.batches.last_era_apy,
                fetch_one,
                on_error=on_error,
                on_batch=self._merge_batch,
                label="last_era_apy",
            )

            resolved: List[FilteredEntry] = []
            for entry in self.filtered_validators:
                record = self.cache.get(entry.address)
                apy = record.last_era_apy if record is not None and record.last_era_apy is not None else 0.0
                resolved.append(replace(entry, last_era_apy=apy))
            self._set_projection(sort_by_apy(resolved))
            self.last_era_apy_ready = True
            bt.logging.success(f"Last-era APY computed for {len(self.all_validators)} validators (era {era})")
        except Exception as e:
            bt.logging.error(f"Last-era APY calculation failed:\n{traceback.format_exc()}")
            self.error = f"calculation error for apy calcs: {e}"
            return
        finally:
            self.calculating_last_era_apy = False

        await self.fetch_page(self.current_page)

    async def _last_era_apy(
        self, address: str, era: int, reward: int, points: EraRewardPoints
    ) -> Optional[RecordUpdate]:
        record = self.cache.get(address)
        if record is not None and record.last_era_apy is not None:
            return None

        validator_points = points.points_of(address)
        if validator_points <= 0:
            return RecordUpdate(last_era_apy=0.0)

        prefs = await self.client.get_era_validator_preferences(era, address)
        overview = await self.client.get_era_stake_overview(era, address)
        commission = prefs.commission_fraction if prefs is not None else 0.0
        total_stake = overview.total if overview is not None else 0
        apy = apy_math.compute_era_apy(validator_points, points.total, reward, commission, total_stake)
        return RecordUpdate(
            last_era_apy=apy,
            previous_eras_points={era: validator_points},
            previous_eras_rewards={era: apy_math.validator_era_reward(reward, validator_points, points.total)},
            historical_commission={era: commission} if prefs is not None else {},
        )

    # ------------------------------------------------------------------
    # Historical drill-down
    # ------------------------------------------------------------------
    async def select_validator_for_history(self, address: Optional[str]) -> Optional[HistoricalSeries]:
        self.selected_validator = address or None
        if address:
            # Finishes for this address even if the selection moves on meanwhile.
            await self.fetch_historical_performance(address, force_refresh=False)
            await self.compute_historical_apy(address)
        return self.get_historical_series()

    async def set_history_length(self, length: int) -> Optional[HistoricalSeries]:
        self.history_length = min(max(1, int(length)), self.max_history_length)
        self.historical_eras = historical_eras(self.active_era, self.history_length)
        if self.selected_validator:
            await self.fetch_historical_performance(self.selected_validator, force_refresh=True)
            await self.compute_historical_apy(self.selected_validator, force_refresh=True)
        return self.get_historical_series()

    async def fetch_historical_performance(self, address: str, force_refresh: bool = False) -> None:
        """Per-era points, reward share and commission over the history window."""
        if not address or self.ledger is None:
            return
        eras = historical_eras(self.active_era, self.history_length)
        self.historical_eras = eras

        record = self.cache.get(address)
        if not force_refresh and record is not None and record.performance.previous_eras_points.covers(eras):
            bt.logging.debug(f"History for {address} already cached for {len(eras)} eras")
            return

        with self._working("history"):
            try:
                result = await fetch_era_history(
                    self.client, self.ledger, address, eras, batch_size=self.config.batches.history
                )
                self.cache.merge(address, result.update)
                for w in result.warnings:
                    self._warn(w)
                self._refresh_displayed(address)
            except Exception as e:
                bt.logging.error(f"Historical fetch for {address} failed:\n{traceback.format_exc()}")
                self.error = str(e)

    async def compute_historical_apy(self, address: str, force_refresh: bool = False) -> None:
        """Per-era APY over the history window; averages follow from the cache merge."""
        if not address or self.ledger is None:
            return
        eras = historical_eras(self.active_era, self.history_length)
        record = self.cache.get_or_default(address)
        rewards = record.rewards
        if (
            not force_refresh
            and rewards.apy_by_era.covers(eras)
            and not rewards.failed_apy_eras.intersection(eras)
        ):
            return

        with self._working("apy"):
            try:
                result = await compute_era_apys(
                    self.client, self.ledger, record, eras, batch_size=self.config.batches.history_apy
                )
                self.cache.merge(address, result.update)
                for w in result.warnings:
                    self._warn(w)
                self._refresh_displayed(address)
            except Exception as e:
                bt.logging.error(f"APY history for {address} failed:\n{traceback.format_exc()}")
                self.error = f"APY calc error for {address}: {e}"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _merge_batch(self, pairs: Sequence[Tuple[object, Optional[RecordUpdate]]]) -> None:
        for item, update in pairs:
            if update is None:
                continue
            self.cache.merge(getattr(item, "address"), update)

    def _refresh_displayed(self, address: str) -> None:
        entries: Dict[str, FilteredEntry] = {e.address: e for e in self.filtered_validators}
        self.displayed_validators = [
            self._display_record(entries.get(r.address, FilteredEntry(r.address, r.performance.current_era_points)))
            if r.address == address
            else r
            for r in self.displayed_validators
        ]

    def _warn(self, warning: SoftWarning) -> None:
        self.warnings.append(warning)
        era = f" era {warning.era}" if warning.era is not None else ""
        bt.logging.warning(f"[{warning.job}] {warning.key}{era}: {warning.message}")

    def _on_job_error(self, name: str, exc: BaseException) -> None:
        self.error = f"{name} failed: {exc}"

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.client.close()
