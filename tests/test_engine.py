import asyncio

import pytest

from stakeview.chain.memory import InMemoryChainClient
from stakeview.chain.schemas import EraRewardPoints, StakeOverview, ValidatorPrefs
from stakeview.core.models import FetchStatus
from stakeview.engine.aggregator import ValidatorDataEngine
from stakeview.utils.config import BatchConfig, EngineConfig


def test_bootstrap_ranks_filters_and_renders_first_page(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        ok = await engine.bootstrap()
        page = [r.address for r in engine.get_displayed_page()]
        snap = engine.snapshot()
        await engine.close()
        return ok, page, snap

    ok, page, snap = asyncio.run(run())

    assert ok is True
    assert snap.active_era == 10 and snap.last_era == 9
    assert snap.all_validators == 25
    # v03 (100% commission) and v05 (blocked) are filtered out
    assert snap.total_validators == 23
    assert snap.total_pages == 3
    assert page == ["v00", "v01", "v02", "v04", "v06", "v07", "v08", "v09", "v10", "v11"]
    assert snap.error is None
    assert snap.loading is False


def test_last_era_apy_job_resorts_projection(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        return engine

    engine = asyncio.run(run())

    assert engine.last_era_apy_ready is True
    assert engine.calculating_last_era_apy is False
    apys = [e.last_era_apy for e in engine.filtered_validators]
    assert all(a is not None for a in apys)
    assert apys == sorted(apys, reverse=True)
    # Stake grows faster than points, so the lowest-ranked validator yields the most.
    assert engine.filtered_validators[0].address == "v24"
    assert engine.current_page == 1
    assert engine.get_displayed_page()[0].address == "v24"
    assert engine.get_displayed_page()[0].last_era_apy == pytest.approx(engine.filtered_validators[0].last_era_apy)


def test_pagination_clamps_and_page_size_resets(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        last = await engine.set_page(3)
        out_of_range = await engine.set_page(99)
        page_after_clamp = engine.current_page
        await engine.set_page(2)
        await engine.set_page_size(5)
        await engine.close()
        return engine, last, out_of_range, page_after_clamp

    engine, last, out_of_range, page_after_clamp = asyncio.run(run())

    assert len(last) == 3
    assert [r.address for r in out_of_range] == [r.address for r in last]
    assert page_after_clamp == 3
    assert engine.current_page == 1
    assert engine.get_total_pages() == 5
    assert len(engine.get_displayed_page()) == 5


def test_displayed_rows_are_hydrated(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.close()
        return engine

    engine = asyncio.run(run())
    top = engine.get_displayed_page()[0]

    assert top.address == "v00"
    assert top.detail_status is FetchStatus.OK
    assert top.commission == pytest.approx(0.1)
    assert top.total_stake == 25**2 * 10**12
    assert top.own_stake == top.total_stake // 10
    assert top.performance.current_era_points == 2500
    # No payout is recorded for the active era yet.
    assert top.rewards.current_era_reward == 0


def test_filter_toggle_resets_to_first_page(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        await engine.set_page(2)
        await engine.set_filter(include_full_commission=True)
        with_full = (engine.current_page, engine.total_validators)
        await engine.set_filter(include_blocked_nominations=True)
        everything = engine.total_validators
        await engine.set_filter(include_full_commission=False, include_blocked_nominations=False)
        await engine.close()
        return engine, with_full, everything

    engine, with_full, everything = asyncio.run(run())

    assert with_full == (1, 24)
    assert everything == 25
    assert engine.total_validators == 23
    assert all(engine.cache.get(f"v{i:02d}").prefs_status is FetchStatus.OK for i in range(25))


def test_history_selection_and_length(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        series = await engine.select_validator_for_history("v00")
        shorter = await engine.set_history_length(3)
        longest = await engine.set_history_length(500)
        cleared = await engine.select_validator_for_history(None)
        await engine.close()
        return engine, series, shorter, longest, cleared

    engine, series, shorter, longest, cleared = asyncio.run(run())

    assert series.eras == (9, 8, 7, 6, 5)
    assert all(p == 2500 for p in series.points)
    assert all(a is not None and a > 0 for a in series.apy)
    assert series.average_apy == pytest.approx(series.apy[0])

    assert shorter.eras == (9, 8, 7)
    # max history is bounded by the active era index
    assert engine.history_length == 10
    assert longest.eras == tuple(range(9, -1, -1))
    assert cleared is None
    assert engine.selected_validator is None

    record = engine.cache.get("v00")
    assert record.performance.previous_eras_points.covers(range(0, 10))


def test_cached_history_is_not_refetched(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        await engine.select_validator_for_history("v01")
        calls = client.calls["get_era_validator_preferences"]
        await engine.select_validator_for_history("v01")
        await engine.close()
        return calls, client.calls["get_era_validator_preferences"]

    before, after = asyncio.run(run())
    assert before == after


def test_bootstrap_failure_sets_error(chain_factory, engine_config):
    client = chain_factory(active_era=None)

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        ok = await engine.bootstrap()
        await engine.close()
        return ok, engine

    ok, engine = asyncio.run(run())
    assert ok is False
    assert "active era" in engine.error
    assert engine.get_displayed_page() == []
    assert engine.get_total_pages() == 0
    engine.clear_error()
    assert engine.error is None


def test_partial_failures_become_warnings(chain_factory, engine_config):
    client = chain_factory()
    client.fail("get_validator_preferences", "v01")
    client.fail("get_era_stake_overview", (10, "v02"))

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        ok = await engine.bootstrap()
        await engine.close()
        return ok, engine

    ok, engine = asyncio.run(run())
    assert ok is True
    assert engine.error is None

    rows = {r.address: r for r in engine.get_displayed_page()}
    # Unknown preferences do not exclude a validator.
    assert "v01" in rows
    assert rows["v01"].detail_status is FetchStatus.FAILED
    assert rows["v01"].performance.current_era_points == 2400

    assert rows["v02"].detail_status is FetchStatus.FAILED
    assert rows["v02"].commission == pytest.approx(0.1)
    assert rows["v02"].total_stake == 0

    keys = {w.key for w in engine.warnings}
    assert {"v01", "v02"} <= keys


def test_prefetch_warms_cache(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config(prefetch_size=15))
        await engine.bootstrap()
        await engine.scheduler.drain()
        await engine.close()
        return engine

    engine = asyncio.run(run())
    hydrated = [a for a in engine.cache if not engine.cache.needs_detail(a)]
    # first page (10) plus 15 prefetched, capped by the 23 filtered entries
    assert len(hydrated) == 23


def test_refresh_validator_refetches_detail(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        client.stakes[(10, "v00")] = client.stakes[(10, "v00")].model_copy(update={"total": 123})
        await engine.refresh_validator("v00")
        await engine.close()
        return engine

    engine = asyncio.run(run())
    assert engine.cache.get("v00").total_stake == 123


def test_end_to_end_last_era_apy():
    client = InMemoryChainClient(
        active_era=100,
        validators=["A", "B"],
        era_rewards={99: 10**12},
        era_points={
            99: EraRewardPoints(total=400, individual=[("A", 100), ("B", 300)]),
            100: EraRewardPoints(total=400, individual=[("A", 100), ("B", 300)]),
        },
        prefs={"A": ValidatorPrefs(commission=100_000_000), "B": ValidatorPrefs(commission=100_000_000)},
        era_prefs={(99, "A"): ValidatorPrefs(commission=100_000_000)},
        stakes={(99, "A"): StakeOverview(total=500_000_000_000, own=0)},
    )

    async def run():
        engine = ValidatorDataEngine(client, EngineConfig(apy_delay_s=0.0, prefetch_delay_s=0.0))
        await engine.bootstrap()
        await engine.scheduler.drain()
        await engine.close()
        return engine

    engine = asyncio.run(run())
    record = engine.cache.get("A")
    assert record.last_era_apy == pytest.approx(16_436.25)
    assert record.rewards.previous_eras_rewards[99] == 250_000_000_000
    # B has no stake overview for era 99, so its APY is 0 by policy.
    assert engine.cache.get("B").last_era_apy == 0.0
    assert [e.address for e in engine.filtered_validators] == ["A", "B"]


def test_twenty_five_validators_ten_per_page(chain_factory, engine_config):
    client = chain_factory(full_commission=(), blocked=())

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        last = await engine.set_page(3)
        await engine.close()
        return engine, last

    engine, last = asyncio.run(run())
    assert engine.total_validators == 25
    assert engine.get_total_pages() == 3
    assert len(last) == 5


def test_overlapping_filter_changes_keep_the_latest(chain_factory, engine_config):
    client = chain_factory(latency_s=0.02)

    async def run():
        config = engine_config(include_full_commission=True, include_blocked_nominations=True, prefetch_size=0)
        engine = ValidatorDataEngine(client, config)
        await engine.bootstrap()
        await engine.scheduler.drain()
        # The first change waits on preference lookups; the second needs none.
        await asyncio.gather(
            engine.set_filter(include_blocked_nominations=False),
            engine.set_filter(include_blocked_nominations=True),
        )
        await engine.close()
        return engine

    engine = asyncio.run(run())
    assert engine.filter_state.is_passthrough()
    assert engine.total_validators == 25
    assert engine.current_page == 1
    assert engine.loading_page is False
    # The superseded lookups still land in the cache.
    assert engine.cache.get("v12").prefs_status is FetchStatus.OK


def test_failed_filter_rebuild_keeps_previous_projection(chain_factory, engine_config, monkeypatch):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        before = list(engine.filtered_validators)

        def broken(state):
            raise RuntimeError("projection exploded")

        monkeypatch.setattr(engine, "_build_projection", broken)
        await engine.set_filter(include_full_commission=True)
        await engine.close()
        return engine, before

    engine, before = asyncio.run(run())
    assert engine.filtered_validators == before
    assert engine.total_validators == 23
    assert "projection exploded" in engine.error
    assert engine.loading_page is False


def test_absent_chain_data_keeps_cached_values(chain_factory, engine_config):
    client = chain_factory()

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()
        del client.prefs["v00"]
        del client.stakes[(10, "v00")]
        record = await engine.refresh_validator("v00")
        await engine.close()
        return engine, record

    engine, record = asyncio.run(run())
    assert record.commission == pytest.approx(0.1)
    assert record.total_stake == 625 * 10**12
    assert record.own_stake == 625 * 10**11
    assert record.prefs_status is FetchStatus.OK
    assert record.detail_status is FetchStatus.OK
    assert engine.cache.get("v00").total_stake == 625 * 10**12


def test_history_selection_moves_on_while_fetching(chain_factory, engine_config):
    client = chain_factory(latency_s=0.01)

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        await engine.bootstrap()
        await engine.scheduler.drain()

        first = asyncio.ensure_future(engine.select_validator_for_history("v00"))
        await asyncio.sleep(0.005)
        busy = engine.loading_historical_data
        second = await engine.select_validator_for_history("v01")
        await first
        series = engine.get_historical_series()
        snap = engine.snapshot()
        await engine.close()
        return engine, busy, second, series, snap

    engine, busy, second, series, snap = asyncio.run(run())
    assert busy is True
    assert engine.selected_validator == "v01"
    assert second.address == "v01"
    assert series.address == "v01"
    assert series.eras == (9, 8, 7, 6, 5)
    # The earlier selection still finished filling the cache.
    earlier = engine.cache.get("v00")
    assert earlier.performance.previous_eras_points.covers(range(5, 10))
    assert earlier.rewards.apy_by_era.covers(range(5, 10))
    assert snap.loading_historical_data is False
    assert snap.loading_apy is False


def test_filter_and_page_changes_during_last_era_apy_job(chain_factory, engine_config):
    client = chain_factory(latency_s=0.01)

    async def run():
        config = engine_config(batches=BatchConfig(last_era_apy=5))
        engine = ValidatorDataEngine(client, config)
        await engine.bootstrap()
        # The job runs in five rounds; both changes land before it re-sorts.
        await asyncio.gather(
            engine.scheduler.drain(),
            engine.set_filter(include_full_commission=True),
            engine.set_page(2),
        )
        await engine.scheduler.drain()
        await engine.close()
        return engine

    engine = asyncio.run(run())
    addresses = [e.address for e in engine.filtered_validators]
    assert engine.filter_state.include_full_commission is True
    assert engine.total_validators == 24
    assert "v03" in addresses and "v05" not in addresses
    assert engine.last_era_apy_ready is True
    apys = [e.last_era_apy for e in engine.filtered_validators]
    assert apys == sorted(apys, reverse=True)

    page = engine.current_page
    expected = addresses[(page - 1) * engine.page_size : page * engine.page_size]
    assert [r.address for r in engine.get_displayed_page()] == expected
    assert engine.loading_page is False


def test_bootstrap_at_era_zero_has_no_last_era(chain_factory, engine_config):
    client = chain_factory(active_era=0)

    async def run():
        engine = ValidatorDataEngine(client, engine_config())
        ok = await engine.bootstrap()
        await engine.scheduler.drain()
        series_length = await engine.set_history_length(5)
        await engine.close()
        return ok, engine, series_length

    ok, engine, _ = asyncio.run(run())
    assert ok is True
    assert engine.last_era is None
    assert engine.max_history_length == 0
    assert engine.history_length == 0
    assert engine.historical_eras == []
    assert engine.error is None
    assert engine.last_era_apy_ready is False
    assert engine.snapshot().last_era is None
    # Nothing was looked up for a completed era.
    assert client.calls["get_era_validator_preferences"] == 0
