import pytest

from stakeview.core.cache import ValidatorCache
from stakeview.core.models import EraMap, FetchStatus, RecordUpdate


def test_default_record_is_not_stored():
    cache = ValidatorCache()
    rec = cache.get_or_default("A", points=40, last_era_apy=3.5)

    assert rec.performance.current_era_points == 40
    assert rec.last_era_apy == 3.5
    assert rec.detail_status is FetchStatus.UNKNOWN
    assert "A" not in cache
    assert cache.needs_detail("A")


def test_failed_fetch_never_overwrites_known_values():
    cache = ValidatorCache()
    cache.merge(
        "A",
        RecordUpdate(
            commission=0.05,
            blocked_nominations=False,
            total_stake=1_000,
            own_stake=100,
            prefs_status=FetchStatus.OK,
            detail_status=FetchStatus.OK,
        ),
    )
    rec = cache.merge("A", RecordUpdate(current_era_points=7, detail_status=FetchStatus.FAILED))

    assert rec.commission == 0.05
    assert rec.total_stake == 1_000
    assert rec.performance.current_era_points == 7
    assert rec.detail_status is FetchStatus.OK
    assert not cache.needs_detail("A")


def test_era_maps_union_and_averages_follow_merge():
    cache = ValidatorCache()
    cache.merge("A", RecordUpdate(previous_eras_points={9: 100, 8: 300}, historical_commission={9: 0.1}))
    rec = cache.merge("A", RecordUpdate(previous_eras_points={7: 200}, historical_commission={8: 0.0}))

    assert list(rec.performance.previous_eras_points) == [9, 8, 7]
    assert rec.performance.average_points == pytest.approx(200.0)
    assert rec.average_commission == pytest.approx(0.05)


def test_last_era_apy_survives_detail_merge():
    cache = ValidatorCache()
    cache.merge("A", RecordUpdate(last_era_apy=14.2))
    rec = cache.merge("A", RecordUpdate(commission=0.1, detail_status=FetchStatus.OK))
    assert rec.last_era_apy == 14.2


def test_failed_apy_era_fills_gap_but_never_overwrites_computed_value():
    cache = ValidatorCache()
    cache.merge("A", RecordUpdate(apy_by_era={9: 12.0}))
    rec = cache.merge("A", RecordUpdate(apy_by_era={8: 10.0}, failed_apy_eras=frozenset({9, 7})))

    assert rec.rewards.apy_by_era == {9: 12.0, 8: 10.0, 7: 0.0}
    assert rec.rewards.failed_apy_eras == frozenset({7})
    assert rec.rewards.average_apy == pytest.approx(22.0 / 3)
    assert rec.rewards.active_only_average_apy == pytest.approx(11.0)

    # A later successful computation clears the failure flag.
    rec = cache.merge("A", RecordUpdate(apy_by_era={7: 8.0}))
    assert rec.rewards.apy_by_era[7] == 8.0
    assert rec.rewards.failed_apy_eras == frozenset()


def test_era_map_distinguishes_missing_from_zero():
    m = EraMap({3: 0, 5: 10})
    assert list(m) == [5, 3]
    assert m.get(3) == 0
    assert m.get(4) is None
    assert m.covers([5, 3])
    assert not m.covers([5, 4])
    with pytest.raises(ValueError):
        EraMap({-1: 0})
