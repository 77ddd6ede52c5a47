import pytest

from stakeview.utils.config import DEFAULT_RPC_URL, load_api_env, load_chain_env, load_engine_env, load_env
from stakeview.utils.env import _env_csv, _env_int


def test_load_env_defaults(monkeypatch):
    for name in (
        "TESTING",
        "STAKEVIEW_PROVIDER",
        "STAKEVIEW_RPC_URL",
        "STAKEVIEW_PAGE_SIZE",
        "STAKEVIEW_HISTORY_LENGTH",
        "STAKEVIEW_BACKGROUND_DELAY_S",
        "STAKEVIEW_CORS_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = load_env()
    assert cfg.chain.provider == "substrate"
    assert cfg.chain.rpc_url == DEFAULT_RPC_URL
    assert cfg.engine.page_size == 10
    assert cfg.engine.history_length == 20
    assert cfg.engine.apy_delay_s == 1.0
    assert cfg.engine.batches.last_era_apy == 25
    assert cfg.engine.batches.filter == 50
    assert cfg.api.cors_origins == ["*"]


def test_memory_provider_and_overrides(monkeypatch):
    monkeypatch.setenv("STAKEVIEW_PROVIDER", "Memory")
    monkeypatch.setenv("STAKEVIEW_PAGE_SIZE", "25")
    monkeypatch.setenv("STAKEVIEW_INCLUDE_BLOCKED_NOMINATIONS", "yes")
    monkeypatch.setenv("STAKEVIEW_CORS_ORIGINS", "http://a.test, http://b.test")

    assert load_chain_env().provider == "memory"
    engine = load_engine_env()
    assert engine.page_size == 25
    assert engine.include_blocked_nominations is True
    assert engine.include_full_commission is False
    assert load_api_env().cors_origins == ["http://a.test", "http://b.test"]


def test_testing_mode_zeroes_background_delays(monkeypatch):
    monkeypatch.setenv("TESTING", "true")
    monkeypatch.delenv("TEST_STAKEVIEW_BACKGROUND_DELAY_S", raising=False)
    monkeypatch.setenv("TEST_STAKEVIEW_PREFETCH_DELAY_S", "0.5")

    engine = load_engine_env()
    assert engine.apy_delay_s == 0.0
    assert engine.prefetch_delay_s == 0.5


@pytest.mark.parametrize(
    "name,value",
    [
        ("STAKEVIEW_PROVIDER", "ethereum"),
        ("STAKEVIEW_RPC_URL", "rpc.polkadot.io"),
        ("STAKEVIEW_RPC_TIMEOUT_S", "0"),
    ],
)
def test_invalid_chain_config_aborts(monkeypatch, name, value):
    monkeypatch.delenv("STAKEVIEW_PROVIDER", raising=False)
    monkeypatch.setenv(name, value)
    with pytest.raises(SystemExit):
        load_chain_env()


@pytest.mark.parametrize(
    "name,value",
    [
        ("STAKEVIEW_HISTORY_LENGTH", "0"),
        ("STAKEVIEW_HISTORY_LENGTH", "85"),
        ("STAKEVIEW_PAGE_SIZE", "0"),
        ("STAKEVIEW_APY_BATCH_SIZE", "0"),
    ],
)
def test_invalid_engine_config_aborts(monkeypatch, name, value):
    monkeypatch.delenv("TESTING", raising=False)
    monkeypatch.setenv(name, value)
    with pytest.raises(SystemExit):
        load_engine_env()


def test_invalid_port_aborts(monkeypatch):
    monkeypatch.setenv("STAKEVIEW_API_PORT", "70000")
    with pytest.raises(SystemExit):
        load_api_env()


def test_env_helpers_follow_testing_overrides(monkeypatch):
    monkeypatch.setenv("STAKEVIEW_PAGE_SIZE", "25")
    monkeypatch.setenv("TEST_STAKEVIEW_PAGE_SIZE", "7")
    monkeypatch.delenv("TESTING", raising=False)
    assert _env_int("STAKEVIEW_PAGE_SIZE", 10) == 25

    monkeypatch.setenv("TESTING", "yes")
    assert _env_int("STAKEVIEW_PAGE_SIZE", 10) == 7
    monkeypatch.delenv("TEST_STAKEVIEW_PAGE_SIZE")
    assert _env_int("STAKEVIEW_PAGE_SIZE", 10, test_default=3) == 3
    assert _env_int("STAKEVIEW_PAGE_SIZE", 10) == 25

    monkeypatch.setenv("STAKEVIEW_CORS_ORIGINS", " http://a , ,http://b ")
    assert _env_csv("STAKEVIEW_CORS_ORIGINS") == ["http://a", "http://b"]
