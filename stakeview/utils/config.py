from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal

from stakeview.engine.eras import MAX_HISTORY_ERAS
from stakeview.utils.env import _env_bool, _env_csv, _env_float, _env_int, _env_str

ProviderMode = Literal["substrate", "memory"]

DEFAULT_RPC_URL = "wss://rpc.polkadot.io"


@dataclass(frozen=True)
class ChainConfig:
    provider: ProviderMode = "substrate"
    rpc_url: str = DEFAULT_RPC_URL
    timeout_s: float = 15.0


@dataclass(frozen=True)
class BatchConfig:
    page: int = 10
    prefetch: int = 10
    history: int = 5
    history_apy: int = 3
    last_era_apy: int = 25
    filter: int = 50


@dataclass(frozen=True)
class EngineConfig:
    page_size: int = 10
    history_length: int = 20
    prefetch_size: int = 100
    # Ordering hints only; background jobs never start before bootstrap releases them.
    apy_delay_s: float = 1.0
    prefetch_delay_s: float = 2.0
    include_full_commission: bool = False
    include_blocked_nominations: bool = False
    max_warnings: int = 100
    batches: BatchConfig = field(default_factory=BatchConfig)


@dataclass(frozen=True)
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass(frozen=True)
class StakeviewConfig:
    chain: ChainConfig
    engine: EngineConfig
    api: ApiConfig


def _die(msg: str) -> None:
    raise SystemExit(f"[stakeview] {msg}")


def _positive(name: str, value: int) -> int:
    if value < 1:
        _die(f"{name} must be >= 1. Got: {value}")
    return value


def load_chain_env() -> ChainConfig:
    provider_raw = (_env_str("STAKEVIEW_PROVIDER", "substrate") or "substrate").lower()
    if provider_raw not in ("substrate", "memory"):
        _die(f"Invalid STAKEVIEW_PROVIDER={provider_raw!r} (expected 'substrate' or 'memory').")
    provider: ProviderMode = "memory" if provider_raw == "memory" else "substrate"

    rpc_url = _env_str("STAKEVIEW_RPC_URL", DEFAULT_RPC_URL) or DEFAULT_RPC_URL
    if provider == "substrate" and not rpc_url.startswith(("ws://", "wss://", "http://", "https://")):
        _die(f"STAKEVIEW_RPC_URL must be ws(s):// or http(s)://. Got: {rpc_url!r}")

    timeout_s = _env_float("STAKEVIEW_RPC_TIMEOUT_S", 15.0)
    if timeout_s <= 0:
        _die(f"STAKEVIEW_RPC_TIMEOUT_S must be > 0. Got: {timeout_s}")

    return ChainConfig(provider=provider, rpc_url=rpc_url, timeout_s=float(timeout_s))


def load_engine_env() -> EngineConfig:
    """
    Load engine tuning from env/.env with strict validation.

    Batch sizes bound the number of outstanding chain calls per job.
    """
    batches = BatchConfig(
        page=_positive("STAKEVIEW_PAGE_BATCH_SIZE", _env_int("STAKEVIEW_PAGE_BATCH_SIZE", 10)),
        prefetch=_positive("STAKEVIEW_PREFETCH_BATCH_SIZE", _env_int("STAKEVIEW_PREFETCH_BATCH_SIZE", 10)),
        history=_positive("STAKEVIEW_HISTORY_BATCH_SIZE", _env_int("STAKEVIEW_HISTORY_BATCH_SIZE", 5)),
        history_apy=_positive("STAKEVIEW_HISTORY_APY_BATCH_SIZE", _env_int("STAKEVIEW_HISTORY_APY_BATCH_SIZE", 3)),
        last_era_apy=_positive("STAKEVIEW_APY_BATCH_SIZE", _env_int("STAKEVIEW_APY_BATCH_SIZE", 25)),
        filter=_positive("STAKEVIEW_FILTER_BATCH_SIZE", _env_int("STAKEVIEW_FILTER_BATCH_SIZE", 50)),
    )

    page_size = _positive("STAKEVIEW_PAGE_SIZE", _env_int("STAKEVIEW_PAGE_SIZE", 10))
    history_length = _env_int("STAKEVIEW_HISTORY_LENGTH", 20)
    if not 1 <= history_length <= MAX_HISTORY_ERAS:
        _die(f"STAKEVIEW_HISTORY_LENGTH must be within [1, {MAX_HISTORY_ERAS}]. Got: {history_length}")
    prefetch_size = max(0, _env_int("STAKEVIEW_PREFETCH_SIZE", 100))

    apy_delay_s = max(0.0, _env_float("STAKEVIEW_BACKGROUND_DELAY_S", 1.0, test_default=0.0))
    prefetch_delay_s = max(0.0, _env_float("STAKEVIEW_PREFETCH_DELAY_S", 2.0, test_default=0.0))

    return EngineConfig(
        page_size=page_size,
        history_length=history_length,
        prefetch_size=prefetch_size,
        apy_delay_s=apy_delay_s,
        prefetch_delay_s=prefetch_delay_s,
        include_full_commission=_env_bool("STAKEVIEW_INCLUDE_FULL_COMMISSION", False),
        include_blocked_nominations=_env_bool("STAKEVIEW_INCLUDE_BLOCKED_NOMINATIONS", False),
        batches=batches,
    )


def load_api_env() -> ApiConfig:
    port = _env_int("STAKEVIEW_API_PORT", 8000)
    if not 0 < port < 65536:
        _die(f"STAKEVIEW_API_PORT out of range: {port}")
    return ApiConfig(
        host=_env_str("STAKEVIEW_API_HOST", "127.0.0.1") or "127.0.0.1",
        port=port,
        cors_origins=_env_csv("STAKEVIEW_CORS_ORIGINS", "*") or ["*"],
    )


def load_env() -> StakeviewConfig:
    return StakeviewConfig(chain=load_chain_env(), engine=load_engine_env(), api=load_api_env())
