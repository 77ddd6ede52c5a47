from __future__ import annotations

import sys
from pathlib import Path

# Allow running as a script without requiring `PYTHONPATH=.`.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import argparse

import bittensor as bt
import uvicorn

from stakeview.api.app import create_app
from stakeview.chain.client import ChainQueryClient
from stakeview.chain.memory import build_demo_chain
from stakeview.chain.substrate import SubstrateChainClient
from stakeview.engine.aggregator import ValidatorDataEngine
from stakeview.utils.config import ChainConfig, load_env


def _config() -> bt.config:
    parser = argparse.ArgumentParser(description="Serve the validator staking dashboard API.")
    parser.add_argument("--host", type=str, default=None, help="Overrides STAKEVIEW_API_HOST.")
    parser.add_argument("--port", type=int, default=None, help="Overrides STAKEVIEW_API_PORT.")
    bt.logging.add_args(parser)
    # bittensor exposes `bt.config(parser)` in newer versions, and `bt.Config(parser=...)` in older.
    try:
        return bt.config(parser)
    except Exception:
        return bt.Config(parser=parser)


def _make_client(chain: ChainConfig) -> ChainQueryClient:
    if chain.provider == "memory":
        bt.logging.info("Using the in-memory demo chain")
        return build_demo_chain()
    bt.logging.info(f"Connecting to {chain.rpc_url}")
    return SubstrateChainClient(chain.rpc_url, timeout_s=chain.timeout_s)


def main() -> int:
    config = _config()
    bt.logging(config=config)

    cfg = load_env()
    engine = ValidatorDataEngine(_make_client(cfg.chain), cfg.engine)
    app = create_app(engine, cors_origins=cfg.api.cors_origins)

    host = config.host or cfg.api.host
    port = config.port or cfg.api.port
    bt.logging.info(f"Serving stakeview on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
