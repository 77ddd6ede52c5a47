"""
HTTP read surface over one :class:`ValidatorDataEngine` session.

Reads return the engine's current projection; mutations await the engine
operation and return the refreshed view.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

import bittensor as bt
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from stakeview import __version__
from stakeview.api.schemas import (
    FilterRequest,
    HistoryLengthRequest,
    HistoryResponse,
    HistorySelectRequest,
    PageRequest,
    PageResponse,
    PageSizeRequest,
    StateResponse,
    ValidatorRow,
)
from stakeview.engine.aggregator import ValidatorDataEngine


def _page(engine: ValidatorDataEngine) -> PageResponse:
    return PageResponse(
        page=engine.current_page,
        page_size=engine.page_size,
        total_pages=engine.get_total_pages(),
        total_validators=engine.total_validators,
        validators=[ValidatorRow.from_record(r) for r in engine.get_displayed_page()],
    )


def create_app(engine: ValidatorDataEngine, *, cors_origins: Optional[List[str]] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        ok = await engine.bootstrap()
        if not ok:
            bt.logging.error(f"Dashboard started without data: {engine.error}")
        try:
            yield
        finally:
            await engine.close()

    app = FastAPI(title="stakeview", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine

    @app.get("/healthz")
    def healthz():
        return {"ok": engine.error is None, "active_era": engine.active_era, "cached": len(engine.cache)}

    @app.get("/state", response_model=StateResponse)
    def state():
        return StateResponse.from_snapshot(engine.snapshot())

    @app.delete("/state/error")
    def clear_error():
        engine.clear_error()
        return {"ok": True}

    @app.get("/validators", response_model=PageResponse)
    def validators():
        return _page(engine)

    @app.post("/validators/page", response_model=PageResponse)
    async def set_page(req: PageRequest):
        await engine.set_page(req.page)
        return _page(engine)

    @app.post("/validators/page-size", response_model=PageResponse)
    async def set_page_size(req: PageSizeRequest):
        await engine.set_page_size(req.page_size)
        return _page(engine)

    @app.post("/filters", response_model=PageResponse)
    async def set_filter(req: FilterRequest):
        await engine.set_filter(
            include_full_commission=req.include_full_commission,
            include_blocked_nominations=req.include_blocked_nominations,
        )
        return _page(engine)

    @app.get("/history", response_model=HistoryResponse)
    def history():
        series = engine.get_historical_series()
        if series is None:
            raise HTTPException(status_code=404, detail="No validator selected")
        return HistoryResponse.from_series(series)

    @app.post("/history/select")
    async def select_history(req: HistorySelectRequest):
        series = await engine.select_validator_for_history(req.address)
        if series is None:
            return {"ok": True, "selected": None}
        return HistoryResponse.from_series(series)

    @app.post("/history/length")
    async def set_history_length(req: HistoryLengthRequest):
        series = await engine.set_history_length(req.length)
        if series is None:
            return {"ok": True, "history_length": engine.history_length}
        return HistoryResponse.from_series(series)

    return app
