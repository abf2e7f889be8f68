"""Read-only HTTP API over position P&L, aggregates and ledger state."""

from __future__ import annotations

from typing import Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from ..analytics.aggregator import is_valid_timeframe
from ..monitoring.metrics import METRICS
from ..utils.errors import PnLEngineError
from .state import DashboardState


def create_dashboard_app(state: DashboardState) -> FastAPI:
    app = FastAPI(title="DAMM v2 Position P&L", version="0.1.0")
    cfg = state.config.dashboard
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def get_state() -> DashboardState:
        return state

    async def require_auth(
        token_header: Optional[str] = Header(default=None, alias="X-Auth-Token"),
        token_query: Optional[str] = Query(default=None, alias="token"),
        dashboard_state: DashboardState = Depends(get_state),
    ) -> Optional[str]:
        token = token_header or token_query or None
        expected = dashboard_state.config.dashboard.read_only_token
        if expected and token != expected:
            raise HTTPException(status_code=401, detail="Invalid token")
        return token

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics() -> str:
        if not state.config.monitoring.enable_prometheus:
            raise HTTPException(status_code=404, detail="Prometheus export disabled")
        return METRICS.export_prometheus()

    @app.get("/api/positions")
    def api_positions(_: Optional[str] = Depends(require_auth)) -> JSONResponse:
        try:
            return JSONResponse(state.positions())
        except PnLEngineError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/api/closed-positions")
    def api_closed_positions(_: Optional[str] = Depends(require_auth)) -> JSONResponse:
        return JSONResponse(state.closed_positions())

    @app.get("/api/stats")
    def api_stats(_: Optional[str] = Depends(require_auth)) -> JSONResponse:
        try:
            return JSONResponse(state.stats())
        except PnLEngineError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/api/chart")
    def api_chart(
        timeframe: Optional[str] = Query(default=None),
        _: Optional[str] = Depends(require_auth),
    ) -> JSONResponse:
        if timeframe is not None and not is_valid_timeframe(timeframe):
            raise HTTPException(status_code=400, detail=f"Unsupported timeframe: {timeframe}")
        try:
            return JSONResponse(state.chart(timeframe))
        except PnLEngineError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/api/scan-status")
    def api_scan_status(_: Optional[str] = Depends(require_auth)) -> JSONResponse:
        return JSONResponse(state.scan_status())

    @app.get("/api/storage")
    def api_storage(_: Optional[str] = Depends(require_auth)) -> JSONResponse:
        return JSONResponse(state.storage_stats())

    @app.get("/api/metrics")
    def api_metrics(_: Optional[str] = Depends(require_auth)) -> JSONResponse:
        return JSONResponse(state.metrics_snapshot())

    return app


__all__ = ["create_dashboard_app"]
