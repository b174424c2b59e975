"""FastAPI backend for the trading dashboard."""

import logging
from dataclasses import asdict
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .base_store import StoreError
from .events import OutcomeBus
from .live_trading_service import TradingService
from .order_store import OrderStore
from .preference_store import PreferenceStore
from .signal_store import SignalStore
from .trading.base import ExchangeError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8000


# ─────────────────────────────────────────────────────────────────────────────
# Pydantic models for API
# ─────────────────────────────────────────────────────────────────────────────

class PreferencesUpdate(BaseModel):
    order_amount: Optional[float] = None
    order_type: Optional[str] = None
    margin_mode: Optional[str] = None
    leverage: Optional[int] = None
    trailing_stop_variance: Optional[float] = None
    trailing_stop_type: Optional[str] = None
    reduce_only: Optional[bool] = None
    auto_execute: Optional[bool] = None
    confirm_before_order: Optional[bool] = None
    channel_id: Optional[str] = None
    slippage_percent: Optional[float] = None
    leverage_source: Optional[str] = None
    use_dca: Optional[bool] = None
    dca_mode: Optional[str] = None


class TraderRequest(BaseModel):
    name: str


class EmergencyCloseRequest(BaseModel):
    inst_id: str


class ConfirmSignalRequest(BaseModel):
    signal_id: str
    action: str = "confirm"  # "confirm" or "dismiss"


class TraderResponse(BaseModel):
    name: str
    created_at: Optional[str]


# ─────────────────────────────────────────────────────────────────────────────
# App factory
# ─────────────────────────────────────────────────────────────────────────────

def create_app(
    preference_store: PreferenceStore,
    signal_store: SignalStore,
    order_store: OrderStore,
    outcomes: OutcomeBus,
    service: Optional[TradingService] = None,
    allowed_origins: Optional[List[str]] = None,
) -> FastAPI:
    """Build the dashboard API. Without a running service only read routes work."""
    app = FastAPI(title="PerpTrader Dashboard API")

    # CORS for React frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or ["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_service() -> TradingService:
        if service is None or not service.is_running:
            raise HTTPException(status_code=503, detail="Trading service not running")
        return service

    @app.get("/api/preferences")
    def get_preferences():
        return preference_store.get_preferences().to_dict()

    @app.post("/api/preferences")
    def update_preferences(request: PreferencesUpdate):
        updates = {k: v for k, v in request.model_dump().items() if v is not None}
        prefs = preference_store.update_preferences(**updates)
        if prefs is None:
            raise HTTPException(status_code=500, detail="Failed to save preferences")
        return prefs.to_dict()

    @app.get("/api/traders", response_model=List[TraderResponse])
    def list_traders():
        return preference_store.list_traders()

    @app.post("/api/traders")
    def add_trader(request: TraderRequest):
        if not preference_store.add_trader(request.name):
            raise HTTPException(status_code=400, detail=f'Could not add trader "{request.name}"')
        return {"status": "ok", "name": request.name.strip()}

    @app.delete("/api/traders/{name}")
    def remove_trader(name: str):
        if not preference_store.remove_trader(name):
            raise HTTPException(status_code=404, detail=f'Trader "{name}" not found')
        return {"status": "ok"}

    @app.get("/api/signals")
    def get_signals(limit: int = 50):
        return signal_store.get_recent_signals(limit)

    @app.get("/api/signal-edits/{message_id}")
    def get_signal_edits(message_id: str):
        return signal_store.get_signal_edits(message_id)

    @app.get("/api/orders")
    def get_orders(limit: int = 50, status: Optional[str] = None):
        return order_store.get_recent_orders(limit, status)

    @app.get("/api/events")
    def get_events(limit: int = 50, type: Optional[str] = None):
        return [o.to_dict() for o in outcomes.recent(limit, type)]

    @app.get("/api/status")
    def get_status():
        if service is None:
            return {"running": False}
        return service.get_status()

    @app.post("/api/emergency-close")
    def emergency_close(request: EmergencyCloseRequest):
        svc = require_service()
        try:
            svc.run_coroutine(svc.engine.emergency_close(request.inst_id))
        except ExchangeError as e:
            raise HTTPException(status_code=502, detail=f"Emergency close failed: {e}")
        except StoreError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"status": "ok", "inst_id": request.inst_id}

    @app.post("/api/confirm-signal")
    def confirm_signal(request: ConfirmSignalRequest):
        svc = require_service()
        if request.action == "dismiss":
            if not svc.call(svc.engine.dismiss_signal, request.signal_id):
                raise HTTPException(status_code=404, detail="Signal not awaiting confirmation")
            return {"status": "dismissed", "signal_id": request.signal_id}
        if request.action != "confirm":
            raise HTTPException(status_code=400, detail=f"Unknown action: {request.action}")

        result = svc.run_coroutine(svc.engine.confirm_and_execute(request.signal_id), timeout=120.0)
        if result is None:
            raise HTTPException(status_code=404, detail="Signal not awaiting confirmation")
        return asdict(result)

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    return app
