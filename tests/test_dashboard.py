"""Tests for the dashboard API."""

import pytest
from fastapi.testclient import TestClient

from perptrader import events
from perptrader.dashboard import create_app
from perptrader.database import PreferencesDB
from perptrader.models import ChatMessage
from perptrader.trading.base import ExchangeError


CALL = "LONG SIGNAL - DOGE/USDT\nEntry: 0.5\nLeverage: 20x\nTrader: @alice"


@pytest.fixture
def api(preference_store, signal_store, order_store, outcomes):
    """Dashboard without a trading service (read-only)."""
    return TestClient(create_app(preference_store, signal_store, order_store, outcomes))


@pytest.fixture
def live_api(preference_store, signal_store, order_store, outcomes, running_service):
    return TestClient(create_app(preference_store, signal_store, order_store, outcomes, service=running_service))


class TestPreferencesApi:
    def test_get_defaults(self, api):
        r = api.get("/api/preferences")

        assert r.status_code == 200
        assert r.json()["order_amount"] == 50.0

    def test_partial_update(self, api, preference_store):
        r = api.post("/api/preferences", json={"order_amount": 25, "trailing_stop_type": "algo"})

        assert r.status_code == 200
        assert r.json()["order_amount"] == 25
        prefs = preference_store.get_preferences()
        assert prefs.trailing_stop_type == "algo"
        assert prefs.margin_mode == "cross"

    def test_invalid_type_rejected(self, api):
        assert api.post("/api/preferences", json={"leverage": "lots"}).status_code == 422


class TestTradersApi:
    def test_add_list_remove(self, api):
        assert api.post("/api/traders", json={"name": "alice"}).status_code == 200

        traders = api.get("/api/traders").json()
        assert [t["name"] for t in traders] == ["alice"]
        assert "id" not in traders[0]

        assert api.delete("/api/traders/ALICE").status_code == 200
        assert api.get("/api/traders").json() == []

    def test_duplicate_rejected(self, api):
        api.post("/api/traders", json={"name": "alice"})
        assert api.post("/api/traders", json={"name": "Alice"}).status_code == 400

    def test_remove_unknown(self, api):
        assert api.delete("/api/traders/nobody").status_code == 404


class TestHistoryApi:
    def test_orders_signals_and_events(self, api, outcomes, signal_store):
        signal_store.log_signal_edit("m-1", "TP1 HIT", "active", tp_hits=[1])
        outcomes.emit(events.SIGNAL_REJECTED, reason="Already closed")
        outcomes.emit(events.STOP_FAILED, reason="Trigger price invalid")

        assert api.get("/api/orders").json() == []
        assert api.get("/api/signals").json() == []
        assert api.get("/api/signal-edits/m-1").json()[0]["tp_hits"] == [1]

        recent = api.get("/api/events").json()
        assert [e["type"] for e in recent] == [events.STOP_FAILED, events.SIGNAL_REJECTED]
        assert recent[0]["severity"] == "critical"

        filtered = api.get("/api/events", params={"type": events.SIGNAL_REJECTED}).json()
        assert len(filtered) == 1

    def test_health_and_status_without_service(self, api):
        assert api.get("/api/health").json() == {"status": "ok"}
        assert api.get("/api/status").json() == {"running": False}

    def test_actions_need_service(self, api):
        assert api.post("/api/emergency-close", json={"inst_id": "DOGE-USDT"}).status_code == 503
        assert api.post("/api/confirm-signal", json={"signal_id": "x"}).status_code == 503


class TestOperatorActionsApi:
    def test_status(self, live_api):
        status = live_api.get("/api/status").json()

        assert status["running"] is True
        assert status["instrument_count"] == 4

    def test_emergency_close(self, live_api, mock_client):
        r = live_api.post("/api/emergency-close", json={"inst_id": "DOGE-USDT"})

        assert r.status_code == 200
        mock_client.close_positions.assert_called_once_with("DOGE-USDT", "cross")

    def test_emergency_close_exchange_error(self, live_api, mock_client):
        mock_client.close_positions.side_effect = ExchangeError("No position to close")

        r = live_api.post("/api/emergency-close", json={"inst_id": "DOGE-USDT"})

        assert r.status_code == 502
        assert "No position to close" in r.json()["detail"]

    def test_confirm_signal(self, live_api, running_service, preference_store, mock_client):
        preference_store.update_preferences(confirm_before_order=True)
        running_service.run_coroutine(running_service.engine.process_message(ChatMessage(content=CALL, message_id="m-1")))
        [signal_id] = running_service.engine.awaiting_confirmation

        r = live_api.post("/api/confirm-signal", json={"signal_id": signal_id})

        assert r.status_code == 200
        assert r.json()["status"] == "done"
        assert r.json()["order_id"] == "ord-1"
        mock_client.place_order.assert_called_once()

    def test_dismiss_signal(self, live_api, running_service, preference_store, mock_client):
        preference_store.update_preferences(confirm_before_order=True)
        running_service.run_coroutine(running_service.engine.process_message(ChatMessage(content=CALL, message_id="m-1")))
        [signal_id] = running_service.engine.awaiting_confirmation

        r = live_api.post("/api/confirm-signal", json={"signal_id": signal_id, "action": "dismiss"})

        assert r.json()["status"] == "dismissed"
        assert live_api.post("/api/confirm-signal", json={"signal_id": signal_id}).status_code == 404
        mock_client.place_order.assert_not_called()

    def test_unknown_action(self, live_api):
        r = live_api.post("/api/confirm-signal", json={"signal_id": "x", "action": "maybe"})
        assert r.status_code == 400

    def test_confirm_failure_is_not_a_404(self, live_api, running_service, preference_store, test_engine, mock_client):
        preference_store.update_preferences(confirm_before_order=True)
        running_service.run_coroutine(running_service.engine.process_message(ChatMessage(content=CALL, message_id="m-1")))
        [signal_id] = running_service.engine.awaiting_confirmation
        PreferencesDB.__table__.drop(test_engine)

        r = live_api.post("/api/confirm-signal", json={"signal_id": signal_id})

        assert r.status_code == 200
        assert r.json()["status"] == "failed"
        assert "Preferences unavailable" in r.json()["reason"]
        mock_client.place_order.assert_not_called()

        # Still parked, so the operator can retry once the store is back
        PreferencesDB.__table__.create(test_engine)
        r = live_api.post("/api/confirm-signal", json={"signal_id": signal_id})

        assert r.json()["status"] == "done"

    def test_emergency_close_without_preferences(self, live_api, test_engine, mock_client):
        PreferencesDB.__table__.drop(test_engine)

        r = live_api.post("/api/emergency-close", json={"inst_id": "DOGE-USDT"})

        assert r.status_code == 503
        assert "Preferences unavailable" in r.json()["detail"]
        mock_client.close_positions.assert_not_called()
