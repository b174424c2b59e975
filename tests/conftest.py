"""Pytest configuration and fixtures for test isolation."""

import pytest
from unittest.mock import Mock

from perptrader.database import create_db_engine, create_session_factory, init_db
from perptrader.engine import SignalEngine
from perptrader.events import OutcomeBus
from perptrader.live_trading_service import TradingService
from perptrader.order_store import OrderStore
from perptrader.preference_store import PreferenceStore
from perptrader.signal_store import SignalStore
from perptrader.trading.base import ExchangeClient, Order


@pytest.fixture
def test_engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
def preference_store(session_factory):
    return PreferenceStore(session_factory)


@pytest.fixture
def signal_store(session_factory):
    return SignalStore(session_factory)


@pytest.fixture
def order_store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def outcomes():
    return OutcomeBus()


@pytest.fixture
def recorded(outcomes):
    """List that collects every outcome emitted on the bus."""
    seen = []
    outcomes.subscribe(seen.append)
    return seen


@pytest.fixture
def mock_client():
    """Exchange client with a healthy account: no positions, plenty of balance."""
    client = Mock(spec=ExchangeClient)
    client.name = "mock"
    client.is_demo = True
    client.get_instruments.return_value = ["BTC-USDT", "ETH-USDT", "PEPE-USDT", "DOGE-USDT"]
    client.get_positions.return_value = []
    client.get_available_balance.return_value = 1000.0
    client.get_mark_price.return_value = 0.5
    client.get_last_price.return_value = 0.5
    client.place_order.return_value = Order(order_id="ord-1", inst_id="DOGE-USDT", side="buy", size=2000, order_type="market", state="live")
    client.place_tpsl.return_value = "tpsl-1"
    client.place_algo_order.return_value = "algo-1"
    client.get_order.return_value = Order(
        order_id="ord-1", inst_id="DOGE-USDT", side="buy", size=2000, order_type="market",
        state="filled", filled_size=2000, average_price=0.5,
    )
    return client


@pytest.fixture
def running_service(mock_client, preference_store, signal_store, order_store, outcomes):
    """TradingService on its own loop thread around an engine with the mock client."""
    engine = SignalEngine(
        mock_client, preference_store, signal_store, order_store,
        outcomes=outcomes, market_fill_poll_delay=0,
    )
    service = TradingService(engine)
    assert service.start(timeout=5)
    yield service
    service.stop()
