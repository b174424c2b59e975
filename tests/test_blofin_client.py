"""Tests for the Blofin REST client (HTTP session mocked)."""

import base64
import hashlib
import hmac
import json
import pytest
from unittest.mock import Mock

import requests

from perptrader.rate_limit import RateLimiter
from perptrader.trading import get_exchange_client
from perptrader.trading.base import ErrorCategory, ExchangeError
from perptrader.trading.blofin import BlofinClient, classify_error


def response(payload=None, status=200, text=""):
    resp = Mock()
    resp.status_code = status
    resp.text = text or json.dumps(payload)
    if payload is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    return resp


def ok(data):
    return response({"code": "0", "msg": "success", "data": data})


@pytest.fixture
def session():
    session = Mock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(session, sleeps):
    return BlofinClient(
        api_key="key",
        api_secret="secret",
        passphrase="pass",
        demo=True,
        trading_limiter=RateLimiter(1000, 1.0, name="trading"),
        general_limiter=RateLimiter(1000, 1.0, name="general"),
        session=session,
        sleep=sleeps.append,
    )


def sent_body(session, call_index=-1):
    return json.loads(session.request.call_args_list[call_index][1]["data"])


class TestClassifyError:
    @pytest.mark.parametrize("code,message,status,expected", [
        (None, "", 429, ErrorCategory.RATE_LIMITED),
        ("102015", "Leverage already set", None, ErrorCategory.ALREADY_SET),
        ("110000", "No need to change margin mode", None, ErrorCategory.ALREADY_SET),
        ("102003", "Insufficient balance", None, ErrorCategory.INSUFFICIENT_FUNDS),
        ("102002", "Price out of range", None, ErrorCategory.REJECTED),
        (None, "", 500, ErrorCategory.UNKNOWN),
    ])
    def test_categories(self, code, message, status, expected):
        assert classify_error(code, message, status) == expected

    @pytest.mark.parametrize("code", ["102015", "110000"])
    def test_already_set_code_without_text(self, code):
        assert classify_error(code, "") == ErrorCategory.ALREADY_SET

    def test_code_decides_over_text(self):
        assert classify_error("102003", "Margin already used up") == ErrorCategory.INSUFFICIENT_FUNDS

    def test_text_fallback_for_unknown_codes(self):
        assert classify_error("109999", "Leverage already set") == ErrorCategory.ALREADY_SET


class TestBlofinClient:
    def test_missing_credentials(self, monkeypatch):
        for name in ("BLOFIN_API_KEY", "BLOFIN_API_SECRET", "BLOFIN_PASSPHRASE"):
            monkeypatch.delenv(name, raising=False)

        with pytest.raises(ValueError):
            BlofinClient(session=Mock(spec=requests.Session, headers={}))

    def test_demo_url(self, client):
        assert client.base_url == BlofinClient.DEMO_URL
        assert client.is_demo

    def test_signed_headers(self, client, session):
        """Test the HMAC signature covers timestamp, method, path, body and nonce."""
        session.request.return_value = ok([{"instId": "BTC-USDT"}])

        client.get_instruments()

        method, url = session.request.call_args[0]
        headers = session.request.call_args[1]["headers"]
        assert method == "GET"
        assert url == f"{BlofinClient.DEMO_URL}/api/v1/market/instruments?instType=SWAP"

        prehash = (
            f"{headers['ACCESS-TIMESTAMP']}GET/api/v1/market/instruments?instType=SWAP{headers['ACCESS-NONCE']}"
        )
        expected = base64.b64encode(hmac.new(b"secret", prehash.encode(), hashlib.sha256).digest()).decode()
        assert headers["ACCESS-SIGN"] == expected
        assert headers["ACCESS-KEY"] == "key"
        assert headers["ACCESS-PASSPHRASE"] == "pass"

    def test_get_instruments(self, client, session):
        session.request.return_value = ok([{"instId": "BTC-USDT"}, {"instId": "FOGO-USDT"}, {}])
        assert client.get_instruments() == ["BTC-USDT", "FOGO-USDT"]

    def test_balance_prefers_usdt(self, client, session):
        session.request.return_value = ok({"details": [
            {"currency": "BTC", "available": "1"},
            {"currency": "USDT", "available": "123.45"},
        ]})
        assert client.get_available_balance() == 123.45

    def test_positions(self, client, session):
        session.request.return_value = ok([
            {"instId": "FOGO-USDT", "positionSide": "short", "positions": "-2000", "averagePrice": "0.03"},
        ])

        [position] = client.get_positions("FOGO-USDT")

        assert position.position_side == "short"
        assert position.positions == -2000
        assert position.is_open

    def test_place_market_order(self, client, session):
        session.request.return_value = ok([{"orderId": "123", "code": "0", "msg": ""}])

        order = client.place_order("FOGO-USDT", "buy", "long", "market", 1667.0, "cross", price=0.03)

        assert order.order_id == "123"
        body = sent_body(session)
        assert body["size"] == "1667"
        assert body["orderType"] == "market"
        assert "price" not in body
        assert body["reduceOnly"] == "false"

    def test_place_limit_order(self, client, session):
        session.request.return_value = ok([{"orderId": "124"}])

        client.place_order("FOGO-USDT", "sell", "short", "limit", 0.0001426, "isolated", price=0.031)

        body = sent_body(session)
        assert body["price"] == "0.031"
        assert body["size"] == "0.0001426"
        assert body["marginMode"] == "isolated"

    def test_place_tpsl(self, client, session):
        session.request.return_value = ok({"tpslId": "tp-9"})

        assert client.place_tpsl("FOGO-USDT", "cross", "long", "sell", 2000, 0.0294, True) == "tp-9"

        body = sent_body(session)
        assert body["slTriggerPrice"] == "0.02940000"
        assert body["slOrderPrice"] == "-1"
        assert body["reduceOnly"] == "true"

    def test_place_algo_order(self, client, session):
        session.request.return_value = ok({"algoId": "al-9"})

        assert client.place_algo_order("FOGO-USDT", "cross", "short", "buy", 2000, 0.0306, False) == "al-9"

        body = sent_body(session)
        assert body["orderType"] == "trigger"
        assert body["triggerPrice"] == "0.03060000"
        assert body["reduceOnly"] == "false"

    def test_get_order(self, client, session):
        session.request.return_value = ok([{
            "orderId": "123", "instId": "FOGO-USDT", "side": "buy", "size": "2000",
            "orderType": "market", "state": "filled", "filledSize": "2000", "averagePrice": "0.0301",
        }])

        order = client.get_order("123")

        assert order.is_filled
        assert order.average_price == 0.0301

    def test_error_code_raises_with_category(self, client, session):
        session.request.return_value = response({
            "code": "1", "msg": "All operations failed",
            "data": [{"code": "102003", "msg": "Insufficient balance"}],
        })

        with pytest.raises(ExchangeError) as exc_info:
            client.place_order("FOGO-USDT", "buy", "long", "market", 1, "cross")

        assert exc_info.value.code == "1"
        assert exc_info.value.category == ErrorCategory.INSUFFICIENT_FUNDS
        assert "Insufficient balance" in str(exc_info.value)
        assert exc_info.value.path == "/api/v1/trade/order"

    def test_already_set(self, client, session):
        session.request.return_value = response({"code": "102015", "msg": "Margin mode is already cross"})

        with pytest.raises(ExchangeError) as exc_info:
            client.set_margin_mode("cross")

        assert exc_info.value.is_already_set

    def test_already_set_by_order_code(self, client, session):
        session.request.return_value = response({
            "code": "1", "msg": "All operations failed", "data": [{"code": "110000", "msg": ""}],
        })

        with pytest.raises(ExchangeError) as exc_info:
            client.set_margin_mode("cross")

        assert exc_info.value.is_already_set

    def test_retries_on_429(self, client, session, sleeps):
        session.request.side_effect = [response(status=429, text="Too Many Requests"), ok({"markPrice": "0.5"})]

        assert client.get_mark_price("FOGO-USDT") == 0.5
        assert sleeps == [1]
        assert session.request.call_count == 2

    def test_429_retries_exhausted(self, client, session, sleeps):
        session.request.return_value = response(status=429, text="Too Many Requests")

        with pytest.raises(ExchangeError) as exc_info:
            client.get_last_price("FOGO-USDT")

        assert exc_info.value.category == ErrorCategory.RATE_LIMITED
        assert sleeps == [1, 2, 4]

    def test_network_error(self, client, session):
        session.request.side_effect = requests.ConnectionError("reset")

        with pytest.raises(ExchangeError) as exc_info:
            client.get_instruments()

        assert exc_info.value.category == ErrorCategory.NETWORK

    def test_non_json_response(self, client, session):
        session.request.return_value = response(status=502, text="Bad Gateway")

        with pytest.raises(ExchangeError) as exc_info:
            client.get_instruments()

        assert exc_info.value.code == "502"


class TestExchangeFactory:
    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            get_exchange_client(backend="alpaca")
