"""Blofin perpetual swap REST client."""

import base64
import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from typing import Any, Callable, List, Optional
from urllib.parse import urlencode

import requests

from .base import ExchangeClient, ExchangeError, ErrorCategory, Order, Position
from ..rate_limit import RateLimiter, create_blofin_limiters

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"

# Stop orders execute at market
MARKET_ORDER_PRICE = "-1"


# Blofin codes for settings that already hold the requested value
ALREADY_SET_CODES = frozenset({"102015", "110000"})
INSUFFICIENT_FUNDS_CODES = frozenset({"102003"})


def classify_error(code: Optional[str], message: str, status: Optional[int] = None) -> ErrorCategory:
    """
    Map a failed response onto an ErrorCategory.

    Known Blofin codes decide first; the message text is only consulted for
    codes not in the tables.
    """
    if status == 429:
        return ErrorCategory.RATE_LIMITED
    if code in ALREADY_SET_CODES:
        return ErrorCategory.ALREADY_SET
    if code in INSUFFICIENT_FUNDS_CODES:
        return ErrorCategory.INSUFFICIENT_FUNDS
    text = (message or "").lower()
    if "already" in text or "no need to change" in text or "not modified" in text:
        return ErrorCategory.ALREADY_SET
    if "insufficient" in text:
        return ErrorCategory.INSUFFICIENT_FUNDS
    if code:
        return ErrorCategory.REJECTED
    return ErrorCategory.UNKNOWN


def _first(data: Any) -> Optional[dict]:
    """Blofin returns either a single object or a list of them."""
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


def _to_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _format_size(size: float) -> str:
    return f"{size:.10f}".rstrip("0").rstrip(".")


class BlofinClient(ExchangeClient):
    """Trading client for the Blofin futures API."""

    LIVE_URL = "https://openapi.blofin.com"
    DEMO_URL = "https://demo-trading-openapi.blofin.com"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        passphrase: Optional[str] = None,
        demo: bool = True,
        trading_limiter: Optional[RateLimiter] = None,
        general_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key or os.getenv("BLOFIN_API_KEY")
        self.api_secret = api_secret or os.getenv("BLOFIN_API_SECRET")
        self.passphrase = passphrase or os.getenv("BLOFIN_PASSPHRASE")
        self._demo = demo
        self.base_url = self.DEMO_URL if demo else self.LIVE_URL
        self.timeout = timeout
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

        if trading_limiter is None or general_limiter is None:
            default_trading, default_general = create_blofin_limiters()
            trading_limiter = trading_limiter or default_trading
            general_limiter = general_limiter or default_general
        self._trading_limiter = trading_limiter
        self._general_limiter = general_limiter

        if not self.api_key or not self.api_secret or not self.passphrase:
            raise ValueError(
                "Blofin API credentials not set. "
                "Set BLOFIN_API_KEY, BLOFIN_API_SECRET and BLOFIN_PASSPHRASE in .env"
            )

        logger.info(f"Blofin client initialized ({'DEMO' if demo else 'LIVE'} mode)")

    def _sign(self, method: str, request_path: str, body: str = "") -> dict:
        """Build auth headers: base64(HMAC-SHA256(timestamp + METHOD + path + body + nonce))."""
        timestamp = str(int(time.time() * 1000))
        nonce = uuid.uuid4().hex
        prehash = f"{timestamp}{method.upper()}{request_path}{body}{nonce}"
        digest = hmac.new(self.api_secret.encode(), prehash.encode(), hashlib.sha256).digest()

        return {
            "ACCESS-KEY": self.api_key,
            "ACCESS-SIGN": base64.b64encode(digest).decode(),
            "ACCESS-TIMESTAMP": timestamp,
            "ACCESS-NONCE": nonce,
            "ACCESS-PASSPHRASE": self.passphrase,
        }

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        trading: bool = False,
        max_retries: int = 3,
    ) -> Any:
        """Make a signed API request with retry on rate limit (429). Returns the `data` field."""
        query = urlencode({k: v for k, v in (params or {}).items() if v is not None})
        request_path = f"{path}?{query}" if query else path
        body_str = json.dumps(body) if body is not None else ""
        limiter = self._trading_limiter if trading else self._general_limiter

        for attempt in range(max_retries):
            limiter.acquire()
            headers = self._sign(method, request_path, body_str)

            try:
                response = self._session.request(
                    method,
                    f"{self.base_url}{request_path}",
                    headers=headers,
                    data=body_str or None,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                logger.error(f"Blofin {method} {path} failed: {e}")
                raise ExchangeError(f"{method} {path} failed: {e}", category=ErrorCategory.NETWORK, path=path) from e

            if response.status_code == 429:
                wait_time = 2 ** attempt
                logger.warning(f"Rate limited by Blofin (429), waiting {wait_time}s before retry {attempt + 1}/{max_retries}")
                self._sleep(wait_time)
                continue

            try:
                payload = response.json()
            except ValueError:
                payload = None

            if not isinstance(payload, dict):
                message = f"{response.status_code} Error: {response.text[:200]}"
                logger.error(f"Blofin {method} {path}: {message}")
                raise ExchangeError(
                    message,
                    code=str(response.status_code),
                    category=classify_error(None, response.text, response.status_code),
                    path=path,
                )

            self._check_response(payload, path)
            return payload.get("data")

        logger.error(f"Blofin rate limit: all {max_retries} retries exhausted for {method} {path}")
        raise ExchangeError(
            f"Rate limit retries exhausted for {method} {path}",
            code="429",
            category=ErrorCategory.RATE_LIMITED,
            path=path,
        )

    def _check_response(self, payload: dict, path: str):
        code = str(payload.get("code", ""))
        if code == SUCCESS_CODE:
            return
        message = payload.get("msg", "")
        # Order endpoints report per-order failures inside data
        item = _first(payload.get("data")) or {}
        if item.get("msg"):
            message = f"{message} {item['msg']}".strip()
        detail_code = str(item.get("code") or "") or code
        raise ExchangeError(
            f"Blofin API error on {path}: [{code}] {message}",
            code=code,
            category=classify_error(detail_code, message),
            path=path,
        )

    @property
    def name(self) -> str:
        return "Blofin"

    @property
    def is_demo(self) -> bool:
        return self._demo

    # Account

    def get_available_balance(self) -> float:
        data = _first(self._request("GET", "/api/v1/account/balance")) or {}
        details = data.get("details") or []
        usdt = next((d for d in details if d.get("currency") == "USDT"), None)
        detail = usdt or (details[0] if details else {})
        return _to_float(detail.get("available")) or 0.0

    def get_positions(self, inst_id: Optional[str] = None) -> List[Position]:
        data = self._request("GET", "/api/v1/account/positions", params={"instId": inst_id}, trading=True) or []
        positions = []
        for item in data:
            positions.append(Position(
                inst_id=item.get("instId", ""),
                position_side=item.get("positionSide", "net"),
                positions=_to_float(item.get("positions")) or 0.0,
                average_price=_to_float(item.get("averagePrice")),
                unrealized_pnl=_to_float(item.get("unrealizedPnl")),
                margin_mode=item.get("marginMode"),
            ))
        return positions

    def set_margin_mode(self, margin_mode: str) -> None:
        self._request("POST", "/api/v1/account/set-margin-mode", body={"marginMode": margin_mode})

    def set_leverage(self, inst_id: str, leverage: int, margin_mode: str, position_side: str) -> None:
        self._request("POST", "/api/v1/account/set-leverage", body={
            "instId": inst_id,
            "leverage": str(leverage),
            "marginMode": margin_mode,
            "positionSide": position_side,
        })

    # Market data

    def get_instruments(self) -> List[str]:
        data = self._request("GET", "/api/v1/market/instruments", params={"instType": "SWAP"}) or []
        return [item["instId"] for item in data if item.get("instId")]

    def get_mark_price(self, inst_id: str) -> Optional[float]:
        data = _first(self._request("GET", "/api/v1/market/mark-price", params={"instId": inst_id}))
        return _to_float(data.get("markPrice")) if data else None

    def get_last_price(self, inst_id: str) -> Optional[float]:
        data = _first(self._request("GET", "/api/v1/market/tickers", params={"instId": inst_id}))
        return _to_float(data.get("last")) if data else None

    # Trading

    def place_order(
        self,
        inst_id: str,
        side: str,
        position_side: str,
        order_type: str,
        size: float,
        margin_mode: str,
        price: Optional[float] = None,
        reduce_only: bool = False,
    ) -> Order:
        body = {
            "instId": inst_id,
            "marginMode": margin_mode,
            "positionSide": position_side,
            "side": side,
            "orderType": order_type,
            "size": _format_size(size),
            "reduceOnly": "true" if reduce_only else "false",
        }
        if price and order_type != "market":
            body["price"] = str(price)

        logger.info(f"[{inst_id}] Placing {order_type} {side} order: size={body['size']} price={body.get('price', 'market')}")
        data = _first(self._request("POST", "/api/v1/trade/order", body=body, trading=True)) or {}

        return Order(
            order_id=data.get("orderId") or None,
            inst_id=inst_id,
            side=side,
            size=size,
            order_type=order_type,
            state="live",
            price=price if order_type != "market" else None,
        )

    def place_tpsl(
        self,
        inst_id: str,
        margin_mode: str,
        position_side: str,
        side: str,
        size: float,
        sl_trigger_price: float,
        reduce_only: bool = True,
    ) -> Optional[str]:
        body = {
            "instId": inst_id,
            "marginMode": margin_mode,
            "positionSide": position_side,
            "side": side,
            "size": _format_size(size),
            "slTriggerPrice": f"{sl_trigger_price:.8f}",
            "slOrderPrice": MARKET_ORDER_PRICE,
            "reduceOnly": "true" if reduce_only else "false",
        }
        logger.info(f"[{inst_id}] Placing TP/SL: SL trigger {body['slTriggerPrice']}")
        data = _first(self._request("POST", "/api/v1/trade/order-tpsl", body=body, trading=True)) or {}
        return data.get("tpslId")

    def place_algo_order(
        self,
        inst_id: str,
        margin_mode: str,
        position_side: str,
        side: str,
        size: float,
        trigger_price: float,
        reduce_only: bool = True,
    ) -> Optional[str]:
        body = {
            "instId": inst_id,
            "marginMode": margin_mode,
            "positionSide": position_side,
            "side": side,
            "size": _format_size(size),
            "orderType": "trigger",
            "triggerPrice": f"{trigger_price:.8f}",
            "triggerPriceType": "last",
            "orderPrice": MARKET_ORDER_PRICE,
            "reduceOnly": "true" if reduce_only else "false",
        }
        logger.info(f"[{inst_id}] Placing algo stop: trigger {body['triggerPrice']}")
        data = _first(self._request("POST", "/api/v1/trade/order-algo", body=body, trading=True)) or {}
        return data.get("algoId")

    def get_order(self, order_id: str) -> Optional[Order]:
        data = _first(self._request("GET", "/api/v1/trade/order", params={"orderId": order_id}, trading=True))
        if not data:
            return None
        return Order(
            order_id=data.get("orderId", order_id),
            inst_id=data.get("instId", ""),
            side=data.get("side", ""),
            size=_to_float(data.get("size")) or 0.0,
            order_type=data.get("orderType", ""),
            state=data.get("state", ""),
            price=_to_float(data.get("price")),
            filled_size=_to_float(data.get("filledSize")),
            average_price=_to_float(data.get("averagePrice")),
        )

    def close_positions(self, inst_id: str, margin_mode: str) -> None:
        logger.warning(f"[{inst_id}] Closing all positions ({margin_mode})")
        self._request("POST", "/api/v1/trade/close-position", body={
            "instId": inst_id,
            "marginMode": margin_mode,
        }, trading=True)
