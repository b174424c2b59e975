"""Blofin private WebSocket streaming for order updates."""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import os
import threading
import time
import uuid
from typing import Callable, Optional

import websockets

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 25
INITIAL_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0
AUTH_TIMEOUT_SECONDS = 10


def _to_float(value) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class BlofinOrderStream:
    """WebSocket client for Blofin order updates (fills, cancellations, etc.)."""

    LIVE_URL = "wss://openapi.blofin.com/ws/private"
    DEMO_URL = "wss://demo-trading-openapi.blofin.com/ws/private"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        passphrase: Optional[str] = None,
        demo: bool = True,
        on_fill: Optional[Callable] = None,
        on_order: Optional[Callable] = None,
    ):
        self.api_key = api_key or os.getenv("BLOFIN_API_KEY")
        self.api_secret = api_secret or os.getenv("BLOFIN_API_SECRET")
        self.passphrase = passphrase or os.getenv("BLOFIN_PASSPHRASE")
        self.demo = demo
        self.ws_url = self.DEMO_URL if demo else self.LIVE_URL

        # Callbacks (invoked on the stream thread)
        self.on_fill = on_fill
        self.on_order = on_order

        # State
        self._ws = None
        self._loop = None
        self._thread = None
        self._running = False
        self._authenticated = False
        self._reconnect_delay = INITIAL_RECONNECT_DELAY

    def start(self):
        """Start the WebSocket connection in a background thread."""
        if self._running:
            logger.warning("Blofin order stream already running")
            return

        self._running = True
        self._thread = threading.Thread(target=self._run_async_loop, daemon=True, name="BlofinOrderStream")
        self._thread.start()
        logger.info(f"Blofin order stream started (demo={self.demo})")

    def stop(self):
        """Stop the WebSocket connection."""
        self._running = False
        if self._loop and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Blofin order stream stopped")

    @property
    def is_connected(self) -> bool:
        return self._running and self._authenticated

    def _run_async_loop(self):
        """Run the async event loop in a background thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._connect_and_listen())
        except RuntimeError as e:
            # Raised when stop() halts the loop mid-run
            logger.debug(f"Blofin stream loop ended: {e}")
        except Exception as e:
            logger.error(f"Blofin stream error: {e}")
        finally:
            self._loop.close()

    async def _connect_and_listen(self):
        """Connect, log in, subscribe to orders and listen until stopped."""
        while self._running:
            heartbeat = None
            try:
                async with websockets.connect(self.ws_url) as ws:
                    self._ws = ws
                    logger.info(f"Connected to Blofin stream: {self.ws_url}")

                    await self._authenticate(ws)
                    await self._subscribe(ws)
                    self._reconnect_delay = INITIAL_RECONNECT_DELAY
                    heartbeat = asyncio.create_task(self._heartbeat(ws))

                    async for message in ws:
                        if not self._running:
                            break
                        self._handle_message(message)

            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(f"Blofin stream connection closed: {e}")
            except Exception as e:
                logger.error(f"Blofin stream error: {e}")
            finally:
                self._authenticated = False
                if heartbeat:
                    heartbeat.cancel()

            if self._running:
                logger.info(f"Reconnecting in {self._reconnect_delay:.0f} seconds...")
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, MAX_RECONNECT_DELAY)

    def _login_message(self) -> dict:
        timestamp = str(int(time.time()))
        nonce = uuid.uuid4().hex
        prehash = f"{timestamp}GET/users/self/verify{nonce}"
        sign = base64.b64encode(
            hmac.new(self.api_secret.encode(), prehash.encode(), hashlib.sha256).digest()
        ).decode()
        return {
            "op": "login",
            "args": [{
                "apiKey": self.api_key,
                "passphrase": self.passphrase,
                "timestamp": timestamp,
                "sign": sign,
                "nonce": nonce,
            }],
        }

    async def _authenticate(self, ws):
        """Send login and wait for its acknowledgement."""
        await ws.send(json.dumps(self._login_message()))
        logger.debug("Sent login message")

        async def wait_for_login():
            while True:
                data = json.loads(await ws.recv())
                if data.get("event") == "login":
                    return data

        data = await asyncio.wait_for(wait_for_login(), timeout=AUTH_TIMEOUT_SECONDS)
        if str(data.get("code")) != "0":
            raise ConnectionError(f"Blofin stream auth failed: {data.get('msg')}")
        self._authenticated = True
        logger.info("Blofin stream authenticated")

    async def _subscribe(self, ws):
        """Subscribe to the private orders channel."""
        await ws.send(json.dumps({"op": "subscribe", "args": [{"channel": "orders"}]}))
        logger.debug("Subscribed to orders")

    async def _heartbeat(self, ws):
        """Blofin drops idle connections; it expects a text 'ping'."""
        while True:
            await asyncio.sleep(HEARTBEAT_SECONDS)
            await ws.send("ping")

    def _handle_message(self, message: str):
        """Handle incoming WebSocket message."""
        if message == "pong":
            return
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse message: {e}")
            return

        if data.get("event") == "subscribe":
            logger.info(f"Now listening to: {data.get('arg')}")
            return
        if data.get("event") == "error":
            logger.error(f"Blofin stream error event: {data.get('code')} {data.get('msg')}")
            return

        if data.get("arg", {}).get("channel") == "orders":
            for order in data.get("data") or []:
                self._handle_order_update(order)

    def _handle_order_update(self, order: dict):
        """Handle an order update event."""
        order_id = order.get("orderId")
        inst_id = order.get("instId")
        state = order.get("state")
        side = order.get("side")
        filled_size = _to_float(order.get("filledSize"))
        average_price = _to_float(order.get("averagePrice"))

        logger.info(f"[{inst_id}] Order update: {state} - {side} {filled_size} @ {average_price or 'N/A'} (order={order_id})")

        if self.on_order:
            self.on_order(order)

        if state == "filled" and self.on_fill:
            self.on_fill(
                order_id=order_id,
                inst_id=inst_id,
                side=side,
                size=filled_size,
                price=average_price,
            )
