"""Live trading service: owns the engine's event loop, the order stream and thread-safe submission."""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Optional

from .engine import SignalEngine
from .models import ChatMessage, ChatMessageEdit
from .trading.blofin_stream import BlofinOrderStream

logger = logging.getLogger(__name__)

# How long start() waits for the loop to come up and load instruments
STARTUP_TIMEOUT = 30.0


class TradingService:
    """
    Runs a SignalEngine on a dedicated asyncio loop thread.

    Chat events (HTTP thread), stream fills (stream thread) and dashboard calls
    (web server thread) are all handed to this loop, so the engine's state has
    a single writer. Each chat event becomes its own task: a slow execution
    never blocks unrelated messages.
    """

    def __init__(self, engine: SignalEngine, order_stream: Optional[BlofinOrderStream] = None):
        self.engine = engine
        self.order_stream = order_stream

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready = threading.Event()
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: set = set()

        if self.order_stream:
            self.order_stream.on_fill = self._on_order_fill

    def start(self, timeout: float = STARTUP_TIMEOUT) -> bool:
        """Start the loop thread and wait for the engine to initialize."""
        if self._running:
            logger.warning("Trading service already running")
            return True

        self._running = True
        self._ready.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="TradingService")
        self._thread.start()

        if not self._ready.wait(timeout):
            logger.error(f"Trading service did not become ready within {timeout}s")
            return False

        if self.order_stream:
            self.order_stream.start()

        logger.info("Trading service started")
        return True

    def stop(self):
        """Stop the stream, let in-flight tasks finish, then stop the loop."""
        if not self._running:
            return

        logger.info("Stopping trading service...")
        self._running = False

        if self.order_stream:
            self.order_stream.stop()

        if self._loop and self._loop.is_running() and self._stop_event:
            self._loop.call_soon_threadsafe(self._stop_event.set)

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._thread and self._thread.is_alive():
            logger.warning("Forcing event loop stop...")
            if self._loop and self._loop.is_running():
                self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=2.0)

        logger.info("Trading service stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _run(self):
        """Main loop (runs in background thread)."""
        try:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._loop.run_until_complete(self._async_main())
        except Exception as e:
            logger.error(f"Trading service error: {e}", exc_info=True)
        finally:
            if self._loop:
                self._loop.close()
            self._running = False
            self._ready.set()

    async def _async_main(self):
        self._stop_event = asyncio.Event()
        await self.engine.initialize()
        self._ready.set()

        await self._stop_event.wait()

        # Let in-flight executions and stop placements finish
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight task(s)")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.engine.fill_supervisor.wait_for_tasks()

    def _schedule(self, coro_factory) -> bool:
        """Create a task on the engine loop from any thread."""
        if not self._running or not self._loop or not self._loop.is_running():
            logger.warning("Event received but trading service not running - dropping")
            return False

        def create():
            task = asyncio.create_task(coro_factory())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        self._loop.call_soon_threadsafe(create)
        return True

    def submit_message(self, message: ChatMessage) -> bool:
        """Queue a new chat message (called from the HTTP thread)."""
        return self._schedule(lambda: self.engine.process_message(message))

    def submit_edit(self, edit: ChatMessageEdit) -> bool:
        """Queue a message edit (called from the HTTP thread)."""
        return self._schedule(lambda: self.engine.process_message_edit(edit))

    def _on_order_fill(self, order_id: str, **fill):
        """Fill from the order stream (called on the stream thread)."""
        logger.info(f"[{fill.get('inst_id')}] Order fill: {fill.get('side')} {fill.get('size')} @ {fill.get('price')} (order={order_id})")
        self._schedule(lambda: self.engine.on_order_filled(order_id, **fill))

    def run_coroutine(self, coro, timeout: Optional[float] = 30.0):
        """
        Run a coroutine on the engine loop and wait for its result.

        Used by the dashboard for operator actions (confirm, emergency close).
        Exceptions raised by the coroutine propagate to the caller.
        """
        if not self._running or not self._loop or not self._loop.is_running():
            coro.close()
            raise RuntimeError("Trading service not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def call(self, fn, *args, timeout: Optional[float] = 10.0):
        """Run a plain function on the engine loop (reads of single-writer state)."""
        async def _call():
            return fn(*args)
        return self.run_coroutine(_call(), timeout=timeout)

    def get_status(self) -> dict:
        status = {
            "running": self._running,
            "stream_connected": bool(self.order_stream and self.order_stream.is_connected),
            "in_flight": len(self._tasks),
        }
        if self._running:
            try:
                status.update(self.call(self.engine.get_status))
            except Exception as e:
                logger.debug(f"Failed to read engine status: {e}")
        return status
