"""
Fill supervision: attach a protective stop to every filled entry order.

Each placed entry order gets a PendingFill keyed by exchange order id. Two
triggers race to resolve it: a fill pushed by the order stream, and (market
orders only) a deferred status poll. Whichever gets there first pops the
context and places the stop; the other finds nothing and does nothing.

All methods run on the engine's event loop; exchange calls go to a worker
thread via asyncio.to_thread.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from . import events
from . import trade_logger
from .events import OutcomeBus
from .models import Signal, LONG
from .order_store import OrderStore
from .preferences import Preferences
from .trading.base import ExchangeClient

logger = logging.getLogger(__name__)

# Fills seen on the stream for orders not (yet) tracked
MAX_EARLY_FILLS = 500


@dataclass
class PendingFill:
    """Everything needed to protect an entry order once it fills."""
    order_id: str
    signal: Signal
    prefs: Preferences  # snapshot used for this execution
    inst_id: str
    position_side: str
    side: str
    size: float
    entry_price: float
    leverage: int
    order_type: str
    db_order_id: Optional[int] = None
    message_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "signal_id": self.signal.signal_id,
            "inst_id": self.inst_id,
            "position_side": self.position_side,
            "size": self.size,
            "entry_price": self.entry_price,
            "leverage": self.leverage,
            "order_type": self.order_type,
            "created_at": self.created_at.isoformat(),
        }


def stop_trigger_price(entry_price: float, variance_pct: float, position_side: str) -> float:
    """Longs stop below entry, shorts above."""
    variance = variance_pct / 100
    if position_side == LONG:
        return entry_price * (1 - variance)
    return entry_price * (1 + variance)


class FillSupervisor:
    """Owns the pending-fill map and places protective stops exactly once."""

    def __init__(
        self,
        client: ExchangeClient,
        order_store: OrderStore,
        outcomes: OutcomeBus,
    ):
        self.client = client
        self.order_store = order_store
        self.outcomes = outcomes

        self.pending_fills: Dict[str, PendingFill] = {}
        self._early_fills: "OrderedDict[str, dict]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()

    def register(self, context: PendingFill):
        """
        Start tracking an entry order.

        Must run in the same loop step that recorded the order. If the stream
        already reported this order filled, resolution starts right away.
        """
        self.pending_fills[context.order_id] = context
        logger.debug(f"[{context.inst_id}] Tracking fill for order {context.order_id}")

        fill = self._early_fills.pop(context.order_id, None)
        if fill is not None:
            logger.info(f"[{context.inst_id}] Order {context.order_id} filled before it was tracked")
            self._spawn(self.resolve(context.order_id, "stream", fill))

    async def on_stream_fill(self, order_id: str, **fill) -> bool:
        """Fill pushed by the order stream."""
        if order_id not in self.pending_fills:
            self._early_fills[order_id] = fill
            while len(self._early_fills) > MAX_EARLY_FILLS:
                self._early_fills.popitem(last=False)
            return False
        return await self.resolve(order_id, "stream", fill)

    def schedule_poll(self, order_id: str, delay: float) -> asyncio.Task:
        """Check the order's status after `delay` seconds (market orders)."""
        return self._spawn(self.poll(order_id, delay))

    async def poll(self, order_id: str, delay: float = 0.0) -> bool:
        if delay:
            await asyncio.sleep(delay)

        if order_id not in self.pending_fills:
            return False

        try:
            order = await asyncio.to_thread(self.client.get_order, order_id)
        except Exception as e:
            logger.warning(f"Polling fill status for {order_id} failed, waiting for stream: {e}")
            return False

        if order is None or not order.is_filled:
            state = order.state if order else "unknown"
            logger.info(f"Order {order_id} not filled yet ({state}), waiting for stream")
            return False

        return await self.resolve(order_id, "poll", {"size": order.filled_size, "price": order.average_price})

    async def resolve(self, order_id: str, source: str, fill: Optional[dict] = None) -> bool:
        """
        Consume the pending context and place the stop.

        Returns:
            True if this call placed (or attempted) the stop, False if the
            context was already consumed
        """
        # Pop before any await: a second trigger must find nothing
        context = self.pending_fills.pop(order_id, None)
        if context is None:
            logger.debug(f"Order {order_id} fill via {source} ignored, already handled")
            return False

        fill = fill or {}
        logger.info(
            f"[{context.inst_id}] Order {order_id} filled via {source} "
            f"({fill.get('size') or context.size} @ {fill.get('price') or context.entry_price}), placing protective stop"
        )
        self.order_store.update_order(context.db_order_id, status="filled")
        await self._place_stop(context)
        return True

    async def _place_stop(self, context: PendingFill):
        prefs = context.prefs
        stop_price = stop_trigger_price(context.entry_price, prefs.trailing_stop_variance, context.position_side)
        close_side = context.signal.close_side
        stop_type = prefs.trailing_stop_type

        try:
            if stop_type == "tpsl":
                stop_id = await asyncio.to_thread(
                    self.client.place_tpsl,
                    context.inst_id, prefs.margin_mode, context.position_side,
                    close_side, context.size, stop_price, prefs.reduce_only,
                )
            else:
                stop_id = await asyncio.to_thread(
                    self.client.place_algo_order,
                    context.inst_id, prefs.margin_mode, context.position_side,
                    close_side, context.size, stop_price, prefs.reduce_only,
                )
            if not stop_id:
                raise RuntimeError(f"No {stop_type} id returned")
        except Exception as e:
            self._report_stop_failure(context, stop_price, str(e))
            return

        id_field = "tpsl_id" if stop_type == "tpsl" else "algo_id"
        self.order_store.update_order(
            context.db_order_id, status="protected", stop_price=stop_price, **{id_field: stop_id}
        )
        trade_logger.log_stop_placed(context.inst_id, stop_type, stop_price, context.size, context.order_id, stop_id)
        logger.info(f"[{context.inst_id}] {stop_type} stop placed: {stop_id} (trigger @ {stop_price:.8g})")

        self.outcomes.emit(
            events.EXECUTION_COMPLETE,
            signal=context.signal,
            message_id=context.message_id,
            order_id=context.order_id,
            stop_price=stop_price,
            data={
                "stop_id": stop_id,
                "stop_type": stop_type,
                "size": context.size,
                "entry_price": context.entry_price,
                "leverage": context.leverage,
            },
        )

    def _report_stop_failure(self, context: PendingFill, stop_price: float, reason: str):
        logger.error("=" * 60)
        logger.error(f"[{context.inst_id}] PROTECTIVE STOP FAILED for order {context.order_id}")
        logger.error(f"[{context.inst_id}] Position of {context.size} is OPEN WITHOUT A STOP: {reason}")
        logger.error(f"[{context.inst_id}] Intended {context.prefs.trailing_stop_type} trigger @ {stop_price:.8g}")
        logger.error("=" * 60)

        trade_logger.log_stop_failed(context.inst_id, stop_price, context.size, context.order_id, reason)
        self.order_store.update_order(context.db_order_id, status="stop_failed")
        self.outcomes.emit(
            events.STOP_FAILED,
            signal=context.signal,
            message_id=context.message_id,
            order_id=context.order_id,
            stop_price=stop_price,
            reason=reason,
            data={"size": context.size, "entry_price": context.entry_price},
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_tasks(self):
        """Wait for scheduled polls and early-fill resolutions to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def snapshot(self) -> List[dict]:
        return [ctx.to_dict() for ctx in list(self.pending_fills.values())]
