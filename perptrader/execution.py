"""
Execution of accepted signals.

One call to ExecutionOrchestrator.execute walks a signal through the entry
sequence, strictly forward:

    position-check -> margin-mode-set -> leverage-set -> balance-check
    -> price-discovery -> slippage-check -> size-compute -> order-placed
    -> dca-placement -> done

ending early in `skipped` (already in a position) or `failed`. Every run ends
in exactly one terminal outcome on the outcome bus; nothing raises out of
execute().
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from . import events
from . import trade_logger
from .events import OutcomeBus
from .fill_supervisor import FillSupervisor, PendingFill
from .models import Signal
from .order_store import OrderStore
from .preferences import Preferences
from .trading.base import ExchangeClient, ExchangeError

logger = logging.getLogger(__name__)

# Market orders fill almost instantly; poll once after this delay
MARKET_FILL_POLL_DELAY = 0.5

# Contract-size granularity
SIZE_SIGNIFICANT_DIGITS = 4

# Steps
START = "start"
POSITION_CHECK = "position-check"
MARGIN_MODE_SET = "margin-mode-set"
LEVERAGE_SET = "leverage-set"
BALANCE_CHECK = "balance-check"
PRICE_DISCOVERY = "price-discovery"
SLIPPAGE_CHECK = "slippage-check"
SIZE_COMPUTE = "size-compute"
ORDER_PLACED = "order-placed"
DCA_PLACEMENT = "dca-placement"
DONE = "done"

# Terminal statuses
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class ExecutionResult:
    status: str  # "done", "failed" or "skipped"
    step: str  # last step reached
    reason: Optional[str] = None
    order_id: Optional[str] = None
    order_type: Optional[str] = None
    entry_price: Optional[float] = None
    size: Optional[float] = None
    leverage: Optional[int] = None
    dca_order_ids: List[str] = field(default_factory=list)


def compute_size(order_amount: float, leverage: int, price: float) -> float:
    """Contracts for `order_amount` margin at `leverage`, to 4 significant digits."""
    raw = order_amount * leverage / price
    return float(f"{raw:.{SIZE_SIGNIFICANT_DIGITS}g}")


def slippage_pct(market_price: float, entry_price: float) -> float:
    return abs(market_price - entry_price) / entry_price * 100


class ExecutionOrchestrator:
    """Turns an accepted signal into exchange calls."""

    def __init__(
        self,
        client: ExchangeClient,
        order_store: OrderStore,
        fill_supervisor: FillSupervisor,
        outcomes: OutcomeBus,
        market_fill_poll_delay: float = MARKET_FILL_POLL_DELAY,
    ):
        self.client = client
        self.order_store = order_store
        self.fill_supervisor = fill_supervisor
        self.outcomes = outcomes
        self.market_fill_poll_delay = market_fill_poll_delay

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking client call on a worker thread."""
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def execute(
        self,
        signal: Signal,
        prefs: Preferences,
        message_id: Optional[str] = None,
    ) -> ExecutionResult:
        inst_id = signal.inst_id
        step = START
        self.outcomes.emit(events.EXECUTION_START, signal=signal, message_id=message_id, step="pre-trade")

        def progress(description: str, **data):
            self.outcomes.emit(
                events.EXECUTION_PROGRESS, signal=signal, message_id=message_id, step=description, data=data
            )

        try:
            # 1. Existing position
            step = POSITION_CHECK
            positions = await self._call(self.client.get_positions, inst_id)
            if any(p.is_open for p in positions):
                reason = "Already in position"
                logger.warning(f"[{inst_id}] Already in position, skipping")
                self.outcomes.emit(events.EXECUTION_SKIPPED, signal=signal, message_id=message_id, reason=reason)
                return ExecutionResult(STATUS_SKIPPED, step, reason)

            # 2. Margin mode / leverage (best effort)
            step = MARGIN_MODE_SET
            await self._best_effort(inst_id, "Set margin mode", self.client.set_margin_mode, prefs.margin_mode)
            progress("Margin mode set", margin_mode=prefs.margin_mode)

            step = LEVERAGE_SET
            leverage = prefs.effective_leverage(signal.leverage)
            await self._best_effort(
                inst_id, "Set leverage", self.client.set_leverage,
                inst_id, leverage, prefs.margin_mode, signal.position_side,
            )
            progress(f"Leverage set to {leverage}x", leverage=leverage)

            # 3. Balance, before spending calls on prices
            step = BALANCE_CHECK
            available = await self._call(self.client.get_available_balance)
            if available < prefs.order_amount:
                logger.error(f"[{inst_id}] Insufficient balance: {available} < {prefs.order_amount}")
                return self._fail(
                    signal, step, message_id,
                    f"Insufficient balance: ${available:.2f} (need ${prefs.order_amount:.2f})",
                )

            # 4. Prices
            step = PRICE_DISCOVERY
            market_price = await self._discover_market_price(inst_id)
            entry_price = signal.entry_price or market_price
            if not entry_price:
                logger.error(f"[{inst_id}] Could not determine entry price")
                return self._fail(signal, step, message_id, "Could not determine entry price")

            # 5. Limit -> market when price has run away from the call
            step = SLIPPAGE_CHECK
            order_type = prefs.order_type
            if order_type == "limit" and market_price and signal.entry_price:
                slippage = slippage_pct(market_price, entry_price)
                if slippage > prefs.slippage_percent:
                    logger.warning(
                        f"[{inst_id}] Price slippage {slippage:.2f}% > threshold {prefs.slippage_percent}%, "
                        f"falling back to MARKET (entry {entry_price}, market {market_price})"
                    )
                    self.outcomes.emit(
                        events.ORDER_TYPE_DOWNGRADED,
                        signal=signal,
                        message_id=message_id,
                        step=f"Slippage {slippage:.2f}% exceeded, using market order",
                        data={
                            "from": "limit",
                            "to": "market",
                            "slippage_pct": round(slippage, 4),
                            "entry_price": entry_price,
                            "market_price": market_price,
                        },
                    )
                    order_type = "market"
                    entry_price = market_price

            # 6. Size
            step = SIZE_COMPUTE
            size = compute_size(prefs.order_amount, leverage, entry_price)
            notional = prefs.order_amount * leverage
            if size <= 0:
                return self._fail(signal, step, message_id, f"Computed size {size} is not tradeable")
            progress(f"Size: {size} | Notional: ${notional:g} | Lev: {leverage}x", size=size, notional=notional)

            # 7. Entry order
            step = ORDER_PLACED
            order = await self._call(
                self.client.place_order,
                inst_id,
                signal.order_side,
                signal.position_side,
                order_type,
                size,
                prefs.margin_mode,
                price=entry_price if order_type == "limit" else None,
            )
            if not order.order_id:
                logger.error(f"[{inst_id}] Order placement returned no orderId")
                return self._fail(signal, step, message_id, "No orderId returned")

            db_order_id = self._track_entry_order(
                signal, prefs, order.order_id, order_type, entry_price, size, leverage, message_id
            )
            logger.info(f"[{inst_id}] Order placed: {order.order_id} ({order_type} {signal.order_side} {size} @ {entry_price}, {leverage}x)")
            progress(f"Order placed: {order.order_id}", order_id=order.order_id, order_type=order_type)

            if order_type == "market":
                self.fill_supervisor.schedule_poll(order.order_id, self.market_fill_poll_delay)

            # 8. DCA legs
            dca_order_ids: List[str] = []
            if prefs.use_dca and prefs.dca_mode == "auto" and signal.dca_levels:
                step = DCA_PLACEMENT
                dca_order_ids = await self._place_dca_orders(signal, prefs, leverage, message_id)
                if dca_order_ids:
                    self.order_store.update_order(db_order_id, dca_orders=dca_order_ids)

            return ExecutionResult(
                STATUS_DONE, DONE,
                order_id=order.order_id,
                order_type=order_type,
                entry_price=entry_price,
                size=size,
                leverage=leverage,
                dca_order_ids=dca_order_ids,
            )

        except Exception as e:
            logger.error(f"[{inst_id}] Execution failed at {step}: {e}", exc_info=True)
            return self._fail(signal, step, message_id, str(e))

    def _track_entry_order(
        self,
        signal: Signal,
        prefs: Preferences,
        order_id: str,
        order_type: str,
        entry_price: float,
        size: float,
        leverage: int,
        message_id: Optional[str],
    ) -> Optional[int]:
        """Record the order and register its pending fill with no await in between."""
        db_order_id = self.order_store.record_order(
            signal, order_id, order_type, entry_price, size, leverage, prefs.margin_mode,
        )
        self.fill_supervisor.register(PendingFill(
            order_id=order_id,
            signal=signal,
            prefs=prefs,
            inst_id=signal.inst_id,
            position_side=signal.position_side,
            side=signal.order_side,
            size=size,
            entry_price=entry_price,
            leverage=leverage,
            order_type=order_type,
            db_order_id=db_order_id,
            message_id=message_id,
        ))
        trade_logger.log_order_submission(
            signal.inst_id, signal.order_side, size, order_type,
            entry_price if order_type == "limit" else None, leverage, order_id, signal.trader_name,
        )
        return db_order_id

    async def _best_effort(self, inst_id: str, action: str, fn, *args):
        """Account setup calls: 'already set' counts as success, other failures are only logged."""
        try:
            await self._call(fn, *args)
        except Exception as e:
            if isinstance(e, ExchangeError) and e.is_already_set:
                logger.debug(f"[{inst_id}] {action}: already set")
            else:
                logger.warning(f"[{inst_id}] {action} warning: {e}")

    async def _discover_market_price(self, inst_id: str) -> Optional[float]:
        """Mark price, falling back to the last traded price."""
        for label, fetch in (("mark price", self.client.get_mark_price), ("ticker", self.client.get_last_price)):
            try:
                price = await self._call(fetch, inst_id)
            except Exception as e:
                logger.warning(f"[{inst_id}] {label} lookup failed: {e}")
                continue
            if price and price > 0:
                return price
        return None

    async def _place_dca_orders(
        self,
        signal: Signal,
        prefs: Preferences,
        leverage: int,
        message_id: Optional[str],
    ) -> List[str]:
        """One limit order per DCA level. A failed leg doesn't affect the others."""
        order_ids = []
        for dca in signal.dca_levels:
            size = compute_size(prefs.order_amount, leverage, dca.price)
            try:
                order = await self._call(
                    self.client.place_order,
                    signal.inst_id,
                    signal.order_side,
                    signal.position_side,
                    "limit",
                    size,
                    prefs.margin_mode,
                    price=dca.price,
                )
                if not order.order_id:
                    raise ExchangeError("No orderId returned")
            except Exception as e:
                logger.error(f"[{signal.inst_id}] DCA{dca.level} order failed: {e}")
                trade_logger.log_dca_order(signal.inst_id, signal.order_side, dca.level, size, dca.price, error=str(e))
                self.outcomes.emit(
                    events.DCA_ORDER_FAILED,
                    signal=signal,
                    message_id=message_id,
                    step=f"DCA{dca.level} @ ${dca.price}",
                    reason=str(e),
                    data={"level": dca.level, "price": dca.price, "size": size},
                )
                continue

            order_ids.append(order.order_id)
            logger.info(f"[{signal.inst_id}] DCA{dca.level} order placed: {order.order_id} @ {dca.price}")
            trade_logger.log_dca_order(signal.inst_id, signal.order_side, dca.level, size, dca.price, order.order_id)
            self.outcomes.emit(
                events.EXECUTION_PROGRESS,
                signal=signal,
                message_id=message_id,
                step=f"DCA{dca.level} limit order @ ${dca.price}",
                order_id=order.order_id,
                data={"level": dca.level, "price": dca.price, "size": size},
            )
        return order_ids

    def _fail(self, signal: Signal, step: str, message_id: Optional[str], reason: str) -> ExecutionResult:
        self.outcomes.emit(
            events.EXECUTION_FAILED, signal=signal, message_id=message_id, step=step, reason=reason
        )
        return ExecutionResult(STATUS_FAILED, step, reason)
