"""
Signal engine: chat events in, lifecycle outcomes out.

New messages run Extractor -> Gate -> Orchestrator; edits run
Differ -> Tracker. Every method here runs on the single event loop owned by
TradingService, which makes the engine the only writer of the gate's
processed set, the tracker and the pending-fill map.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from . import events
from . import trade_logger
from .base_store import StoreError
from .events import OutcomeBus
from .execution import ExecutionOrchestrator, ExecutionResult, MARKET_FILL_POLL_DELAY, STATUS_DONE, STATUS_FAILED
from .fill_supervisor import FillSupervisor
from .models import ChatMessage, ChatMessageEdit, Signal
from .order_store import OrderStore
from .parser import parse_edit, parse_signal
from .preference_store import PreferenceStore
from .preferences import Preferences
from .signal_gate import ALREADY_CLOSED, PROCESSING_ERROR, GateDecision, SignalGate
from .signal_store import SignalStore
from .signal_tracker import ActiveSignalTracker
from .trading.base import ExchangeClient

logger = logging.getLogger(__name__)

# Failure steps outside the orchestrator
ACCEPT = "accept"
CONFIRM = "confirm"


class SignalEngine:
    """Owns the gate, tracker, orchestrator and fill supervisor for one exchange account."""

    def __init__(
        self,
        client: ExchangeClient,
        preference_store: PreferenceStore,
        signal_store: SignalStore,
        order_store: OrderStore,
        outcomes: Optional[OutcomeBus] = None,
        market_fill_poll_delay: float = MARKET_FILL_POLL_DELAY,
    ):
        self.client = client
        self.preference_store = preference_store
        self.signal_store = signal_store
        self.order_store = order_store
        self.outcomes = outcomes or OutcomeBus()

        self.gate = SignalGate(whitelist_provider=preference_store.get_whitelist_names)
        self.tracker = ActiveSignalTracker()
        self.fill_supervisor = FillSupervisor(client, order_store, self.outcomes)
        self.orchestrator = ExecutionOrchestrator(
            client, order_store, self.fill_supervisor, self.outcomes,
            market_fill_poll_delay=market_fill_poll_delay,
        )

        # Accepted signals parked until the operator confirms them
        self.awaiting_confirmation: Dict[str, Signal] = {}
        self._confirmation_message_ids: Dict[str, str] = {}

        self.started_at: Optional[datetime] = None

    async def initialize(self) -> bool:
        """Load the tradeable instrument set. Until this succeeds every signal is rejected as unknown."""
        self.started_at = datetime.utcnow()
        try:
            instruments = await asyncio.to_thread(self.client.get_instruments)
        except Exception as e:
            logger.error(f"Failed to load instruments: {e}", exc_info=True)
            return False
        self.gate.load_instruments(instruments)
        return True

    # ------------------------------------------------------------------
    # New messages
    # ------------------------------------------------------------------

    async def process_message(self, message: ChatMessage) -> Optional[ExecutionResult]:
        """
        Handle a message-arrived event.

        Parse misses and duplicates are silent; every other failure ends in a
        rejection or execution-failed outcome carrying the message id.

        Returns:
            The execution result when the signal was executed, else None
        """
        try:
            signal = parse_signal(
                message.content,
                message_id=message.message_id,
                seen_message_ids=self.gate.processed_messages,
                timestamp=message.timestamp,
            )
            decision = self.gate.evaluate(signal, message.message_id)
        except Exception as e:
            logger.error(f"[{message.message_id}] Error processing message: {e}", exc_info=True)
            self.outcomes.emit(
                events.SIGNAL_REJECTED, message_id=message.message_id, reason=f"Processing error: {e}",
                data={"code": PROCESSING_ERROR},
            )
            return None

        if decision.silent:
            return None

        if not decision.accepted:
            self._report_rejection(signal, message, decision)
            return None

        try:
            prefs = self._accept(signal, message)
        except Exception as e:
            logger.error(f"[{signal.inst_id}] Error accepting signal from message {message.message_id}: {e}", exc_info=True)
            # Unmarked so a re-delivery is evaluated again
            self.gate.processed_messages.discard(message.message_id or signal.signal_id)
            self.tracker.remove(message.message_id)
            self.outcomes.emit(
                events.EXECUTION_FAILED, signal=signal, message_id=message.message_id, step=ACCEPT, reason=str(e),
            )
            return None

        if prefs is None:
            return None
        return await self._execute(signal, prefs, message.message_id)

    def _report_rejection(self, signal: Signal, message: ChatMessage, decision: GateDecision):
        self.outcomes.emit(
            events.SIGNAL_REJECTED, signal=signal, message_id=message.message_id, reason=decision.reason,
            data={"code": decision.code},
        )
        try:
            self.signal_store.log_signal(
                signal,
                channel_id=message.channel_id,
                message_id=message.message_id,
                is_valid=decision.code == ALREADY_CLOSED,
                rejection_reason=decision.reason,
            )
        except Exception as e:
            logger.error(f"[{signal.inst_id}] Failed to record rejected signal: {e}", exc_info=True)

    def _accept(self, signal: Signal, message: ChatMessage) -> Optional[Preferences]:
        """
        Record, track and announce an accepted signal.

        Returns:
            The preferences to execute with, or None when the signal is parked
            for confirmation or auto-execute is off
        """
        prefs = self.preference_store.load_preferences()

        logger.info(
            f"[{signal.inst_id}] Signal accepted: {signal.side.upper()} entry={signal.entry_price} "
            f"lev={signal.leverage} trader={signal.trader_name} (message {message.message_id})"
        )
        self.signal_store.log_signal(
            signal, channel_id=message.channel_id, message_id=message.message_id, is_valid=True,
        )
        self.tracker.track(message.message_id, signal, channel_id=message.channel_id)

        if signal.dca_levels:
            self.outcomes.emit(
                events.DCA_DETECTED,
                signal=signal,
                message_id=message.message_id,
                data={"levels": [dca.price for dca in signal.dca_levels], "auto": prefs.use_dca and prefs.dca_mode == "auto"},
            )
        self.outcomes.emit(events.SIGNAL_ACCEPTED, signal=signal, message_id=message.message_id)

        if prefs.confirm_before_order:
            self.awaiting_confirmation[signal.signal_id] = signal
            self._confirmation_message_ids[signal.signal_id] = message.message_id
            logger.info(f"[{signal.inst_id}] Waiting for confirmation of signal {signal.signal_id}")
            self.outcomes.emit(events.CONFIRM_REQUIRED, signal=signal, message_id=message.message_id)
            return None

        if not prefs.auto_execute:
            logger.info(f"[{signal.inst_id}] Auto-execute disabled, not trading signal {signal.signal_id}")
            self.outcomes.emit(
                events.EXECUTION_SKIPPED, signal=signal, message_id=message.message_id, reason="Auto-execute disabled",
            )
            return None

        return prefs

    async def _execute(self, signal: Signal, prefs: Preferences, message_id: Optional[str]) -> ExecutionResult:
        result = await self.orchestrator.execute(signal, prefs, message_id=message_id)
        if result.status == STATUS_DONE:
            self.signal_store.mark_executed(signal.signal_id)
            if message_id:
                self.tracker.attach_order(message_id, result.order_id)
                for order_id in result.dca_order_ids:
                    self.tracker.attach_order(message_id, order_id)
        return result

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm_and_execute(self, signal_id: str) -> Optional[ExecutionResult]:
        """
        Execute a parked signal with the preferences in force now.

        Returns:
            None if no signal with this id is awaiting confirmation, else the
            execution result (failed if preferences could not be read or
            execution raised)
        """
        signal = self.awaiting_confirmation.pop(signal_id, None)
        if signal is None:
            logger.warning(f"No signal awaiting confirmation with id {signal_id}")
            return None
        message_id = self._confirmation_message_ids.pop(signal_id, None)

        try:
            prefs = self.preference_store.load_preferences()
        except StoreError as e:
            # Nothing was sent, so the operator can confirm again
            self.awaiting_confirmation[signal_id] = signal
            self._confirmation_message_ids[signal_id] = message_id
            return self._confirm_failed(signal, message_id, e)

        logger.info(f"[{signal.inst_id}] Signal {signal_id} confirmed, executing")
        try:
            return await self._execute(signal, prefs, message_id)
        except Exception as e:
            return self._confirm_failed(signal, message_id, e)

    def _confirm_failed(self, signal: Signal, message_id: Optional[str], error: Exception) -> ExecutionResult:
        reason = str(error)
        logger.error(f"[{signal.inst_id}] Confirmed signal {signal.signal_id} failed: {reason}", exc_info=error)
        self.outcomes.emit(events.EXECUTION_FAILED, signal=signal, message_id=message_id, step=CONFIRM, reason=reason)
        return ExecutionResult(STATUS_FAILED, CONFIRM, reason)

    def dismiss_signal(self, signal_id: str) -> bool:
        signal = self.awaiting_confirmation.pop(signal_id, None)
        self._confirmation_message_ids.pop(signal_id, None)
        if signal is None:
            return False
        logger.info(f"[{signal.inst_id}] Signal {signal_id} dismissed")
        return True

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    async def process_message_edit(self, edit: ChatMessageEdit) -> Optional[int]:
        """
        Handle a message-edited event.

        Returns:
            The tracker version for tracked messages, else None
        """
        try:
            return self._process_message_edit(edit)
        except Exception as e:
            logger.error(f"[{edit.message_id}] Error processing edit: {e}", exc_info=True)
            self.outcomes.emit(events.EDIT_FAILED, message_id=edit.message_id, reason=str(e))
            return None

    def _process_message_edit(self, edit: ChatMessageEdit) -> Optional[int]:
        updated, diff = parse_edit(edit.old_content, edit.content, message_id=edit.message_id)
        if updated is None:
            return None
        if diff.approximated:
            logger.debug(f"[{edit.message_id}] No previous content, approximating edit diff")

        self.signal_store.log_signal_edit(
            edit.message_id,
            edit.content,
            status="closed" if updated.is_closed else "active",
            tp_hits=diff.tp_hits,
            final_pnl=diff.final_pnl,
            is_closed=updated.is_closed,
        )

        record = self.tracker.apply_edit(edit.message_id, updated)
        version = record.version if record else None

        if record:
            if diff.tp_hits:
                logger.info(f"[{updated.inst_id}] TP hit: {list(diff.tp_hits)} (v{version})")
                self.outcomes.emit(
                    events.TP_HIT, signal=updated, message_id=edit.message_id, version=version,
                    data={"levels": list(diff.tp_hits), "approximated": diff.approximated},
                )
            if diff.is_closed:
                logger.info(f"[{updated.inst_id}] Signal closed, P&L {diff.final_pnl} (v{version})")
                self.outcomes.emit(
                    events.SIGNAL_CLOSED, signal=updated, message_id=edit.message_id, version=version,
                    data={"final_pnl": diff.final_pnl},
                )
                self.tracker.remove(edit.message_id)

        self.outcomes.emit(
            events.SIGNAL_EDIT, signal=updated, message_id=edit.message_id, version=version, data=diff.to_dict(),
        )
        return version

    # ------------------------------------------------------------------
    # Fills / operator actions
    # ------------------------------------------------------------------

    async def on_order_filled(self, order_id: str, **fill) -> bool:
        return await self.fill_supervisor.on_stream_fill(order_id, **fill)

    async def emergency_close(self, inst_id: str) -> bool:
        """Close every position on the instrument with the current margin mode."""
        margin_mode = self.preference_store.load_preferences().margin_mode
        logger.warning(f"[{inst_id}] EMERGENCY CLOSE requested ({margin_mode})")
        try:
            await asyncio.to_thread(self.client.close_positions, inst_id, margin_mode)
        except Exception as e:
            logger.error(f"[{inst_id}] Emergency close failed: {e}")
            trade_logger.log_emergency_close(inst_id, margin_mode, error=str(e))
            raise

        trade_logger.log_emergency_close(inst_id, margin_mode)
        self.outcomes.emit(events.EMERGENCY_CLOSE, data={"inst_id": inst_id, "margin_mode": margin_mode})
        return True

    def get_status(self) -> dict:
        """Snapshot for the dashboard. May be up to one event behind."""
        return {
            "exchange": self.client.name,
            "demo": self.client.is_demo,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "instrument_count": len(self.gate.instruments),
            "processed_messages": len(self.gate.processed_messages),
            "active_signals": self.tracker.snapshot(),
            "pending_fills": self.fill_supervisor.snapshot(),
            "awaiting_confirmation": [s.to_dict() for s in list(self.awaiting_confirmation.values())],
        }
