import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set, Tuple

from .models import Signal

logger = logging.getLogger(__name__)

# Max distance between the called entry and the live price
MAX_ENTRY_DEVIATION_PCT = 10.0

# Decision codes
PARSE_MISS = "parse_miss"
DUPLICATE = "duplicate"
NOT_WHITELISTED = "not_whitelisted"
ALREADY_CLOSED = "already_closed"
UNKNOWN_INSTRUMENT = "unknown_instrument"
PRICE_DEVIATION = "price_deviation"
WHITELIST_UNAVAILABLE = "whitelist_unavailable"
PROCESSING_ERROR = "processing_error"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of running a parsed message through the gate."""
    accepted: bool
    code: Optional[str] = None
    reason: Optional[str] = None

    @property
    def silent(self) -> bool:
        """Parse misses and re-deliveries are dropped without a rejection outcome."""
        return self.code in (PARSE_MISS, DUPLICATE)


ACCEPTED = GateDecision(accepted=True)


def validate_signal(
    signal: Signal,
    instruments: Iterable[str],
    current_price: Optional[float] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Check the instrument exists and, when a live price is given, that the
    called entry is within MAX_ENTRY_DEVIATION_PCT of it.

    Returns:
        Tuple of (valid, reason)
    """
    if signal.inst_id not in instruments:
        return False, f"Unknown instrument: {signal.inst_id}"

    reason = _deviation_reason(signal, current_price)
    return reason is None, reason


def _deviation_reason(signal: Signal, current_price: Optional[float]) -> Optional[str]:
    if not current_price or not signal.entry_price:
        return None
    deviation = abs(signal.entry_price - current_price) / current_price * 100
    if deviation > MAX_ENTRY_DEVIATION_PCT:
        return (
            f"Entry price {signal.entry_price} deviates {deviation:.1f}% "
            f"from current {current_price}"
        )
    return None


class SignalGate:
    """
    Decides whether a parsed trade call is executed.

    Owns the known instrument set and the processed-message set; both are
    only mutated from the engine's event loop.
    """

    def __init__(
        self,
        whitelist_provider: Callable[[], Iterable[str]],
        instruments: Optional[Iterable[str]] = None,
    ):
        self._whitelist_provider = whitelist_provider
        self.instruments: Set[str] = set(instruments or ())
        self.processed_messages: Set[str] = set()

    def load_instruments(self, inst_ids: Iterable[str]):
        self.instruments = set(inst_ids)
        logger.info(f"Loaded {len(self.instruments)} instruments")

    def is_processed(self, message_id: Optional[str]) -> bool:
        return bool(message_id) and message_id in self.processed_messages

    def is_whitelisted(self, trader_name: Optional[str]) -> bool:
        """An empty whitelist lets every trader through. Names compare case-insensitively."""
        allowed = {name.strip().lower() for name in self._whitelist_provider() if name}
        if not allowed:
            return True
        return bool(trader_name) and trader_name.strip().lower() in allowed

    def evaluate(
        self,
        signal: Optional[Signal],
        message_id: Optional[str],
        current_price: Optional[float] = None,
    ) -> GateDecision:
        """
        Run the checks in order, stopping at the first failure.

        The message is only marked processed once every check passes.
        """
        if signal is None:
            return GateDecision(False, PARSE_MISS)

        key = message_id or signal.signal_id
        if key in self.processed_messages:
            logger.debug(f"[{key}] Message already processed, skipping")
            return GateDecision(False, DUPLICATE)

        try:
            whitelisted = self.is_whitelisted(signal.trader_name)
        except Exception as e:
            logger.error(f"[{signal.inst_id}] Could not read whitelist, rejecting signal: {e}")
            return GateDecision(False, WHITELIST_UNAVAILABLE, "Whitelist unavailable")
        if not whitelisted:
            trader = signal.trader_name or "unknown"
            logger.warning(f"[{signal.inst_id}] Trader \"{trader}\" not whitelisted, ignoring signal")
            return GateDecision(False, NOT_WHITELISTED, f'Trader "{trader}" not whitelisted')

        if signal.is_closed:
            logger.info(f"[{signal.inst_id}] Signal already closed (P&L {signal.final_pnl}), logging only")
            return GateDecision(False, ALREADY_CLOSED, "Already closed")

        if signal.inst_id not in self.instruments:
            reason = f"Unknown instrument: {signal.inst_id}"
            logger.warning(f"[{signal.inst_id}] Invalid signal: {reason}")
            return GateDecision(False, UNKNOWN_INSTRUMENT, reason)

        reason = _deviation_reason(signal, current_price)
        if reason:
            logger.warning(f"[{signal.inst_id}] Invalid signal: {reason}")
            return GateDecision(False, PRICE_DEVIATION, reason)

        self.processed_messages.add(key)
        return ACCEPTED
