"""
Lifecycle outcome stream.

Every decision the pipeline makes about a signal is reported here exactly once.
The dashboard and the trade audit log subscribe; a recent-history buffer backs
the dashboard's event feed.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

from .models import Signal

logger = logging.getLogger(__name__)

SIGNAL_ACCEPTED = "signal:accepted"
SIGNAL_REJECTED = "signal:rejected"
CONFIRM_REQUIRED = "signal:confirm_required"
DCA_DETECTED = "signal:dca_detected"
SIGNAL_EDIT = "signal:edit"
TP_HIT = "signal:tp_hit"
SIGNAL_CLOSED = "signal:closed"
EDIT_FAILED = "signal:edit_failed"

EXECUTION_START = "execution:start"
EXECUTION_PROGRESS = "execution:progress"
ORDER_TYPE_DOWNGRADED = "execution:downgraded"  # limit -> market slippage fallback
EXECUTION_COMPLETE = "execution:complete"
EXECUTION_FAILED = "execution:failed"
EXECUTION_SKIPPED = "execution:skipped"
STOP_FAILED = "execution:stop_failed"
DCA_ORDER_FAILED = "execution:dca_failed"

EMERGENCY_CLOSE = "emergency:close"

SEVERITY: Dict[str, str] = {
    SIGNAL_REJECTED: "warning",
    EDIT_FAILED: "error",
    ORDER_TYPE_DOWNGRADED: "warning",
    EXECUTION_SKIPPED: "warning",
    DCA_ORDER_FAILED: "error",
    EXECUTION_FAILED: "error",
    EMERGENCY_CLOSE: "warning",
    STOP_FAILED: "critical",  # position open without a protective stop
}


@dataclass
class Outcome:
    """One lifecycle event, self-contained enough to render without lookups."""
    type: str
    signal: Optional[Signal] = None
    message_id: Optional[str] = None
    step: Optional[str] = None
    reason: Optional[str] = None
    version: Optional[int] = None
    order_id: Optional[str] = None
    stop_price: Optional[float] = None
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def severity(self) -> str:
        return SEVERITY.get(self.type, "info")

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity,
            "signal": self.signal.to_dict() if self.signal else None,
            "message_id": self.message_id,
            "step": self.step,
            "reason": self.reason,
            "version": self.version,
            "order_id": self.order_id,
            "stop_price": self.stop_price,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


Listener = Callable[[Outcome], None]


class OutcomeBus:
    """Synchronous fan-out of outcomes to subscribers."""

    def __init__(self, history_size: int = 200):
        self._listeners: List[Listener] = []
        self._history: Deque[Outcome] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, outcome_type: str, **kwargs) -> Outcome:
        outcome = Outcome(type=outcome_type, **kwargs)
        with self._lock:
            self._history.append(outcome)
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(outcome)
            except Exception as e:
                logger.error(f"Outcome listener failed on {outcome_type}: {e}", exc_info=True)
        return outcome

    def recent(self, limit: int = 50, outcome_type: Optional[str] = None) -> List[Outcome]:
        """Most recent outcomes, newest first."""
        with self._lock:
            history = list(self._history)
        if outcome_type:
            history = [o for o in history if o.type == outcome_type]
        return list(reversed(history))[:limit]
