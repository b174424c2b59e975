import logging
from dataclasses import dataclass, asdict, fields
from typing import Optional

logger = logging.getLogger(__name__)

ORDER_TYPES = ("market", "limit")
MARGIN_MODES = ("cross", "isolated")
STOP_TYPES = ("tpsl", "algo")
LEVERAGE_SOURCES = ("saved", "signal", "max")
DCA_MODES = ("display", "auto")

MAX_LEVERAGE = 150


@dataclass
class Preferences:
    """Trading preferences, read fresh from the store for every execution."""

    # Sizing
    order_amount: float = 50.0  # USDT margin per entry
    order_type: str = "market"  # "market" or "limit"
    margin_mode: str = "cross"  # "cross" or "isolated"
    leverage: int = 20
    leverage_source: str = "signal"  # "saved", "signal" or "max"
    slippage_percent: float = 1.0  # limit -> market fallback threshold

    # Protective stop
    trailing_stop_variance: float = 2.0  # percent from entry
    trailing_stop_type: str = "tpsl"  # "tpsl" or "algo"
    reduce_only: bool = True

    # Flow control
    auto_execute: bool = True
    confirm_before_order: bool = False
    channel_id: Optional[str] = None

    # DCA
    use_dca: bool = False
    dca_mode: str = "display"  # "display" or "auto"

    def __post_init__(self):
        """Fall back to defaults for out-of-range or unknown values."""
        if self.order_amount <= 0:
            logger.warning(f"order_amount={self.order_amount} must be positive, setting to 50")
            self.order_amount = 50.0

        self.order_type = _choice("order_type", self.order_type, ORDER_TYPES, "market")
        self.margin_mode = _choice("margin_mode", self.margin_mode, MARGIN_MODES, "cross")
        self.trailing_stop_type = _choice("trailing_stop_type", self.trailing_stop_type, STOP_TYPES, "tpsl")
        self.leverage_source = _choice("leverage_source", self.leverage_source, LEVERAGE_SOURCES, "signal")
        self.dca_mode = _choice("dca_mode", self.dca_mode, DCA_MODES, "display")

        if self.leverage < 1:
            logger.warning(f"leverage={self.leverage} must be at least 1, setting to 1")
            self.leverage = 1
        if self.leverage > MAX_LEVERAGE:
            logger.warning(f"leverage={self.leverage} > {MAX_LEVERAGE}, capping")
            self.leverage = MAX_LEVERAGE

        if self.trailing_stop_variance <= 0:
            logger.warning(f"trailing_stop_variance={self.trailing_stop_variance} must be positive, setting to 2%")
            self.trailing_stop_variance = 2.0
        if self.trailing_stop_variance >= 100:
            logger.warning(f"trailing_stop_variance={self.trailing_stop_variance} >= 100%, capping at 99%")
            self.trailing_stop_variance = 99.0

        if self.slippage_percent < 0:
            logger.warning(f"slippage_percent={self.slippage_percent} is negative, setting to 0")
            self.slippage_percent = 0.0

    def effective_leverage(self, signal_leverage: Optional[int]) -> int:
        """Pick leverage per the configured source policy."""
        if signal_leverage:
            if self.leverage_source == "signal":
                return signal_leverage
            if self.leverage_source == "max":
                return max(self.leverage, signal_leverage)
        return self.leverage

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Preferences":
        """Build from a dict, ignoring keys that aren't preferences."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _choice(name: str, value: str, allowed: tuple, default: str) -> str:
    if value in allowed:
        return value
    logger.warning(f"{name}={value!r} not one of {allowed}, using {default!r}")
    return default
