"""Abstract base class for exchange clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List


class ErrorCategory(str, Enum):
    """Classification of exchange failures, assigned by the transport."""
    ALREADY_SET = "already_set"  # margin mode / leverage unchanged
    RATE_LIMITED = "rate_limited"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REJECTED = "rejected"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ExchangeError(Exception):
    """An exchange request failed (transport error or non-success response code)."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        path: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.category = category
        self.path = path

    @property
    def is_already_set(self) -> bool:
        return self.category == ErrorCategory.ALREADY_SET


@dataclass
class Position:
    """Represents an open swap position."""
    inst_id: str
    position_side: str  # "long", "short" or "net"
    positions: float  # contracts, signed for net mode
    average_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    margin_mode: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.positions != 0


@dataclass
class Order:
    """Represents an order."""
    order_id: Optional[str]
    inst_id: str
    side: str  # "buy" or "sell"
    size: float
    order_type: str  # "market", "limit", ...
    state: str  # "live", "partially_filled", "filled", "canceled", ...
    price: Optional[float] = None
    filled_size: Optional[float] = None
    average_price: Optional[float] = None

    @property
    def is_filled(self) -> bool:
        return self.state == "filled"


class ExchangeClient(ABC):
    """Abstract base class for exchange clients. All calls are blocking."""

    @abstractmethod
    def get_instruments(self) -> List[str]:
        """
        List tradeable perpetual swap instruments.

        Returns:
            Instrument ids, e.g. ["BTC-USDT", "FOGO-USDT"]
        """
        pass

    @abstractmethod
    def get_positions(self, inst_id: Optional[str] = None) -> List[Position]:
        """
        Get open positions.

        Args:
            inst_id: Limit to one instrument

        Returns:
            List of Position objects
        """
        pass

    @abstractmethod
    def set_margin_mode(self, margin_mode: str) -> None:
        """
        Set the account margin mode ("cross" or "isolated").

        Raises:
            ExchangeError with category ALREADY_SET when nothing changes
        """
        pass

    @abstractmethod
    def set_leverage(self, inst_id: str, leverage: int, margin_mode: str, position_side: str) -> None:
        """
        Set leverage for one instrument and position side.

        Raises:
            ExchangeError with category ALREADY_SET when nothing changes
        """
        pass

    @abstractmethod
    def get_available_balance(self) -> float:
        """Available futures balance in the quote currency."""
        pass

    @abstractmethod
    def get_mark_price(self, inst_id: str) -> Optional[float]:
        """Current mark price, or None if unavailable."""
        pass

    @abstractmethod
    def get_last_price(self, inst_id: str) -> Optional[float]:
        """Last traded price from the ticker, or None if unavailable."""
        pass

    @abstractmethod
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
        """
        Submit an order.

        Args:
            inst_id: Instrument id
            side: "buy" or "sell"
            position_side: "long", "short" or "net"
            order_type: "market" or "limit"
            size: Number of contracts
            margin_mode: "cross" or "isolated"
            price: Limit price (ignored for market orders)
            reduce_only: Only reduce an existing position

        Returns:
            Order object; order_id is None if the exchange returned none
        """
        pass

    @abstractmethod
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
        """
        Attach a stop-loss (market execution) to a position.

        Returns:
            TP/SL order id
        """
        pass

    @abstractmethod
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
        """
        Place a standalone trigger order executing at market.

        Returns:
            Algo order id
        """
        pass

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]:
        """Get order detail by id, or None if unknown."""
        pass

    @abstractmethod
    def close_positions(self, inst_id: str, margin_mode: str) -> None:
        """Close every position on an instrument at market."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Exchange name for display."""
        pass

    @property
    def is_demo(self) -> bool:
        return False
