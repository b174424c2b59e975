from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, List, Tuple


LONG = "long"
SHORT = "short"

NEW_SIGNAL = "new_signal"
EDIT_UPDATE = "edit_update"


@dataclass(frozen=True)
class TakeProfitLevel:
    """A take-profit target from the trade call."""
    level: int  # 1 for TP1, 2 for TP2, ...
    price: float
    hit: bool = False


@dataclass(frozen=True)
class DcaLevel:
    """A supplementary same-direction entry price."""
    level: int
    price: float


@dataclass(frozen=True)
class Signal:
    """A trade call parsed out of a chat message. Never mutated after parsing."""
    signal_id: str
    ticker: str  # e.g., "FOGO"
    inst_id: str  # e.g., "FOGO-USDT"
    side: str  # "long" or "short"
    entry_price: Optional[float] = None  # None = use market price at execution time
    leverage: Optional[int] = None
    trader_name: Optional[str] = None
    tp_levels: Tuple[TakeProfitLevel, ...] = ()
    dca_levels: Tuple[DcaLevel, ...] = ()
    final_pnl: Optional[str] = None  # e.g., "+42.5%"
    is_closed: bool = False
    is_triggered: bool = False
    message_type: str = NEW_SIGNAL  # "new_signal" or "edit_update"
    raw_content: str = ""

    @property
    def is_long(self) -> bool:
        return self.side == LONG

    @property
    def position_side(self) -> str:
        return LONG if self.is_long else SHORT

    @property
    def order_side(self) -> str:
        """Exchange side for opening the position."""
        return "buy" if self.is_long else "sell"

    @property
    def close_side(self) -> str:
        """Exchange side for closing the position."""
        return "sell" if self.is_long else "buy"

    @property
    def hit_tp_levels(self) -> List[int]:
        return [tp.level for tp in self.tp_levels if tp.hit]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tp_levels"] = [asdict(tp) for tp in self.tp_levels]
        data["dca_levels"] = [asdict(dca) for dca in self.dca_levels]
        data.pop("raw_content", None)
        return data


@dataclass(frozen=True)
class EditDiff:
    """What changed between two versions of the same message."""
    tp_hits: Tuple[int, ...] = ()  # newly hit take-profit levels
    is_closed: bool = False  # True only on the open -> closed transition
    final_pnl: Optional[str] = None
    approximated: bool = False  # True when no prior text was available to diff against

    def to_dict(self) -> dict:
        return {
            "tp_hits": list(self.tp_hits),
            "is_closed": self.is_closed,
            "final_pnl": self.final_pnl,
            "approximated": self.approximated,
        }


@dataclass
class ChatMessage:
    """A message-arrived event from the chat gateway."""
    content: str
    message_id: str
    channel_id: Optional[str] = None
    author: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ChatMessageEdit:
    """A message-edited event from the chat gateway."""
    content: str
    message_id: str
    old_content: Optional[str] = None
    channel_id: Optional[str] = None
