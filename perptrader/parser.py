import hashlib
import math
import re
from datetime import datetime
from typing import Collection, Dict, Optional, Tuple

from .models import (
    Signal, TakeProfitLevel, DcaLevel, EditDiff,
    LONG, SHORT, NEW_SIGNAL, EDIT_UPDATE,
)

# Shorter messages can't carry a full trade call
MIN_CONTENT_LENGTH = 10

QUOTE_CURRENCY = "USDT"

# "SHORT SIGNAL - FOGO/USDT"
SIDE_HEADER_RE = re.compile(r'\b(LONG|SHORT)\s+SIGNAL\b', re.IGNORECASE)
SIDE_WORD_RE = re.compile(r'\b(LONG|SHORT)\b', re.IGNORECASE)
SHORT_HEADER_TICKER_RE = re.compile(
    r'\b(?:LONG|SHORT)\s+SIGNAL\s*[-–—]\s*([A-Z0-9]+)\s*/?\s*USDT\b', re.IGNORECASE
)
# "NEW SIGNAL • FOGO • Entry $0.02936"
NEW_HEADER_TICKER_RE = re.compile(r'\bNEW\s+SIGNAL\s*[•·]\s*([A-Z0-9]+)\s*[•·]', re.IGNORECASE)

TRADER_BANK_RE = re.compile(r'@([A-Za-z0-9][\w ]*?)\s*\U0001F3E6')
TRADER_LABEL_RE = re.compile(r'\bTrader:\s*@?(\S+)', re.IGNORECASE)

LEVERAGE_RE = re.compile(r'\bLeverage\s*:?\s*([\d.,]+)\s*x', re.IGNORECASE)
ENTRY_RE = re.compile(r'\bEntry(?:\s+Price)?\s*:?\s*[$€£]?\s*([\d.,]+)', re.IGNORECASE)
TP_RE = re.compile(
    r'\bTP\s*(\d+)\s*:?\s*[$€£]?\s*([\d.,]+)(?P<hit>[ \t]*(?:✅[ \t]*)?HIT\b)?', re.IGNORECASE
)
TP_HIT_MARKER_RE = re.compile(r'✅\s*TP\s*(\d+)', re.IGNORECASE)
DCA_RE = re.compile(r'\bDCA\s*(\d+)\s*:?\s*[$€£]?\s*([\d.,]+)', re.IGNORECASE)

CLOSED_RE = re.compile(r'\b(?:TRADE\s+)?CLOSED\b', re.IGNORECASE)
TRIGGERED_RE = re.compile(r'\bTRIGGERED\b', re.IGNORECASE)

# Most specific first
FINAL_PNL_PATTERNS = [
    re.compile(r'Final\s+P&L\s*:\s*([+-]?[\d.]+%)', re.IGNORECASE),
    re.compile(r'Final\s+profit\s*:\s*([+-]?[\d.]+%)', re.IGNORECASE),
    re.compile(r'P&L\s*:\s*([+-]?[\d.]+%)', re.IGNORECASE),
]

_NUMBER_NOISE_RE = re.compile(r'[\s,$€£]')


def parse_number(value: Optional[str]) -> Optional[float]:
    """Parse '1,234.5', '$0.02936', '25' into a positive float.

    Returns None for non-numeric, non-finite, zero or negative values.
    """
    if value is None:
        return None

    cleaned = _NUMBER_NOISE_RE.sub('', str(value)).rstrip('.')
    try:
        number = float(cleaned)
    except ValueError:
        return None

    if not math.isfinite(number) or number <= 0:
        return None
    return number


def parse_side(text: str) -> Optional[str]:
    """Return "long"/"short", or None when the direction is missing or ambiguous."""
    match = SIDE_HEADER_RE.search(text)
    if match:
        return match.group(1).lower()

    sides = {m.group(1).lower() for m in SIDE_WORD_RE.finditer(text)}
    if len(sides) == 1:
        return sides.pop()
    return None


def parse_ticker(text: str) -> Optional[str]:
    """Extract the base ticker from either header shape (first shape wins)."""
    for pattern in (SHORT_HEADER_TICKER_RE, NEW_HEADER_TICKER_RE):
        match = pattern.search(text)
        if match:
            ticker = match.group(1).upper()
            if ticker.endswith(QUOTE_CURRENCY) and len(ticker) > len(QUOTE_CURRENCY):
                ticker = ticker[:-len(QUOTE_CURRENCY)]
            return ticker
    return None


def to_inst_id(ticker: str) -> str:
    return f"{ticker}-{QUOTE_CURRENCY}"


def parse_trader_name(text: str) -> Optional[str]:
    for pattern in (TRADER_BANK_RE, TRADER_LABEL_RE):
        match = pattern.search(text)
        if match:
            name = match.group(1).strip()
            if name:
                return name
    return None


def parse_leverage(text: str) -> Optional[int]:
    match = LEVERAGE_RE.search(text)
    if not match:
        return None
    value = parse_number(match.group(1))
    if value is None:
        return None
    leverage = int(round(value))
    return leverage if leverage > 0 else None


def parse_entry_price(text: str) -> Optional[float]:
    match = ENTRY_RE.search(text)
    if not match:
        return None
    return parse_number(match.group(1))


def parse_tp_levels(text: str) -> Tuple[TakeProfitLevel, ...]:
    """
    Extract take-profit levels ordered by level number.

    A level is hit when it carries a "HIT" suffix or a check-mark prefix;
    both forms merge into one entry per level.
    """
    prices: Dict[int, float] = {}
    hits = set()

    for match in TP_RE.finditer(text):
        level = int(match.group(1))
        price = parse_number(match.group(2))
        if price is None:
            continue
        prices.setdefault(level, price)
        if match.group('hit'):
            hits.add(level)

    for match in TP_HIT_MARKER_RE.finditer(text):
        hits.add(int(match.group(1)))

    return tuple(
        TakeProfitLevel(level=level, price=prices[level], hit=level in hits)
        for level in sorted(prices)
    )


def parse_dca_levels(text: str) -> Tuple[DcaLevel, ...]:
    prices: Dict[int, float] = {}
    for match in DCA_RE.finditer(text):
        price = parse_number(match.group(2))
        if price is not None:
            prices.setdefault(int(match.group(1)), price)
    return tuple(DcaLevel(level=level, price=prices[level]) for level in sorted(prices))


def parse_is_closed(text: str) -> bool:
    return bool(CLOSED_RE.search(text))


def parse_is_triggered(text: str) -> bool:
    return bool(TRIGGERED_RE.search(text))


def parse_final_pnl(text: str) -> Optional[str]:
    for pattern in FINAL_PNL_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def make_signal_id(
    message_id: Optional[str],
    side: str,
    inst_id: str,
    entry_price: Optional[float],
    timestamp: Optional[datetime] = None,
) -> str:
    """Deterministic 12-char id from the message id, or side/instrument/price/time without one."""
    if message_id:
        key = str(message_id)
    else:
        timestamp = timestamp or datetime.utcnow()
        key = f"{side}-{inst_id}-{entry_price}-{timestamp.isoformat()}"
    return hashlib.md5(key.encode("utf-8")).hexdigest()[:12]


def parse_signal(
    content: Optional[str],
    message_id: Optional[str] = None,
    seen_message_ids: Collection[str] = (),
    timestamp: Optional[datetime] = None,
) -> Optional[Signal]:
    """
    Parse a trade call out of a chat message.

    Args:
        content: Message text with any embed text already flattened in
        message_id: Chat message id (drives the signal id)
        seen_message_ids: Message ids already seen, to tell new calls from edits
        timestamp: Used for the signal id only when there is no message id

    Returns:
        Signal, or None if the text has no clear direction or ticker
    """
    if not content or len(content.strip()) < MIN_CONTENT_LENGTH:
        return None

    side = parse_side(content)
    ticker = parse_ticker(content)
    if side is None or ticker is None:
        return None

    inst_id = to_inst_id(ticker)
    entry_price = parse_entry_price(content)

    return Signal(
        signal_id=make_signal_id(message_id, side, inst_id, entry_price, timestamp),
        ticker=ticker,
        inst_id=inst_id,
        side=side,
        entry_price=entry_price,
        leverage=parse_leverage(content),
        trader_name=parse_trader_name(content),
        tp_levels=parse_tp_levels(content),
        dca_levels=parse_dca_levels(content),
        final_pnl=parse_final_pnl(content),
        is_closed=parse_is_closed(content),
        is_triggered=parse_is_triggered(content),
        message_type=EDIT_UPDATE if message_id and message_id in seen_message_ids else NEW_SIGNAL,
        raw_content=content,
    )


def diff_signals(previous: Optional[Signal], current: Signal) -> EditDiff:
    """Compare two parses of the same message."""
    already_hit = set(previous.hit_tp_levels) if previous else set()
    was_closed = previous.is_closed if previous else False

    return EditDiff(
        tp_hits=tuple(level for level in current.hit_tp_levels if level not in already_hit),
        is_closed=current.is_closed and not was_closed,
        final_pnl=current.final_pnl,
    )


def approximate_edit_diff(current: Signal) -> EditDiff:
    """
    Diff from the new parse alone, used when the prior text is unknown.

    Every hit level counts as newly hit and closure is taken at face value,
    so the first edit seen after a restart can over-report TP hits.
    """
    return EditDiff(
        tp_hits=tuple(current.hit_tp_levels),
        is_closed=current.is_closed,
        final_pnl=current.final_pnl,
        approximated=True,
    )


def parse_edit(
    old_content: Optional[str],
    new_content: str,
    message_id: Optional[str] = None,
) -> Tuple[Optional[Signal], EditDiff]:
    """
    Parse an edited message and work out what the edit changed.

    Returns:
        Tuple of (current signal or None if the new text is not a call, diff)
    """
    current = parse_signal(new_content, message_id=message_id)
    if current is None:
        return None, EditDiff()
    if not old_content:
        return current, approximate_edit_diff(current)
    return current, diff_signals(parse_signal(old_content, message_id=message_id), current)


def parse_edit_diff(old_content: Optional[str], new_content: str, message_id: Optional[str] = None) -> EditDiff:
    """Work out what an edit changed: newly hit TPs, closure, final P&L."""
    return parse_edit(old_content, new_content, message_id=message_id)[1]
