"""Dedicated logger for exchange actions (entries, stops, DCA legs, emergency closes)."""

import logging
from pathlib import Path
from typing import Optional

# Create a dedicated logger for trade executions
trade_logger = logging.getLogger("trade_executions")
trade_logger.setLevel(logging.INFO)
trade_logger.propagate = False  # Don't propagate to root logger


def configure_trade_log(logs_dir: Path) -> logging.Handler:
    """Attach the trades.log file handler. Called once by the bootstrap."""
    logs_dir.mkdir(parents=True, exist_ok=True)

    # Format: timestamp [ACTION] instId size @ price | details
    handler = logging.FileHandler(logs_dir / "trades.log")
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter('%(asctime)s [%(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
    trade_logger.addHandler(handler)
    return handler


def _price(price: Optional[float]) -> str:
    return f"{price:.8g}" if price else "market"


def log_order_submission(inst_id: str, side: str, size: float, order_type: str,
                         price: Optional[float], leverage: int, order_id: Optional[str],
                         trader_name: Optional[str] = None):
    """Log an entry order accepted by the exchange."""
    details = f"lev={leverage}x order={order_id}"
    if trader_name:
        details += f" trader={trader_name}"
    trade_logger.info(f"{side.upper()}_ORDER] {inst_id}: {size} @ {_price(price)} ({order_type}) | {details}")


def log_dca_order(inst_id: str, side: str, level: int, size: float, price: float,
                  order_id: Optional[str] = None, error: Optional[str] = None):
    if error:
        trade_logger.info(f"DCA{level}_FAILED] {inst_id}: {side} {size} @ {_price(price)} | {error}")
    else:
        trade_logger.info(f"DCA{level}_ORDER] {inst_id}: {side} {size} @ {_price(price)} | order={order_id}")


def log_stop_placed(inst_id: str, stop_type: str, stop_price: float, size: float,
                    order_id: str, stop_id: Optional[str]):
    trade_logger.info(f"STOP] {inst_id}: {size} @ {_price(stop_price)} ({stop_type}) | entry={order_id} stop={stop_id}")


def log_stop_failed(inst_id: str, stop_price: float, size: float, order_id: str, reason: str):
    """Position is open with no protective stop."""
    trade_logger.info(f"STOP_FAILED] {inst_id}: {size} @ {_price(stop_price)} | entry={order_id} UNPROTECTED reason={reason}")


def log_emergency_close(inst_id: str, margin_mode: str, error: Optional[str] = None):
    status = f"FAILED {error}" if error else "ok"
    trade_logger.info(f"EMERGENCY_CLOSE] {inst_id} ({margin_mode}) | {status}")
