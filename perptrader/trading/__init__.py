"""Exchange client abstraction layer."""

import os
from typing import Optional

from .base import ExchangeClient, ExchangeError, ErrorCategory, Position, Order
from .blofin import BlofinClient
from ..rate_limit import RateLimiter


def get_exchange_client(
    backend: Optional[str] = None,
    demo: bool = True,
    trading_limiter: Optional[RateLimiter] = None,
    general_limiter: Optional[RateLimiter] = None,
) -> ExchangeClient:
    """
    Factory to get an exchange client.

    Args:
        backend: Exchange backend to use. Defaults to EXCHANGE_BACKEND env var or "blofin"
        demo: Whether to use the demo trading environment (default True)
        trading_limiter: Throttle for order/position endpoints
        general_limiter: Throttle for everything else

    Returns:
        ExchangeClient instance
    """
    backend = backend or os.getenv("EXCHANGE_BACKEND", "blofin")

    if backend == "blofin":
        return BlofinClient(
            demo=demo,
            trading_limiter=trading_limiter,
            general_limiter=general_limiter,
        )
    else:
        raise ValueError(f"Unknown exchange backend: {backend}")


__all__ = [
    "ExchangeClient",
    "ExchangeError",
    "ErrorCategory",
    "Position",
    "Order",
    "BlofinClient",
    "get_exchange_client",
]
