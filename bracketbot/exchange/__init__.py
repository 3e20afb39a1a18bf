from .transport import (
    AccountTransport,
    MarketDataTransport,
    OrderTransport,
    Subscription,
    with_timeout,
)

__all__ = [
    "AccountTransport",
    "MarketDataTransport",
    "OrderTransport",
    "Subscription",
    "with_timeout",
]
