from .models import (
    AccountContext,
    AccountState,
    Candle,
    CapitalEntry,
    ClosedPnl,
    Decision,
    MarkPriceUpdate,
    OrderRequest,
    OrderResult,
    OrderType,
    Position,
    RiskDecision,
    Side,
    Tick,
    Trade,
)

__all__ = [
    "AccountContext",
    "AccountState",
    "Candle",
    "CapitalEntry",
    "ClosedPnl",
    "Decision",
    "MarkPriceUpdate",
    "OrderRequest",
    "OrderResult",
    "OrderType",
    "Position",
    "RiskDecision",
    "Side",
    "Tick",
    "Trade",
]
