from .trade_history import CapitalHistory, TradeHistory

__all__ = ["CapitalHistory", "TradeHistory"]
