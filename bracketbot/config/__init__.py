from .settings import (
    BybitSettings,
    ExecutionSettings,
    HistorySettings,
    LoggingSettings,
    MarketDataSettings,
    NotificationSettings,
    RiskSettings,
    Settings,
)

__all__ = [
    "BybitSettings",
    "ExecutionSettings",
    "HistorySettings",
    "LoggingSettings",
    "MarketDataSettings",
    "NotificationSettings",
    "RiskSettings",
    "Settings",
]
