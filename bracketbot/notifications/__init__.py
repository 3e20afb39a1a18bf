from .alerts import AlertChannel, AlertDispatcher, Severity
from .telegram_notifier import TelegramNotifier

__all__ = ["AlertChannel", "AlertDispatcher", "Severity", "TelegramNotifier"]
