from .decision_loop import CycleResult, DecisionLoop, TradingContext
from .events import EventChannel, MarkPriceEvent, TimerTickEvent, TradeTickEvent

__all__ = [
    "CycleResult",
    "DecisionLoop",
    "EventChannel",
    "MarkPriceEvent",
    "TimerTickEvent",
    "TradeTickEvent",
    "TradingContext",
]
