"""
Candle Aggregator - builds in-progress OHLCV candles from trade ticks
"""
from typing import Dict, Optional

from bracketbot.core.models import Candle, Tick


_UNIT_MS = {"m": 60_000, "h": 3_600_000}


def interval_to_ms(interval: str) -> int:
    """Convert an interval label like '1m' or '4h' to milliseconds"""
    try:
        return int(interval[:-1]) * _UNIT_MS[interval[-1]]
    except (KeyError, ValueError, IndexError):
        raise ValueError(f"Unsupported interval: {interval}") from None


class CandleAggregator:
    """
    Rolls ticks into one in-progress candle per timeframe.

    The aggregator never writes to the rolling cache. When a tick opens a new
    interval, update() hands back a frozen copy of the candle that just closed
    and the caller decides where it goes. The same instance therefore works
    unchanged for live trading and for backtest replay.
    """

    def __init__(self, intervals_ms: Dict[str, int]):
        self.intervals_ms = dict(intervals_ms)
        self._building: Dict[str, Optional[Candle]] = {tf: None for tf in self.intervals_ms}

    @classmethod
    def for_intervals(cls, *intervals: str) -> "CandleAggregator":
        return cls({tf: interval_to_ms(tf) for tf in intervals})

    def update(self, timeframe: str, tick: Tick) -> Optional[Candle]:
        """
        Fold a tick into the timeframe's in-progress candle

        Returns:
            The candle that closed because this tick started a new interval,
            or None if the tick landed in the current interval.
        """
        interval_ms = self.intervals_ms[timeframe]
        open_time = (tick.timestamp_ms // interval_ms) * interval_ms
        candle = self._building[timeframe]

        if candle is None or candle.open_time != open_time:
            self._building[timeframe] = Candle(
                open_time=open_time,
                open=tick.price,
                high=tick.price,
                low=tick.price,
                close=tick.price,
                volume=tick.quantity,
            )
            return candle.copy() if candle is not None else None

        candle.high = max(candle.high, tick.price)
        candle.low = min(candle.low, tick.price)
        candle.close = tick.price
        candle.volume += tick.quantity
        return None

    def current(self, timeframe: str) -> Optional[Candle]:
        return self._building[timeframe]

    def reset(self):
        for tf in self._building:
            self._building[tf] = None
