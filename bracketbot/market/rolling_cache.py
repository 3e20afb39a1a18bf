"""
Rolling Cache - fixed-capacity FIFO store of closed candles per timeframe
"""
from collections import deque
from typing import Deque, Dict, Iterable, Optional, Tuple

from loguru import logger

from bracketbot.core.models import Candle


class RollingCache:
    """Closed-candle history, oldest evicted first"""

    def __init__(self):
        self._series: Dict[str, Deque[Candle]] = {}

    def initialize(self, timeframe: str, candles: Iterable[Candle], capacity: int):
        """Replace the series outright (startup seeding from REST history)"""
        if capacity <= 0:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self._series[timeframe] = deque(candles, maxlen=capacity)
        logger.info(
            f"Cache for {timeframe} initialized with {len(self._series[timeframe])} candles "
            f"(capacity {capacity})"
        )

    def append(self, timeframe: str, candle: Candle):
        series = self._series.get(timeframe)
        if series is None:
            logger.warning(f"Cache for interval {timeframe} is not initialized. Ignoring candle.")
            return
        # deque(maxlen) drops from the head once full
        series.append(candle)

    def snapshot(self, timeframe: str) -> Tuple[Candle, ...]:
        series = self._series.get(timeframe)
        return tuple(series) if series is not None else ()

    def live_view(self, timeframe: str, in_progress: Optional[Candle]) -> Tuple[Candle, ...]:
        """Closed candles plus the still-open candle, if it is newer than the tail"""
        closed = self.snapshot(timeframe)
        if in_progress is None:
            return closed
        if closed and in_progress.open_time <= closed[-1].open_time:
            return closed
        return closed + (in_progress.copy(),)

    def size(self, timeframe: str) -> int:
        series = self._series.get(timeframe)
        return len(series) if series is not None else 0

    def capacity(self, timeframe: str) -> Optional[int]:
        series = self._series.get(timeframe)
        return series.maxlen if series is not None else None

    def is_initialized(self, timeframe: str) -> bool:
        return timeframe in self._series
