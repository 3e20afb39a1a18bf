from .candle_aggregator import CandleAggregator, interval_to_ms
from .rolling_cache import RollingCache

__all__ = ["CandleAggregator", "RollingCache", "interval_to_ms"]
