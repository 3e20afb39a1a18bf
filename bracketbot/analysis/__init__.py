from .indicators import IndicatorSnapshot, compute_indicators

__all__ = ["IndicatorSnapshot", "compute_indicators"]
