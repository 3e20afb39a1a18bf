"""
Technical indicators - EMA, RSI, Bollinger Bands, MACD, OBV and ATR over candle arrays
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger

from bracketbot.core.models import Candle

# MACD slow period is the longest lookback
MIN_CANDLES = 26


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Latest indicator values for a candle series"""
    ema_fast: float
    ema_slow: float
    rsi: float
    rsi_prev: float
    bb_upper: float
    bb_middle: float
    bb_lower: float
    macd: float
    macd_signal: float
    macd_histogram: float
    obv: float
    atr: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ema": {"fast_8": self.ema_fast, "slow_21": self.ema_slow},
            "rsi": {"value_14": self.rsi, "prev_14": self.rsi_prev},
            "bollinger_bands": {"upper": self.bb_upper, "middle": self.bb_middle, "lower": self.bb_lower},
            "macd": {
                "macd_line": self.macd,
                "signal_line": self.macd_signal,
                "histogram": self.macd_histogram,
            },
            "obv": self.obv,
            "atr": {"value_14": self.atr},
        }


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    """Convert candles to a pandas DataFrame indexed by open time"""
    df = pd.DataFrame([c.to_dict() for c in candles])
    df["datetime"] = pd.to_datetime(df["open_time"], unit="ms")
    df.set_index("datetime", inplace=True)
    for col in ["open", "high", "low", "close", "volume"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def ema(series: pd.Series, length: int) -> pd.Series:
    return series.ewm(span=length, adjust=False).mean()


def rsi(close: pd.Series, length: int = 14) -> pd.Series:
    """Wilder RSI"""
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / length, adjust=False, min_periods=length).mean()
    avg_loss = loss.ewm(alpha=1.0 / length, adjust=False, min_periods=length).mean()
    rs = avg_gain / avg_loss
    out = 100.0 - (100.0 / (1.0 + rs))
    # No losses in the window means RSI is pinned at 100
    out = out.where(avg_loss != 0, 100.0)
    return out.where(avg_gain.notna())


def bollinger_bands(close: pd.Series, length: int = 20, std: float = 2.0) -> pd.DataFrame:
    middle = close.rolling(length).mean()
    dev = close.rolling(length).std(ddof=0)
    return pd.DataFrame({"upper": middle + std * dev, "middle": middle, "lower": middle - std * dev})


def macd(close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.DataFrame:
    line = ema(close, fast) - ema(close, slow)
    signal_line = ema(line, signal)
    return pd.DataFrame({"macd": line, "signal": signal_line, "histogram": line - signal_line})


def obv(close: pd.Series, volume: pd.Series) -> pd.Series:
    direction = np.sign(close.diff()).fillna(0.0)
    return (direction * volume).cumsum()


def atr(high: pd.Series, low: pd.Series, close: pd.Series, length: int = 14) -> pd.Series:
    """Wilder-smoothed Average True Range"""
    prev_close = close.shift(1)
    true_range = pd.concat(
        [high - low, (high - prev_close).abs(), (low - prev_close).abs()],
        axis=1,
    ).max(axis=1)
    return true_range.ewm(alpha=1.0 / length, adjust=False, min_periods=length).mean()


def compute_indicators(candles: Sequence[Candle]) -> Optional[IndicatorSnapshot]:
    """
    Compute the latest indicator values for a candle series

    Returns:
        IndicatorSnapshot, or None when the series is too short or any
        value is not finite.
    """
    if len(candles) < MIN_CANDLES:
        logger.debug(f"Not enough candles for a full analysis ({len(candles)} < {MIN_CANDLES})")
        return None

    df = candles_to_dataframe(candles)
    close = df["close"]

    rsi_series = rsi(close, 14)
    bb = bollinger_bands(close, 20, 2.0)
    macd_df = macd(close, 12, 26, 9)

    snapshot = IndicatorSnapshot(
        ema_fast=float(ema(close, 8).iloc[-1]),
        ema_slow=float(ema(close, 21).iloc[-1]),
        rsi=float(rsi_series.iloc[-1]),
        rsi_prev=float(rsi_series.iloc[-2]),
        bb_upper=float(bb["upper"].iloc[-1]),
        bb_middle=float(bb["middle"].iloc[-1]),
        bb_lower=float(bb["lower"].iloc[-1]),
        macd=float(macd_df["macd"].iloc[-1]),
        macd_signal=float(macd_df["signal"].iloc[-1]),
        macd_histogram=float(macd_df["histogram"].iloc[-1]),
        obv=float(obv(close, df["volume"]).iloc[-1]),
        atr=float(atr(df["high"], df["low"], close, 14).iloc[-1]),
    )

    if not all(math.isfinite(v) for v in (snapshot.rsi, snapshot.rsi_prev, snapshot.atr, snapshot.bb_middle)):
        logger.debug("Indicator values not finite, skipping analysis")
        return None

    return snapshot
