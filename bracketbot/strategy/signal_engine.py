"""
Signal Engine - slow-timeframe trend filter plus fast-timeframe RSI momentum
"""
from typing import Optional, Sequence

from loguru import logger

from bracketbot.analysis.indicators import IndicatorSnapshot, candles_to_dataframe, compute_indicators, ema
from bracketbot.core.models import Candle, Decision


class SignalEngine:
    """
    BUY when the slow timeframe closes above its EMA and RSI turns up from
    below the buy ceiling; SELL on the mirror image; WAIT otherwise.
    """

    def __init__(
        self,
        trend_ema_length: int = 20,
        buy_rsi_ceiling: float = 55.0,
        sell_rsi_floor: float = 45.0,
    ):
        self.trend_ema_length = trend_ema_length
        self.buy_rsi_ceiling = buy_rsi_ceiling
        self.sell_rsi_floor = sell_rsi_floor

    def decide(
        self,
        fast_candles: Sequence[Candle],
        slow_candles: Sequence[Candle],
        indicators: Optional[IndicatorSnapshot] = None,
    ) -> Decision:
        """
        Args:
            fast_candles: Fast timeframe series (RSI momentum)
            slow_candles: Slow timeframe series (trend)
            indicators: Precomputed fast-timeframe indicators, computed here if omitted
        """
        if len(slow_candles) < self.trend_ema_length:
            logger.warning("[SIGNAL] Not enough slow candles for the trend EMA. Decision: WAIT")
            return Decision.WAIT

        slow_close = candles_to_dataframe(slow_candles)["close"]
        trend_ema = float(ema(slow_close, self.trend_ema_length).iloc[-1])
        uptrend = float(slow_close.iloc[-1]) > trend_ema

        if indicators is None:
            indicators = compute_indicators(fast_candles)
        if indicators is None:
            logger.warning("[SIGNAL] Not enough fast candles for RSI. Decision: WAIT")
            return Decision.WAIT

        rsi_now, rsi_prev = indicators.rsi, indicators.rsi_prev

        if uptrend and rsi_prev < self.buy_rsi_ceiling and rsi_now > rsi_prev:
            logger.info(f"[SIGNAL] BUY (uptrend, RSI {rsi_prev:.1f} -> {rsi_now:.1f})")
            return Decision.BUY
        if not uptrend and rsi_prev > self.sell_rsi_floor and rsi_now < rsi_prev:
            logger.info(f"[SIGNAL] SELL (downtrend, RSI {rsi_prev:.1f} -> {rsi_now:.1f})")
            return Decision.SELL

        return Decision.WAIT
