"""
Backtest Simulator - Replays recorded trades through the live signal and risk pipeline
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from loguru import logger

from bracketbot.analysis.indicators import compute_indicators
from bracketbot.config.settings import ExecutionSettings, MarketDataSettings, RiskSettings
from bracketbot.core.models import AccountContext, Decision, Side, Tick, Trade
from bracketbot.execution.order_executor import Bracket, compute_bracket
from bracketbot.market.candle_aggregator import CandleAggregator
from bracketbot.market.rolling_cache import RollingCache
from bracketbot.risk.risk_gate import RiskGate
from bracketbot.strategy.signal_engine import SignalEngine


TAKER_FEE = 0.0005  # 0.05% per side


def load_trades(path: Path) -> List[Tick]:
    """Read a JSON list of aggregated trades ({"p": price, "q": qty, "T": ms})"""
    with open(path, "r", encoding="utf-8") as f:
        rows = json.load(f)
    ticks = []
    for row in rows:
        try:
            ticks.append(Tick(price=float(row["p"]), quantity=float(row["q"]), timestamp_ms=int(row["T"])))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Skipping malformed trade row: {e}")
    return ticks


def _day_of(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass
class BacktestSummary:
    initial_equity: float
    final_equity: float
    total_pnl: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    average_win: float
    average_loss: float


class SimulatedAccount:
    """Equity ledger for a replay"""

    def __init__(self, starting_capital: float):
        self.initial_equity = starting_capital
        self.equity = starting_capital
        self.trades: List[Trade] = []

    def trades_on(self, day: str) -> List[Trade]:
        return [t for t in self.trades if _day_of(t.timestamp) == day]

    def context_at(self, timestamp_ms: int) -> AccountContext:
        todays = self.trades_on(_day_of(timestamp_ms))
        return AccountContext(
            equity=self.equity,
            available_balance=self.equity,
            unrealized_pnl=0.0,
            realized_pnl_daily=sum(t.pnl for t in todays),
            trade_count_daily=len(todays),
        )

    def add_trade(self, trade: Trade):
        self.trades.append(trade)
        self.equity += trade.pnl

    def summary(self) -> BacktestSummary:
        wins = [t.pnl for t in self.trades if t.pnl > 0]
        losses = [t.pnl for t in self.trades if t.pnl <= 0]
        total = len(self.trades)
        return BacktestSummary(
            initial_equity=self.initial_equity,
            final_equity=self.equity,
            total_pnl=self.equity - self.initial_equity,
            total_trades=total,
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=(len(wins) / total * 100) if total else 0.0,
            average_win=(sum(wins) / len(wins)) if wins else 0.0,
            average_loss=(sum(losses) / len(losses)) if losses else 0.0,
        )

    def print_summary(self):
        s = self.summary()
        logger.info("--- Backtest summary ---")
        logger.info(f"Initial capital:  {s.initial_equity:.2f} USD")
        logger.info(f"Final capital:    {s.final_equity:.2f} USD")
        logger.info(f"Total PnL:        {s.total_pnl:.2f} USD")
        logger.info(f"Trades:           {s.total_trades} ({s.winning_trades} won / {s.losing_trades} lost)")
        logger.info(f"Win rate:         {s.win_rate:.2f}%")
        logger.info(f"Average win:      {s.average_win:.4f} USD")
        logger.info(f"Average loss:     {s.average_loss:.4f} USD")


@dataclass
class OpenPosition:
    bracket: Bracket
    entry_price: float
    opened_at: int


def close_trade(
    trade_id: str,
    symbol: str,
    position: OpenPosition,
    exit_price: float,
    fee_rate: float = TAKER_FEE,
) -> Trade:
    """Net PnL after paying the fee on both legs"""
    size = position.bracket.quantity
    entry = position.entry_price
    if position.bracket.side is Side.BUY:
        gross = (exit_price - entry) * size
    else:
        gross = (entry - exit_price) * size
    fees = (entry * size + exit_price * size) * fee_rate
    return Trade(
        id=trade_id,
        symbol=symbol,
        side=position.bracket.side,
        entry_price=entry,
        exit_price=exit_price,
        size=size,
        pnl=gross - fees,
        timestamp=position.opened_at,
        stop_loss_price=position.bracket.stop_loss,
        take_profit_price=position.bracket.take_profit,
    )


class Backtester:
    """
    Feeds ticks through the same aggregator, cache, indicators, signal and
    risk gate as the live bot. One position at a time; it is resolved by the
    first later tick that reaches the stop or the target.
    """

    def __init__(
        self,
        market: MarketDataSettings,
        risk: RiskSettings,
        execution: ExecutionSettings,
        starting_capital: float = 100.0,
        fee_rate: float = TAKER_FEE,
        signal_engine: Optional[SignalEngine] = None,
        evaluate_every_tick: bool = False,
    ):
        """
        Args:
            evaluate_every_tick: By default signals are evaluated once per new
                fast candle, which is orders of magnitude faster on a month of ticks.
        """
        self.market = market
        self.risk = risk
        self.execution = execution
        self.fee_rate = fee_rate
        self.signal_engine = signal_engine or SignalEngine()
        self.evaluate_every_tick = evaluate_every_tick

        self.account = SimulatedAccount(starting_capital)
        self.risk_gate = RiskGate(risk)
        self.aggregator = CandleAggregator.for_intervals(market.fast_interval, market.slow_interval)
        self.cache = RollingCache()
        self.cache.initialize(market.fast_interval, [], market.fast_cache_limit)
        self.cache.initialize(market.slow_interval, [], market.slow_cache_limit)

        self._position: Optional[OpenPosition] = None
        self._trade_counter = 0

    def run(self, ticks: Iterable[Tick]) -> SimulatedAccount:
        processed = 0
        for tick in ticks:
            if not tick.is_valid():
                continue
            processed += 1
            fast_closed = self._ingest(tick)

            if self._position is not None:
                self._resolve(tick)
                continue

            if fast_closed or self.evaluate_every_tick:
                self._evaluate(tick)

        if self._position is not None:
            logger.info("Replay ended with an unresolved position; it is ignored")
            self._position = None
        logger.info(f"Replayed {processed} ticks, {len(self.account.trades)} trades closed")
        return self.account

    def _ingest(self, tick: Tick) -> bool:
        fast_closed = False
        for timeframe in (self.market.fast_interval, self.market.slow_interval):
            closed = self.aggregator.update(timeframe, tick)
            if closed is not None:
                self.cache.append(timeframe, closed)
                fast_closed = fast_closed or timeframe == self.market.fast_interval
        return fast_closed

    def _evaluate(self, tick: Tick):
        fast_tf, slow_tf = self.market.fast_interval, self.market.slow_interval
        fast = self.cache.live_view(fast_tf, self.aggregator.current(fast_tf))
        slow = self.cache.live_view(slow_tf, self.aggregator.current(slow_tf))
        if len(fast) < self.market.min_fast_candles or len(slow) < self.market.min_slow_candles:
            return

        indicators = compute_indicators(fast)
        if indicators is None:
            return
        decision = self.signal_engine.decide(fast, slow, indicators)
        if decision is Decision.WAIT:
            return

        decision_gate = self.risk_gate.check(self.account.context_at(tick.timestamp_ms))
        if not decision_gate.is_trading_allowed:
            return

        bracket = compute_bracket(
            decision.to_side(),
            tick.price,
            indicators.atr,
            decision_gate.position_size_usd,
            atr_multiplier=self.execution.atr_stop_multiplier,
            reward_ratio=self.risk.risk_reward_ratio,
            quantity_precision=self.execution.quantity_precision,
        )
        if bracket is None:
            return
        self._position = OpenPosition(bracket=bracket, entry_price=tick.price, opened_at=tick.timestamp_ms)

    def _resolve(self, tick: Tick):
        position = self._position
        bracket = position.bracket
        if bracket.side is Side.BUY:
            hit_stop = tick.price <= bracket.stop_loss
            hit_target = tick.price >= bracket.take_profit
        else:
            hit_stop = tick.price >= bracket.stop_loss
            hit_target = tick.price <= bracket.take_profit
        if not (hit_stop or hit_target):
            return

        exit_price = bracket.stop_loss if hit_stop else bracket.take_profit
        trade = close_trade(f"sim-{self._trade_counter}", self.market.symbol, position, exit_price, self.fee_rate)
        self._trade_counter += 1
        self._position = None
        self.account.add_trade(trade)
        logger.info(
            f"[{datetime.fromtimestamp(tick.timestamp_ms / 1000, tz=timezone.utc).isoformat()}] "
            f"Trade {trade.side.value} closed. PnL: {trade.pnl:.4f} USD. Equity: {self.account.equity:.2f} USD"
        )
