"""
Decision Loop - Turns market events into at most one in-flight trading cycle
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

from loguru import logger

from bracketbot.analysis.indicators import compute_indicators
from bracketbot.core.errors import PositionAlreadyManagedError, TransportError
from bracketbot.core.models import AccountContext, CapitalEntry, Decision, Tick
from bracketbot.engine.events import EventChannel, MarkPriceEvent, TimerTickEvent, TradeTickEvent
from bracketbot.exchange.transport import AccountTransport, with_timeout
from bracketbot.execution.order_executor import ExecutionState, OrderExecutionEngine
from bracketbot.history.trade_history import CapitalHistory
from bracketbot.market.candle_aggregator import CandleAggregator
from bracketbot.market.rolling_cache import RollingCache
from bracketbot.notifications.alerts import AlertDispatcher, Severity
from bracketbot.positions.position_monitor import MonitorState, PositionMonitor
from bracketbot.risk.account_context import AccountContextBuilder
from bracketbot.risk.risk_gate import RiskGate
from bracketbot.strategy.signal_engine import SignalEngine


class CycleResult(str, Enum):
    SKIPPED_BUSY = "skipped_busy"
    INSUFFICIENT_DATA = "insufficient_data"
    WAIT = "wait"
    POSITION_OPEN = "position_open"
    CONTEXT_UNAVAILABLE = "context_unavailable"
    RISK_DENIED = "risk_denied"
    EXECUTED = "executed"
    NOT_EXECUTED = "not_executed"


@dataclass
class TradingContext:
    """Mutable market state owned by one decision loop"""
    symbol: str
    fast_interval: str
    slow_interval: str
    cache: RollingCache
    aggregator: CandleAggregator
    monitor: PositionMonitor
    min_fast_candles: int = 250
    min_slow_candles: int = 100


class DecisionLoop:
    """
    Single consumer of the event channel.

    Every valid tick is folded into the candles, but a cycle only starts when
    none is running; triggers arriving meanwhile are dropped and counted.
    """

    def __init__(
        self,
        context: TradingContext,
        channel: EventChannel,
        signal_engine: SignalEngine,
        risk_gate: RiskGate,
        account_builder: AccountContextBuilder,
        executor: OrderExecutionEngine,
        account: AccountTransport,
        notifier: AlertDispatcher,
        capital_history: Optional[CapitalHistory] = None,
        timer_interval_s: float = 15.0,
        exchange_timeout_s: float = 10.0,
    ):
        self.context = context
        self.channel = channel
        self.signal_engine = signal_engine
        self.risk_gate = risk_gate
        self.account_builder = account_builder
        self.executor = executor
        self.account = account
        self.notifier = notifier
        self.capital_history = capital_history
        self.timer_interval_s = timer_interval_s
        self.exchange_timeout_s = exchange_timeout_s

        self._cycle_lock = asyncio.Lock()
        self._cycle_task: Optional[asyncio.Task] = None
        self._trading_day = date.today()

        self.cycles_run = 0
        self.dropped_cycles = 0
        self.invalid_ticks = 0

    # ---- Tick ingestion ----------------------------------------------------

    def ingest_tick(self, tick: Tick) -> bool:
        """Fold a tick into both timeframes; closed candles go to the cache"""
        if not tick.is_valid():
            self.invalid_ticks += 1
            logger.warning(f"Dropping malformed tick: {tick}")
            return False

        ctx = self.context
        for timeframe in (ctx.fast_interval, ctx.slow_interval):
            closed = ctx.aggregator.update(timeframe, tick)
            if closed is not None:
                ctx.cache.append(timeframe, closed)
                logger.debug(f"New {timeframe} candle closed @ {closed.close}")
        return True

    async def on_tick(self, tick: Tick) -> Optional[CycleResult]:
        """Ingest a tick and run a cycle inline"""
        if not self.ingest_tick(tick):
            return None
        return await self.run_cycle()

    # ---- Cycle -------------------------------------------------------------

    async def run_cycle(self, reconcile: bool = False) -> CycleResult:
        if self._cycle_lock.locked():
            self.dropped_cycles += 1
            return CycleResult.SKIPPED_BUSY
        async with self._cycle_lock:
            self.cycles_run += 1
            return await self._cycle(reconcile)

    async def _cycle(self, reconcile: bool) -> CycleResult:
        ctx = self.context

        if reconcile and ctx.monitor.is_managing:
            await self._reconcile_position()

        # Snapshots are taken before the first await so later ticks cannot change them
        fast = ctx.cache.live_view(ctx.fast_interval, ctx.aggregator.current(ctx.fast_interval))
        slow = ctx.cache.live_view(ctx.slow_interval, ctx.aggregator.current(ctx.slow_interval))
        if len(fast) < ctx.min_fast_candles or len(slow) < ctx.min_slow_candles:
            logger.debug(
                f"Waiting for history: {ctx.fast_interval}={len(fast)}/{ctx.min_fast_candles} "
                f"{ctx.slow_interval}={len(slow)}/{ctx.min_slow_candles}"
            )
            return CycleResult.INSUFFICIENT_DATA

        indicators = compute_indicators(fast)
        if indicators is None:
            return CycleResult.INSUFFICIENT_DATA

        decision = self.signal_engine.decide(fast, slow, indicators)
        if decision is Decision.WAIT:
            return CycleResult.WAIT

        if ctx.monitor.is_managing:
            logger.debug(f"Signal {decision.value} ignored, trade {ctx.monitor.managed_trade.id} still open")
            return CycleResult.POSITION_OPEN

        try:
            account_ctx = await self.account_builder.build()
        except (TransportError, OSError, ValueError) as e:
            logger.error(f"Account context unavailable: {e}")
            self.notifier.notify(f"Account context unavailable, cycle skipped: {e}", Severity.WARNING)
            return CycleResult.CONTEXT_UNAVAILABLE

        if account_ctx.open_positions:
            logger.info(f"Signal {decision.value} ignored, {len(account_ctx.open_positions)} position(s) open on exchange")
            return CycleResult.POSITION_OPEN

        risk = self.risk_gate.check(account_ctx)
        if not risk.is_trading_allowed:
            logger.info(f"Trade blocked by risk gate: {risk.reason}")
            return CycleResult.RISK_DENIED
        account_ctx.position_size_usd = risk.position_size_usd

        outcome = await self.executor.execute(decision, indicators, account_ctx, fast[-1].close)
        await self._record_capital(account_ctx)

        if outcome.state is not ExecutionState.PROTECTED:
            logger.warning(f"Execution ended in {outcome.state.value}: {outcome.reason}")
            return CycleResult.NOT_EXECUTED

        try:
            ctx.monitor.manage_trade(outcome.trade)
        except PositionAlreadyManagedError as e:
            logger.error(str(e))
            self.notifier.notify(f"Trade {outcome.trade.id} is not monitored: {e}", Severity.WARNING)
        return CycleResult.EXECUTED

    async def _reconcile_position(self):
        """Hand the monitor slot back once the exchange shows the position closed"""
        trade = self.context.monitor.managed_trade
        if self.context.monitor.state is MonitorState.UPGRADING:
            return
        try:
            positions = await with_timeout(
                self.account.get_open_positions(trade.symbol), self.exchange_timeout_s, "get_open_positions"
            )
        except TransportError as e:
            logger.warning(f"Position reconciliation skipped: {e}")
            return
        if positions:
            return
        logger.info(f"Position for trade {trade.id} is closed on the exchange")
        await self.context.monitor.settle_closed_trade(self.account)

    async def _record_capital(self, account_ctx: AccountContext):
        if self.capital_history is None:
            return
        try:
            await self.capital_history.add_entry(CapitalEntry(
                timestamp=int(time.time() * 1000),
                equity=account_ctx.equity,
                unrealized_pnl=account_ctx.unrealized_pnl,
                realized_pnl_daily=account_ctx.realized_pnl_daily,
            ))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to record capital history: {e}")

    # ---- Event loop --------------------------------------------------------

    def _trigger_cycle(self, reconcile: bool = False):
        if self._cycle_task is not None and not self._cycle_task.done():
            self.dropped_cycles += 1
            return
        self._cycle_task = asyncio.create_task(self.run_cycle(reconcile))
        self._cycle_task.add_done_callback(self._log_cycle_result)

    @staticmethod
    def _log_cycle_result(task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error(f"Decision cycle crashed: {error}")
        elif task.result() is CycleResult.EXECUTED:
            logger.info("Decision cycle executed a trade")

    def _roll_day(self):
        today = date.today()
        if today != self._trading_day:
            logger.info(f"New trading day {today}, re-arming risk alerts")
            self._trading_day = today
            self.risk_gate.reset_notifications()

    async def _handle(self, event):
        if isinstance(event, TradeTickEvent):
            if self.ingest_tick(event.tick):
                self._trigger_cycle()
        elif isinstance(event, MarkPriceEvent):
            if event.update.symbol == self.context.symbol:
                await self.context.monitor.on_mark_price(event.update.mark_price)
        elif isinstance(event, TimerTickEvent):
            self._roll_day()
            self._trigger_cycle(reconcile=True)
        else:
            logger.warning(f"Unknown event type {type(event).__name__}")

    async def _timer(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.timer_interval_s)
            except asyncio.TimeoutError:
                self.channel.publish(TimerTickEvent(int(time.time() * 1000)))

    async def run(self, stop_event: asyncio.Event):
        """Consume events until stop_event is set"""
        self.channel.bind(asyncio.get_running_loop())
        timer = asyncio.create_task(self._timer(stop_event))
        logger.info("Decision loop started")

        try:
            while not stop_event.is_set():
                try:
                    event = await asyncio.wait_for(self.channel.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                try:
                    await self._handle(event)
                except Exception as e:
                    logger.exception(f"Error handling {type(event).__name__}: {e}")
        finally:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
            if self._cycle_task is not None and not self._cycle_task.done():
                await asyncio.gather(self._cycle_task, return_exceptions=True)
            logger.info(
                f"Decision loop stopped ({self.cycles_run} cycles, {self.dropped_cycles} dropped triggers)"
            )
