import asyncio
import time

import pytest

from bracketbot.core.models import Decision, MarkPriceUpdate, Position, Side, Tick
from bracketbot.engine.decision_loop import CycleResult, DecisionLoop, TradingContext
from bracketbot.engine.events import EventChannel, MarkPriceEvent, TradeTickEvent
from bracketbot.execution.order_executor import OrderExecutionEngine
from bracketbot.market.candle_aggregator import CandleAggregator
from bracketbot.market.rolling_cache import RollingCache
from bracketbot.positions.position_monitor import MonitorState, PositionMonitor
from bracketbot.risk.account_context import AccountContextBuilder
from bracketbot.risk.risk_gate import RiskGate

from tests.fakes import FixedSignal, make_candles, make_trade

FIVE_MINUTES = 300_000


def seeded_cache(fast_count: int = 250, slow_count: int = 100) -> RollingCache:
    cache = RollingCache()
    cache.initialize("1m", make_candles(fast_count), 1000)
    cache.initialize("5m", make_candles(slow_count, interval_ms=FIVE_MINUTES), 500)
    return cache


def build_loop(exchange, history, notifier, capital_history, execution_settings, risk_settings,
               cache=None, decision=Decision.BUY):
    channel = EventChannel()
    monitor = PositionMonitor(exchange, exchange, history, notifier, execution_settings, channel.on_mark_price)
    context = TradingContext(
        symbol="BTCUSDT",
        fast_interval="1m",
        slow_interval="5m",
        cache=cache if cache is not None else seeded_cache(),
        aggregator=CandleAggregator.for_intervals("1m", "5m"),
        monitor=monitor,
    )
    risk_gate = RiskGate(risk_settings, notifier)
    return DecisionLoop(
        context=context,
        channel=channel,
        signal_engine=FixedSignal(decision),
        risk_gate=risk_gate,
        account_builder=AccountContextBuilder(exchange, history, risk_gate, "BTCUSDT", timeout_s=0.5),
        executor=OrderExecutionEngine(exchange, history, notifier, execution_settings, "BTCUSDT"),
        account=exchange,
        notifier=notifier,
        capital_history=capital_history,
        exchange_timeout_s=0.5,
    )


@pytest.fixture
def make_loop(exchange, history, notifier, capital_history, execution_settings, risk_settings):
    def factory(**kwargs):
        return build_loop(exchange, history, notifier, capital_history, execution_settings, risk_settings, **kwargs)
    return factory


def now_ms() -> int:
    return int(time.time() * 1000)


async def test_short_history_skips_the_cycle(make_loop, exchange):
    loop = make_loop(cache=seeded_cache(fast_count=249))

    assert await loop.run_cycle() is CycleResult.INSUFFICIENT_DATA
    assert loop.signal_engine.calls == 0
    assert exchange.account_calls == 0


async def test_wait_signal_touches_nothing(make_loop, exchange):
    loop = make_loop(decision=Decision.WAIT)

    assert await loop.run_cycle() is CycleResult.WAIT
    assert exchange.account_calls == 0
    assert exchange.submitted == []


async def test_buy_signal_executes_and_hands_trade_to_monitor(make_loop, exchange, history, capital_history):
    loop = make_loop()

    result = await loop.run_cycle()

    assert result is CycleResult.EXECUTED
    assert len(exchange.calls("entry")) == 1
    assert len(exchange.calls("take_profit")) == 1
    assert len(exchange.calls("stop_loss")) == 1
    monitor = loop.context.monitor
    assert monitor.state is MonitorState.WATCHING
    assert monitor.managed_trade.id == (await history.read_all())[0].id
    assert len(exchange.mark_subscriptions) == 1
    assert capital_history.path.exists()


async def test_open_trade_blocks_new_entries(make_loop, exchange):
    loop = make_loop()
    assert await loop.run_cycle() is CycleResult.EXECUTED

    assert await loop.run_cycle() is CycleResult.POSITION_OPEN
    assert len(exchange.calls("entry")) == 1


async def test_exchange_position_blocks_new_entries(make_loop, exchange):
    exchange.positions = [Position(symbol="BTCUSDT", side=Side.BUY, size=0.1, entry_price=100.0)]
    loop = make_loop()

    assert await loop.run_cycle() is CycleResult.POSITION_OPEN
    assert exchange.submitted == []


async def test_daily_loss_denies_trading(make_loop, exchange, history):
    losing = make_trade(trade_id="old", timestamp=now_ms())
    losing.pnl = -50.0
    await history.append_trade(losing)
    loop = make_loop()

    assert await loop.run_cycle() is CycleResult.RISK_DENIED
    assert exchange.submitted == []


async def test_unreachable_account_skips_the_cycle(make_loop, exchange, notifier):
    exchange.account_gate = asyncio.Event()  # never set: the call times out
    loop = make_loop()

    assert await loop.run_cycle() is CycleResult.CONTEXT_UNAVAILABLE
    assert exchange.submitted == []
    assert notifier.sent


async def test_corrupt_history_skips_the_cycle(make_loop, exchange, history, notifier):
    history.path.write_text("{not json", encoding="utf-8")
    loop = make_loop()

    assert await loop.run_cycle() is CycleResult.CONTEXT_UNAVAILABLE
    assert exchange.submitted == []
    assert notifier.sent


async def test_concurrent_cycle_is_dropped(make_loop, exchange):
    exchange.account_gate = asyncio.Event()
    loop = make_loop()

    first = asyncio.create_task(loop.run_cycle())
    while exchange.account_calls == 0:
        await asyncio.sleep(0)

    assert await loop.run_cycle() is CycleResult.SKIPPED_BUSY
    assert loop.dropped_cycles == 1

    exchange.account_gate.set()
    assert await first is CycleResult.EXECUTED
    assert len(exchange.calls("entry")) == 1


async def test_malformed_tick_is_counted_and_ignored(make_loop):
    loop = make_loop()

    assert await loop.on_tick(Tick(float("nan"), 1.0, now_ms())) is None
    assert loop.invalid_ticks == 1
    assert loop.context.aggregator.current("1m") is None


async def test_tick_updates_both_timeframes(make_loop):
    loop = make_loop(decision=Decision.WAIT)
    tick = Tick(101.0, 0.5, now_ms())

    assert await loop.on_tick(tick) is CycleResult.WAIT
    assert loop.context.aggregator.current("1m").close == 101.0
    assert loop.context.aggregator.current("5m").close == 101.0


async def test_closed_position_is_settled_on_reconcile(make_loop, exchange, history):
    from bracketbot.core.models import ClosedPnl

    loop = make_loop(decision=Decision.WAIT)
    trade = make_trade(timestamp=now_ms())
    await history.append_trade(trade)
    loop.context.monitor.manage_trade(trade)
    exchange.closed_pnl = ClosedPnl(symbol="BTCUSDT", exit_price=110.0, pnl=5.0, updated_time=now_ms())

    await loop.run_cycle(reconcile=True)

    assert not loop.context.monitor.is_managing
    assert (await history.read_all())[0].pnl == 5.0


async def test_run_consumes_published_events(make_loop, exchange):
    loop = make_loop(decision=Decision.WAIT)
    stop = asyncio.Event()
    monitor = loop.context.monitor
    monitor.manage_trade(make_trade(entry=100.0, take_profit=110.0))

    runner = asyncio.create_task(loop.run(stop))
    await asyncio.sleep(0)

    loop.channel.publish(TradeTickEvent(Tick(102.0, 1.0, now_ms())))
    loop.channel.publish(MarkPriceEvent(MarkPriceUpdate(symbol="BTCUSDT", mark_price=106.0)))
    for _ in range(50):
        if monitor.state is MonitorState.TRAILING_ACTIVE:
            break
        await asyncio.sleep(0.01)

    stop.set()
    await asyncio.wait_for(runner, timeout=2.0)

    assert loop.context.aggregator.current("1m").close == 102.0
    assert monitor.state is MonitorState.TRAILING_ACTIVE
    assert len(exchange.calls("trailing")) == 1
    assert loop.cycles_run >= 1
