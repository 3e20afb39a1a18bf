"""
Bracketbot - Main Entry Point
Single-symbol futures bot: trade stream -> candles -> signal -> bracket order -> trailing stop
"""
import asyncio
import signal
from typing import Optional

from loguru import logger

from bracketbot.config.settings import Settings
from bracketbot.core.errors import TransportError
from bracketbot.core.log_setup import setup_logging
from bracketbot.engine.decision_loop import DecisionLoop, TradingContext
from bracketbot.engine.events import EventChannel
from bracketbot.exchange.bybit_client import BybitClient
from bracketbot.exchange.bybit_transport import BybitTransport
from bracketbot.exchange.transport import Subscription, with_timeout
from bracketbot.execution.order_executor import OrderExecutionEngine
from bracketbot.history.trade_history import CapitalHistory, TradeHistory
from bracketbot.market.candle_aggregator import CandleAggregator
from bracketbot.market.rolling_cache import RollingCache
from bracketbot.notifications.alerts import AlertDispatcher
from bracketbot.notifications.telegram_notifier import TelegramNotifier
from bracketbot.positions.position_monitor import PositionMonitor
from bracketbot.risk.account_context import AccountContextBuilder
from bracketbot.risk.risk_gate import RiskGate
from bracketbot.strategy.signal_engine import SignalEngine


class BracketBot:
    """Main trading bot orchestrator"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.load()
        setup_logging(self.settings.logging)

        logger.info("=" * 80)
        logger.info("BRACKETBOT INITIALIZING")
        logger.info("=" * 80)

        s = self.settings
        self.symbol = s.market.symbol
        self.stop_event = asyncio.Event()

        self.client = BybitClient(
            api_key=s.bybit.api_key,
            api_secret=s.bybit.api_secret,
            testnet=s.bybit.testnet,
            base_url=s.bybit.base_url,
            recv_window=s.bybit.recv_window,
        )
        self.transport = BybitTransport(self.client, testnet=s.bybit.testnet)

        self.telegram: Optional[TelegramNotifier] = None
        if s.notifications.telegram_enabled and s.notifications.telegram_bot_token and s.notifications.telegram_chat_id:
            self.telegram = TelegramNotifier(s.notifications.telegram_bot_token, s.notifications.telegram_chat_id)
        elif s.notifications.telegram_enabled:
            logger.warning("Telegram enabled but token/chat id missing, alerts go to the log only")

        self.notifier = AlertDispatcher(
            channel=self.telegram,
            cooldown_s=s.notifications.alert_cooldown_s,
            timeout_s=s.notifications.alert_timeout_s,
            enabled=s.notifications.notifications_enabled,
        )

        self.history = TradeHistory(s.history.trade_history_path)
        self.capital_history = CapitalHistory(s.history.capital_history_path)
        self.risk_gate = RiskGate(s.risk, self.notifier)
        self.channel = EventChannel()

        self.monitor = PositionMonitor(
            market_data=self.transport,
            orders=self.transport,
            history=self.history,
            notifier=self.notifier,
            settings=s.execution,
            price_sink=self.channel.on_mark_price,
        )
        self.trading_context = TradingContext(
            symbol=self.symbol,
            fast_interval=s.market.fast_interval,
            slow_interval=s.market.slow_interval,
            cache=RollingCache(),
            aggregator=CandleAggregator.for_intervals(s.market.fast_interval, s.market.slow_interval),
            monitor=self.monitor,
            min_fast_candles=s.market.min_fast_candles,
            min_slow_candles=s.market.min_slow_candles,
        )
        self.decision_loop = DecisionLoop(
            context=self.trading_context,
            channel=self.channel,
            signal_engine=SignalEngine(),
            risk_gate=self.risk_gate,
            account_builder=AccountContextBuilder(
                self.transport,
                self.history,
                self.risk_gate,
                self.symbol,
                timeout_s=s.execution.exchange_call_timeout_s,
            ),
            executor=OrderExecutionEngine(
                self.transport,
                self.history,
                self.notifier,
                s.execution,
                self.symbol,
                reward_ratio=s.risk.risk_reward_ratio,
            ),
            account=self.transport,
            notifier=self.notifier,
            capital_history=self.capital_history,
            timer_interval_s=s.market.timer_tick_seconds,
            exchange_timeout_s=s.execution.exchange_call_timeout_s,
        )

        self.trade_subscription: Optional[Subscription] = None
        self.starting_equity = 0.0

    async def initialize(self):
        """Verify connectivity and seed both candle caches"""
        logger.info("Performing startup checks...")
        s = self.settings
        timeout = s.execution.exchange_call_timeout_s

        try:
            state = await with_timeout(self.transport.get_account_state(), timeout, "get_account_state")
        except TransportError as e:
            logger.error(f"Bybit connectivity check failed: {e}")
            raise RuntimeError(f"Failed to initialize Bybit connection: {e}") from e
        self.starting_equity = state.equity
        logger.info(f"Account equity: ${state.equity:.2f} (available ${state.available_balance:.2f})")

        positions = await with_timeout(self.transport.get_open_positions(self.symbol), timeout, "get_open_positions")
        if positions:
            logger.warning(
                f"Found {len(positions)} open {self.symbol} position(s) not opened by this session; "
                f"new entries are blocked until they close"
            )

        cache = self.trading_context.cache
        for interval, limit in (
            (s.market.fast_interval, s.market.fast_cache_limit),
            (s.market.slow_interval, s.market.slow_cache_limit),
        ):
            candles = await with_timeout(
                self.transport.get_historical_candles(self.symbol, interval, limit),
                timeout,
                f"klines {interval}",
            )
            cache.initialize(interval, candles, limit)

        if self.telegram:
            await self.telegram.initialize()
            await self.telegram.send_startup_message(
                equity=state.equity,
                mode="TESTNET" if s.bybit.testnet else "LIVE",
                symbol=self.symbol,
            )
            logger.info("Telegram notifications enabled")

        logger.info("Initialization complete! Ready to trade.")
        logger.info("=" * 80)

    async def run(self):
        """Stream trades into the decision loop until stopped"""
        self.channel.bind(asyncio.get_running_loop())
        self.trade_subscription = self.transport.subscribe_trades(self.symbol, self.channel.on_trade)
        await self.decision_loop.run(self.stop_event)

    def request_stop(self):
        self.stop_event.set()

    async def shutdown(self):
        """Graceful shutdown"""
        logger.info("Shutting down trading bot...")
        self.stop_event.set()

        if self.trade_subscription is not None:
            self.trade_subscription.unsubscribe()
            self.trade_subscription = None
        # The exchange keeps protecting an open trade after the bot stops
        self.monitor.stop_managing()

        if self.telegram:
            try:
                state = await with_timeout(
                    self.transport.get_account_state(),
                    self.settings.execution.exchange_call_timeout_s,
                    "get_account_state",
                )
                todays = await self.history.get_todays_trades()
                await self.telegram.send_shutdown_message(equity=state.equity, trades_today=len(todays))
            except (TransportError, OSError, ValueError) as e:
                logger.warning(f"Failed to send shutdown notification: {e}")

        await self.notifier.drain()
        if self.telegram:
            await self.telegram.close()

        logger.info("Shutdown complete")


async def main():
    """Main entry point"""
    bot = BracketBot()
    loop = asyncio.get_running_loop()

    def signal_handler(sig, frame):
        logger.info("Interrupt received, shutting down...")
        loop.call_soon_threadsafe(bot.request_stop)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await bot.initialize()
        await bot.run()
    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        await bot.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
