"""
Position Monitoring - Upgrades the fixed bracket to a trailing stop once price runs halfway to target
"""
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from bracketbot.config.settings import ExecutionSettings
from bracketbot.core.errors import PositionAlreadyManagedError, TransportError
from bracketbot.core.models import MarkPriceUpdate, OrderRequest, OrderType, Side, Trade
from bracketbot.exchange.transport import (
    AccountTransport,
    MarketDataTransport,
    OrderTransport,
    Subscription,
    with_timeout,
)
from bracketbot.history.trade_history import TradeHistory
from bracketbot.notifications.alerts import AlertDispatcher, Severity


class MonitorState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    UPGRADING = "upgrading"
    TRAILING_ACTIVE = "trailing_active"
    UPGRADE_FAILED = "upgrade_failed"


def activation_price(trade: Trade, fraction: float = 0.5) -> float:
    """Price at which the trade has covered `fraction` of the way to its target"""
    return trade.entry_price + (trade.take_profit_price - trade.entry_price) * fraction


class PositionMonitor:
    """Watches the single managed trade via mark price updates"""

    def __init__(
        self,
        market_data: MarketDataTransport,
        orders: OrderTransport,
        history: TradeHistory,
        notifier: AlertDispatcher,
        settings: ExecutionSettings,
        price_sink: Callable[[MarkPriceUpdate], None],
    ):
        """
        Args:
            price_sink: Receives raw stream updates (possibly on a foreign thread);
                the owner routes them back into on_mark_price on the event loop.
        """
        self.market_data = market_data
        self.orders = orders
        self.history = history
        self.notifier = notifier
        self.settings = settings
        self.price_sink = price_sink

        self._trade: Optional[Trade] = None
        self._subscription: Optional[Subscription] = None
        self._state = MonitorState.IDLE
        logger.info("Position monitor initialized")

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def managed_trade(self) -> Optional[Trade]:
        return self._trade

    @property
    def is_managing(self) -> bool:
        return self._trade is not None

    def manage_trade(self, trade: Trade):
        if self._trade is not None:
            raise PositionAlreadyManagedError(
                f"Already managing trade {self._trade.id}; refusing trade {trade.id}"
            )
        if trade.take_profit_price is None:
            raise ValueError(f"Trade {trade.id} has no take-profit price to trail towards")

        self._trade = trade
        self._subscription = self.market_data.subscribe_mark_price(trade.symbol, self.price_sink)
        self._state = MonitorState.WATCHING
        logger.info(
            f"Now monitoring {trade.symbol} {trade.side.value} trade {trade.id}, trailing activates at "
            f"{activation_price(trade, self.settings.trailing_activation_fraction):.2f}"
        )

    async def on_mark_price(self, mark_price: float):
        if self._state is not MonitorState.WATCHING or self._trade is None:
            return

        trade = self._trade
        threshold = activation_price(trade, self.settings.trailing_activation_fraction)
        if trade.side is Side.BUY:
            triggered = mark_price >= threshold
        else:
            triggered = mark_price <= threshold
        if not triggered:
            return

        logger.info(f"Mark price {mark_price} crossed activation {threshold:.2f}, upgrading to trailing stop")
        # Claimed before the first await so a second update cannot start another upgrade
        self._state = MonitorState.UPGRADING
        await self._upgrade(trade)

    async def _upgrade(self, trade: Trade):
        timeout = self.settings.exchange_call_timeout_s
        try:
            for order_id in (trade.stop_loss_order_id, trade.take_profit_order_id):
                if order_id:
                    await with_timeout(
                        self.orders.cancel_order(trade.symbol, order_id), timeout, "cancel bracket order"
                    )
                if not self._still_managing(trade):
                    return

            result = await with_timeout(
                self.orders.submit_order(OrderRequest(
                    symbol=trade.symbol,
                    side=trade.side.opposite,
                    order_type=OrderType.TRAILING_STOP_MARKET,
                    quantity=trade.size,
                    callback_rate=self.settings.trailing_callback_rate,
                    reduce_only=True,
                )),
                timeout,
                "trailing stop order",
            )
        except TransportError as e:
            if not self._still_managing(trade):
                return
            self._unsubscribe()
            self._state = MonitorState.UPGRADE_FAILED
            message = (
                f"Trailing stop upgrade failed for trade {trade.id} ({trade.symbol}): {e}. "
                f"Bracket orders may be partially cancelled, manual review required."
            )
            logger.critical(message)
            self.notifier.notify(message, Severity.CRITICAL)
            return

        if not self._still_managing(trade):
            return
        trade.trailing_order_id = result.order_id
        trade.is_trailing_active = True
        self._unsubscribe()
        self._state = MonitorState.TRAILING_ACTIVE

        try:
            await self.history.update_trade(trade)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to persist trailing stop for trade {trade.id}: {e}")

        logger.success(f"Trailing stop active for trade {trade.id} ({self.settings.trailing_callback_rate}%)")
        self.notifier.notify(
            f"Trailing stop activated for {trade.symbol} {trade.side.value} trade {trade.id}",
            Severity.INFO,
        )

    async def settle_closed_trade(self, account: AccountTransport):
        """
        Release the slot once the exchange reports the position flat: cancel
        whatever is left of the bracket and record the realized result.
        """
        trade = self._trade
        if trade is None:
            return
        if self._state is MonitorState.UPGRADING:
            # The upgrade owns the slot until it finishes; the next reconcile settles
            logger.debug(f"Trade {trade.id} is mid-upgrade, settlement deferred")
            return
        timeout = self.settings.exchange_call_timeout_s

        if not trade.is_trailing_active:
            for order_id in (trade.stop_loss_order_id, trade.take_profit_order_id):
                if not order_id:
                    continue
                try:
                    await with_timeout(self.orders.cancel_order(trade.symbol, order_id), timeout, "cancel leftover order")
                except TransportError as e:
                    # The order that closed the position is no longer cancellable
                    logger.debug(f"Leftover order {order_id} not cancelled: {e}")

        try:
            closed = await with_timeout(
                account.get_closed_pnl(trade.symbol, trade.timestamp), timeout, "get_closed_pnl"
            )
        except TransportError as e:
            logger.warning(f"Could not fetch realized PnL for trade {trade.id}: {e}")
            closed = None

        if closed is not None:
            trade.exit_price = closed.exit_price
            trade.pnl = closed.pnl
            try:
                await self.history.update_trade(trade)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to persist result of trade {trade.id}: {e}")
            self.notifier.notify(
                f"Closed {trade.symbol} {trade.side.value} trade {trade.id} @ {closed.exit_price:.2f}, "
                f"PnL {closed.pnl:.2f} USD",
                Severity.INFO,
            )
        else:
            logger.warning(f"Trade {trade.id} closed but no realized PnL was found")

        self.stop_managing()

    def _still_managing(self, trade: Trade) -> bool:
        if self._trade is trade:
            return True
        logger.warning(f"Trade {trade.id} was released during its trailing upgrade, upgrade abandoned")
        return False

    def stop_managing(self):
        if self._trade is not None:
            logger.info(f"Stopped managing trade {self._trade.id}")
        self._unsubscribe()
        self._trade = None
        self._state = MonitorState.IDLE

    def _unsubscribe(self):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
