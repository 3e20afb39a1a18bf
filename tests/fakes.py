"""
In-memory exchange and notifier doubles that record every call
"""
import asyncio
import math
from typing import Dict, List, Optional, Set, Tuple

from bracketbot.core.errors import OrderRejectedError
from bracketbot.core.models import (
    AccountState,
    Candle,
    ClosedPnl,
    MarkPriceUpdate,
    OrderRequest,
    OrderResult,
    OrderType,
    Position,
    Side,
    Trade,
)
from bracketbot.exchange.transport import (
    AccountTransport,
    MarkPriceCallback,
    MarketDataTransport,
    OrderTransport,
    Subscription,
    TickCallback,
)
from bracketbot.notifications.alerts import AlertDispatcher, Severity
from bracketbot.strategy.signal_engine import SignalEngine


def order_label(request: OrderRequest) -> str:
    """Role of an order in the bracket flow"""
    if request.order_type is OrderType.LIMIT:
        return "take_profit"
    if request.order_type is OrderType.STOP_MARKET:
        return "stop_loss"
    if request.order_type is OrderType.TRAILING_STOP_MARKET:
        return "trailing"
    return "close" if request.reduce_only else "entry"


class FakeSubscription(Subscription):
    def __init__(self, symbol: str, callback):
        self.symbol = symbol
        self.callback = callback
        self.unsubscribe_calls = 0
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        self.unsubscribe_calls += 1
        self._active = False


class FakeExchange(MarketDataTransport, OrderTransport, AccountTransport):
    def __init__(self, fill_price: float = 100.0, equity: float = 1000.0):
        self.fill_price = fill_price
        self.account_state = AccountState(equity=equity, available_balance=equity, unrealized_pnl=0.0)
        self.positions: List[Position] = []
        self.closed_pnl: Optional[ClosedPnl] = None
        self.candles: Dict[str, List[Candle]] = {}

        self.submitted: List[OrderRequest] = []
        self.cancelled: List[str] = []
        self.trade_subscriptions: List[FakeSubscription] = []
        self.mark_subscriptions: List[FakeSubscription] = []
        self.account_calls = 0

        # Keyed by order_label()
        self.failures: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}
        self.cancel_failures: Set[str] = set()
        self.account_gate: Optional[asyncio.Event] = None
        self._next_id = 0

    def calls(self, label: str) -> List[OrderRequest]:
        return [r for r in self.submitted if order_label(r) == label]

    # ---- Market data -------------------------------------------------------

    async def get_historical_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        return list(self.candles.get(interval, []))[-limit:]

    def subscribe_trades(self, symbol: str, on_tick: TickCallback) -> Subscription:
        sub = FakeSubscription(symbol, on_tick)
        self.trade_subscriptions.append(sub)
        return sub

    def subscribe_mark_price(self, symbol: str, on_update: MarkPriceCallback) -> Subscription:
        sub = FakeSubscription(symbol, on_update)
        self.mark_subscriptions.append(sub)
        return sub

    def push_mark_price(self, symbol: str, price: float):
        for sub in self.mark_subscriptions:
            if sub.active:
                sub.callback(MarkPriceUpdate(symbol=symbol, mark_price=price))

    # ---- Orders ------------------------------------------------------------

    async def submit_order(self, request: OrderRequest) -> OrderResult:
        label = order_label(request)
        self.submitted.append(request)
        if label in self.delays:
            await asyncio.sleep(self.delays[label])
        if label in self.failures:
            raise self.failures[label]
        self._next_id += 1
        return OrderResult(
            order_id=f"{label}-{self._next_id}",
            avg_price=self.fill_price if label == "entry" else (request.price or 0.0),
            orig_qty=request.quantity,
            update_time=1_700_000_000_000 + self._next_id,
        )

    async def cancel_order(self, symbol: str, order_id: str):
        self.cancelled.append(order_id)
        if order_id in self.cancel_failures:
            raise OrderRejectedError(f"cancel {order_id} rejected", code=110001)

    # ---- Account -----------------------------------------------------------

    async def get_account_state(self) -> AccountState:
        self.account_calls += 1
        if self.account_gate is not None:
            await self.account_gate.wait()
        return self.account_state

    async def get_open_positions(self, symbol: str) -> List[Position]:
        return [p for p in self.positions if p.symbol == symbol]

    async def get_closed_pnl(self, symbol: str, since_ms: int) -> Optional[ClosedPnl]:
        return self.closed_pnl


class RecordingDispatcher(AlertDispatcher):
    """Logs like the real dispatcher and keeps every accepted alert"""

    def __init__(self):
        super().__init__(channel=None, cooldown_s=0.0)
        self.sent: List[Tuple[str, Severity]] = []

    def notify(self, message: str, severity: Severity = Severity.INFO) -> bool:
        self.sent.append((message, severity))
        return super().notify(message, severity)

    def severities(self) -> List[Severity]:
        return [s for _, s in self.sent]


class FixedSignal(SignalEngine):
    """Returns the same decision every time and counts calls"""

    def __init__(self, decision):
        super().__init__()
        self.decision = decision
        self.calls = 0

    def decide(self, fast_candles, slow_candles, indicators=None):
        self.calls += 1
        return self.decision


def make_candles(
    count: int,
    start_ms: int = 1_700_000_000_000 - (1_700_000_000_000 % 60_000),
    interval_ms: int = 60_000,
    base: float = 100.0,
    drift: float = 0.0,
) -> List[Candle]:
    """Wavy series with non-zero range so every indicator is defined"""
    candles = []
    for i in range(count):
        close = base + drift * i + 2.0 * math.sin(i / 5.0)
        candles.append(Candle(
            open_time=start_ms + i * interval_ms,
            open=close - 0.2,
            high=close + 0.5,
            low=close - 0.5,
            close=close,
            volume=10.0 + (i % 7),
        ))
    return candles


def make_trade(
    side: Side = Side.BUY,
    entry: float = 100.0,
    take_profit: float = 110.0,
    stop_loss: float = 95.0,
    size: float = 0.5,
    trade_id: str = "entry-1",
    timestamp: int = 1_700_000_000_000,
) -> Trade:
    return Trade(
        id=trade_id,
        symbol="BTCUSDT",
        side=side,
        entry_price=entry,
        size=size,
        timestamp=timestamp,
        stop_loss_price=stop_loss,
        take_profit_price=take_profit,
        stop_loss_order_id="stop_loss-2",
        take_profit_order_id="take_profit-3",
    )
