"""
Exchange transport interfaces consumed by the trading engine
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, TypeVar

from bracketbot.core.errors import TransportTimeoutError
from bracketbot.core.models import (
    AccountState,
    Candle,
    ClosedPnl,
    MarkPriceUpdate,
    OrderRequest,
    OrderResult,
    Position,
    Tick,
)

T = TypeVar("T")

TickCallback = Callable[[Tick], None]
MarkPriceCallback = Callable[[MarkPriceUpdate], None]


class Subscription(ABC):
    """Handle for a live stream; unsubscribe() must be idempotent"""

    @abstractmethod
    def unsubscribe(self):
        pass

    @property
    @abstractmethod
    def active(self) -> bool:
        pass


class MarketDataTransport(ABC):
    @abstractmethod
    async def get_historical_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """Closed candles, oldest first"""

    @abstractmethod
    def subscribe_trades(self, symbol: str, on_tick: TickCallback) -> Subscription:
        """Callbacks may fire on a foreign thread"""

    @abstractmethod
    def subscribe_mark_price(self, symbol: str, on_update: MarkPriceCallback) -> Subscription:
        """Callbacks may fire on a foreign thread"""


class OrderTransport(ABC):
    @abstractmethod
    async def submit_order(self, request: OrderRequest) -> OrderResult:
        """Raises OrderRejectedError when the exchange refuses the order"""

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str):
        """Raises OrderRejectedError when the cancel fails"""


class AccountTransport(ABC):
    @abstractmethod
    async def get_account_state(self) -> AccountState:
        pass

    @abstractmethod
    async def get_open_positions(self, symbol: str) -> List[Position]:
        pass

    @abstractmethod
    async def get_closed_pnl(self, symbol: str, since_ms: int) -> Optional[ClosedPnl]:
        """Most recent position close at or after since_ms, if any"""


async def with_timeout(call: Awaitable[T], timeout_s: float, action: str) -> T:
    """Await an exchange call, converting a deadline miss to TransportTimeoutError"""
    try:
        return await asyncio.wait_for(call, timeout=timeout_s)
    except asyncio.TimeoutError:
        raise TransportTimeoutError(f"{action} timed out after {timeout_s:.1f}s") from None
