"""
Bybit transport - async adapter over the blocking REST client plus pybit streams
"""
import asyncio
from typing import List, Optional

from loguru import logger
from pybit.unified_trading import WebSocket

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
from bracketbot.exchange.bybit_client import BybitClient
from bracketbot.exchange.transport import (
    AccountTransport,
    MarkPriceCallback,
    MarketDataTransport,
    OrderTransport,
    Subscription,
    TickCallback,
)


class WebSocketSubscription(Subscription):
    """One pybit WebSocket per stream so a stream can be closed on its own"""

    def __init__(self, ws: WebSocket, topic: str):
        self._ws = ws
        self.topic = topic
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        if not self._active:
            return
        self._active = False
        try:
            self._ws.exit()
        except Exception as e:
            logger.warning(f"Error closing stream {self.topic}: {e}")
        logger.info(f"Unsubscribed from {self.topic}")


class BybitTransport(MarketDataTransport, OrderTransport, AccountTransport):
    """Runs pybit's blocking calls in worker threads; stream callbacks fire on pybit's thread"""

    def __init__(self, client: BybitClient, testnet: bool = True):
        self.client = client
        self.testnet = testnet

    def _open_socket(self) -> WebSocket:
        return WebSocket(testnet=self.testnet, channel_type="linear")

    # ---- Market data -------------------------------------------------------

    async def get_historical_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        return await asyncio.to_thread(self.client.get_klines, symbol, interval, limit)

    def subscribe_trades(self, symbol: str, on_tick: TickCallback) -> Subscription:
        def handle(message):
            for trade in message.get("data") or []:
                try:
                    tick = Tick(
                        price=float(trade["p"]),
                        quantity=float(trade["v"]),
                        timestamp_ms=int(trade["T"]),
                    )
                except (KeyError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping malformed trade message: {e}")
                    continue
                on_tick(tick)

        ws = self._open_socket()
        ws.trade_stream(symbol=symbol, callback=handle)
        logger.info(f"Subscribed to publicTrade.{symbol}")
        return WebSocketSubscription(ws, f"publicTrade.{symbol}")

    def subscribe_mark_price(self, symbol: str, on_update: MarkPriceCallback) -> Subscription:
        def handle(message):
            data = message.get("data") or {}
            # Delta frames only carry changed fields
            if "markPrice" not in data:
                return
            try:
                update = MarkPriceUpdate(
                    symbol=data.get("symbol", symbol),
                    mark_price=float(data["markPrice"]),
                    timestamp_ms=int(message.get("ts", 0)),
                )
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed ticker message: {e}")
                return
            on_update(update)

        ws = self._open_socket()
        ws.ticker_stream(symbol=symbol, callback=handle)
        logger.info(f"Subscribed to tickers.{symbol}")
        return WebSocketSubscription(ws, f"tickers.{symbol}")

    # ---- Orders ------------------------------------------------------------

    async def submit_order(self, request: OrderRequest) -> OrderResult:
        return await asyncio.to_thread(self.client.place_order, request)

    async def cancel_order(self, symbol: str, order_id: str):
        await asyncio.to_thread(self.client.cancel_order, symbol, order_id)

    # ---- Account -----------------------------------------------------------

    async def get_account_state(self) -> AccountState:
        return await asyncio.to_thread(self.client.get_account_state)

    async def get_open_positions(self, symbol: str) -> List[Position]:
        return await asyncio.to_thread(self.client.get_positions, symbol)

    async def get_closed_pnl(self, symbol: str, since_ms: int) -> Optional[ClosedPnl]:
        return await asyncio.to_thread(self.client.get_closed_pnl, symbol, since_ms)
