"""
Bybit Exchange Client - Blocking REST access to Bybit linear USDT perpetuals
"""
import math
import time
from typing import Any, Dict, List, Optional

import requests
from loguru import logger
from pybit import _helpers
from pybit.exceptions import FailedRequestError, InvalidRequestError
from pybit.unified_trading import HTTP

from bracketbot.core.errors import OrderRejectedError, TransportError
from bracketbot.core.models import (
    AccountState,
    Candle,
    ClosedPnl,
    OrderRequest,
    OrderResult,
    OrderType,
    Position,
    Side,
)
from bracketbot.market.candle_aggregator import interval_to_ms


PYBIT_TIMESTAMP_OFFSET_MS = 0


def _generate_timestamp_with_offset() -> int:
    """Override pybit timestamp generation to include server offset."""
    return int(time.time() * 1000 + PYBIT_TIMESTAMP_OFFSET_MS)


_helpers.generate_timestamp = _generate_timestamp_with_offset

CATEGORY = "linear"

# Bybit conditional orders: 1 = triggered when price rises to triggerPrice, 2 = falls to it
TRIGGER_RISE = 1
TRIGGER_FALL = 2


def to_bybit_side(side: Side) -> str:
    return "Buy" if side is Side.BUY else "Sell"


def from_bybit_side(value: str) -> Side:
    return Side.BUY if value == "Buy" else Side.SELL


def to_bybit_interval(interval: str) -> str:
    """"1m" -> "1", "5m" -> "5", "1h" -> "60" """
    return str(interval_to_ms(interval) // 60_000)


def _safe_float(value, default: float = 0.0) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except (ValueError, TypeError):
        return default


class BybitClient:
    """Bybit Exchange Client"""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = True,
        base_url: str = "https://api-testnet.bybit.com",
        recv_window: int = 20000,
    ):
        """Initialize Bybit client"""
        self.testnet = testnet
        self.base_url = base_url

        self.http = HTTP(
            testnet=testnet,
            api_key=api_key,
            api_secret=api_secret,
            recv_window=recv_window,
            max_retries=3,
            retry_delay=1,
        )
        self.http.endpoint = base_url
        logger.info(f"Using Bybit API URL: {self.http.endpoint}")

        self._last_time_sync: float = 0.0
        self._symbol_rules_cache: Dict[str, Dict] = {}
        self._sync_time(initial=True)

        logger.info(f"Bybit client initialized ({'Testnet' if testnet else 'Mainnet'})")

    def _sync_time(self, force: bool = False, initial: bool = False) -> None:
        """Sync local timestamp offset with Bybit server."""
        global PYBIT_TIMESTAMP_OFFSET_MS

        now = time.time()
        if not force and not initial and (now - self._last_time_sync) < 60:
            return

        try:
            response = requests.get(f"{self.base_url}/v5/market/time", timeout=5)
            response.raise_for_status()
            data = response.json()
            if data.get("retCode") != 0:
                raise ValueError(data.get("retMsg", "Unknown error"))

            result = data.get("result", {})
            server_time_ms = int(result.get("timeNano", 0)) // 1_000_000
            if server_time_ms == 0:
                server_time_ms = int(result.get("timeSecond", 0)) * 1000

            offset = server_time_ms - int(time.time() * 1000)
            PYBIT_TIMESTAMP_OFFSET_MS = offset
            self._last_time_sync = now

            label = "initial" if initial else "forced" if force else "periodic"
            logger.info(f"Bybit time sync ({label}): offset {offset} ms")
        except (requests.RequestException, ValueError) as exc:
            if initial or force:
                logger.warning(f"Failed to sync Bybit time: {exc}")
            else:
                logger.debug(f"Time sync skipped: {exc}")

    def _call(self, func, action: str, **kwargs) -> Dict[str, Any]:
        """Execute a pybit call, resyncing the clock once on timestamp errors"""
        self._sync_time()
        try:
            try:
                response = func(**kwargs)
            except InvalidRequestError as exc:
                if exc.status_code != 10002:
                    raise
                logger.warning("Timestamp mismatch detected, resyncing with Bybit and retrying...")
                self._sync_time(force=True)
                response = func(**kwargs)
        except InvalidRequestError as exc:
            raise OrderRejectedError(f"{action} rejected: {exc.message}", code=exc.status_code) from exc
        except FailedRequestError as exc:
            raise TransportError(f"{action} failed: {exc.message}") from exc

        if response.get("retCode") != 0:
            raise OrderRejectedError(
                f"{action} rejected: {response.get('retMsg', 'Unknown error')}",
                code=response.get("retCode"),
            )
        return response

    def server_time_ms(self) -> int:
        return _generate_timestamp_with_offset()

    # ---- Market data -------------------------------------------------------

    def get_klines(self, symbol: str, interval: str, limit: int = 200) -> List[Candle]:
        """Closed klines, oldest first (Bybit returns newest first, including the open bar)"""
        response = self._call(
            self.http.get_kline,
            "get_kline",
            category=CATEGORY,
            symbol=symbol,
            interval=to_bybit_interval(interval),
            # One extra row for the bar that is still building
            limit=min(limit + 1, 1000),
        )

        rows = (response.get("result") or {}).get("list") or []
        candles = []
        for kline in reversed(rows):
            try:
                candles.append(Candle(
                    open_time=int(kline[0]),
                    open=float(kline[1]),
                    high=float(kline[2]),
                    low=float(kline[3]),
                    close=float(kline[4]),
                    volume=float(kline[5]),
                ))
            except (IndexError, ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid kline data: {e}")

        interval_ms = interval_to_ms(interval)
        now_ms = self.server_time_ms()
        closed = [c for c in candles if c.open_time + interval_ms <= now_ms]
        return closed[-limit:]

    def get_mark_price(self, symbol: str) -> float:
        response = self._call(self.http.get_tickers, "get_tickers", category=CATEGORY, symbol=symbol)
        items = (response.get("result") or {}).get("list") or []
        if not items:
            raise TransportError(f"No ticker returned for {symbol}")
        return float(items[0]["markPrice"])

    def get_symbol_info(self, symbol: str) -> Optional[Dict[str, Any]]:
        """Fetch and cache symbol-specific rules (tick size, qty step, etc.)"""
        if symbol in self._symbol_rules_cache:
            return self._symbol_rules_cache[symbol]

        try:
            response = self._call(
                self.http.get_instruments_info,
                "get_instruments_info",
                category=CATEGORY,
                symbol=symbol,
            )
        except TransportError as e:
            logger.warning(f"Failed to fetch info for {symbol}: {e}")
            return None

        items = (response.get("result") or {}).get("list") or []
        if not items:
            return None
        self._symbol_rules_cache[symbol] = items[0]
        return items[0]

    @staticmethod
    def _step_precision(step_str: str) -> int:
        """Infer decimal precision from a step string like 0.001."""
        if not step_str:
            return 6
        if "." in step_str:
            return len(step_str.split(".")[1].rstrip("0"))
        return 0

    def round_price(self, symbol: str, price: float, bias: str = "nearest") -> float:
        """
        Round price to instrument tick size.

        bias:
          - "nearest": standard rounding
          - "up": round up to next tick
          - "down": round down to previous tick
        """
        if price is None or price <= 0:
            return price

        info = self.get_symbol_info(symbol)
        if not info:
            return round(price, 6)

        tick_str = str(info.get("priceFilter", {}).get("tickSize", "0.0001"))
        tick_size = _safe_float(tick_str, 0.0001)
        precision = self._step_precision(tick_str)
        if tick_size <= 0:
            return round(price, max(precision, 6))

        if bias == "up":
            rounded = math.ceil(price / tick_size) * tick_size
        elif bias == "down":
            rounded = math.floor(price / tick_size) * tick_size
        else:
            rounded = round(price / tick_size) * tick_size

        if not math.isfinite(rounded):
            rounded = price
        return round(rounded, precision)

    # ---- Orders ------------------------------------------------------------

    def place_order(self, request: OrderRequest) -> OrderResult:
        """Translate an OrderRequest to the Bybit v5 order model and submit it"""
        if request.order_type is OrderType.TRAILING_STOP_MARKET:
            return self._set_trailing_stop(request)

        params: Dict[str, Any] = {
            "category": CATEGORY,
            "symbol": request.symbol,
            "side": to_bybit_side(request.side),
            "qty": str(request.quantity),
            "reduceOnly": request.reduce_only,
        }

        if request.order_type is OrderType.MARKET:
            params["orderType"] = "Market"
        elif request.order_type is OrderType.LIMIT:
            if not request.price:
                raise ValueError("LIMIT order requires a price")
            params["orderType"] = "Limit"
            params["timeInForce"] = "GTC"
            params["price"] = str(self.round_price(request.symbol, request.price))
        elif request.order_type is OrderType.STOP_MARKET:
            if not request.stop_price:
                raise ValueError("STOP_MARKET order requires a stop price")
            params["orderType"] = "Market"
            params["triggerPrice"] = str(self.round_price(request.symbol, request.stop_price))
            # A sell stop protects a long and fires on a fall; a buy stop fires on a rise
            params["triggerDirection"] = TRIGGER_FALL if request.side is Side.SELL else TRIGGER_RISE
            params["triggerBy"] = "MarkPrice"
        else:
            raise ValueError(f"Unsupported order type {request.order_type}")

        response = self._call(self.http.place_order, "place_order", **params)
        order_id = response["result"]["orderId"]
        logger.info(
            f"Order placed: {request.order_type.value} {request.side.value} {request.quantity} "
            f"{request.symbol} (id={order_id})"
        )

        if request.order_type is OrderType.MARKET:
            return self._fetch_fill(request, order_id)
        return OrderResult(
            order_id=order_id,
            avg_price=0.0,
            orig_qty=request.quantity,
            update_time=self.server_time_ms(),
        )

    def _fetch_fill(self, request: OrderRequest, order_id: str, attempts: int = 3) -> OrderResult:
        """Average fill price of a market order; may lag the placement briefly"""
        for attempt in range(attempts):
            # The order is already live; a failed lookup must not read as a failed entry
            try:
                response = self._call(
                    self.http.get_order_history,
                    "get_order_history",
                    category=CATEGORY,
                    symbol=request.symbol,
                    orderId=order_id,
                )
            except TransportError as e:
                logger.warning(f"Fill lookup for order {order_id} failed: {e}")
                break
            items = (response.get("result") or {}).get("list") or []
            if items and _safe_float(items[0].get("avgPrice")) > 0:
                order = items[0]
                return OrderResult(
                    order_id=order_id,
                    avg_price=_safe_float(order.get("avgPrice")),
                    orig_qty=_safe_float(order.get("cumExecQty"), request.quantity),
                    update_time=int(order.get("updatedTime") or self.server_time_ms()),
                )
            time.sleep(0.2 * (attempt + 1))

        logger.warning(f"Fill details for order {order_id} not yet available")
        return OrderResult(
            order_id=order_id,
            avg_price=0.0,
            orig_qty=request.quantity,
            update_time=self.server_time_ms(),
        )

    def _set_trailing_stop(self, request: OrderRequest) -> OrderResult:
        """
        Bybit trails at the position level with an absolute price distance,
        so the callback rate is converted against the current mark price.
        """
        if not request.callback_rate:
            raise ValueError("TRAILING_STOP_MARKET order requires a callback rate")

        mark_price = self.get_mark_price(request.symbol)
        distance = self.round_price(request.symbol, mark_price * request.callback_rate / 100, bias="up")
        self._call(
            self.http.set_trading_stop,
            "set_trading_stop",
            category=CATEGORY,
            symbol=request.symbol,
            trailingStop=str(distance),
            tpslMode="Full",
            positionIdx=0,
        )
        update_time = self.server_time_ms()
        logger.info(f"Trailing stop set on {request.symbol}: distance {distance} ({request.callback_rate}%)")
        return OrderResult(
            order_id=f"trailing-{request.symbol}-{update_time}",
            avg_price=0.0,
            orig_qty=request.quantity,
            update_time=update_time,
        )

    def cancel_order(self, symbol: str, order_id: str):
        """Cancel an order"""
        self._call(
            self.http.cancel_order,
            "cancel_order",
            category=CATEGORY,
            symbol=symbol,
            orderId=order_id,
        )
        logger.info(f"Order {order_id} cancelled successfully")

    # ---- Account -----------------------------------------------------------

    def get_account_state(self) -> AccountState:
        """Account-level totals of the Unified Trading Account"""
        response = self._call(self.http.get_wallet_balance, "get_wallet_balance", accountType="UNIFIED")
        result_list = (response.get("result") or {}).get("list") or []
        if not result_list:
            raise TransportError("Empty balance list in Bybit response")

        account_data = result_list[0]
        equity = _safe_float(account_data.get("totalEquity"))
        available = _safe_float(account_data.get("totalAvailableBalance"))
        unrealized = _safe_float(account_data.get("totalPerpUPL"))

        # Fall back to the USDT coin row when account totals are not populated
        if equity == 0:
            for coin in account_data.get("coin", []):
                if coin.get("coin") == "USDT":
                    equity = _safe_float(coin.get("equity"))
                    available = _safe_float(coin.get("availableToWithdraw"))
                    unrealized = _safe_float(coin.get("unrealisedPnl"))
                    break

        return AccountState(equity=equity, available_balance=available, unrealized_pnl=unrealized)

    def get_positions(self, symbol: str) -> List[Position]:
        """Open (non-zero) positions for a symbol"""
        response = self._call(self.http.get_positions, "get_positions", category=CATEGORY, symbol=symbol)
        positions = []
        for pos_data in (response.get("result") or {}).get("list") or []:
            try:
                size = float(pos_data.get("size", 0) or 0)
                if size <= 0:
                    continue
                positions.append(Position(
                    symbol=pos_data["symbol"],
                    side=from_bybit_side(pos_data["side"]),
                    size=size,
                    entry_price=_safe_float(pos_data.get("avgPrice")),
                    mark_price=_safe_float(pos_data.get("markPrice")),
                    unrealized_pnl=_safe_float(pos_data.get("unrealisedPnl")),
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid position data: {e}")
        return positions

    def get_closed_pnl(self, symbol: str, since_ms: int) -> Optional[ClosedPnl]:
        """Most recent closed-PnL record for a symbol updated at or after since_ms"""
        response = self._call(
            self.http.get_closed_pnl,
            "get_closed_pnl",
            category=CATEGORY,
            symbol=symbol,
            startTime=since_ms,
            limit=20,
        )
        # Newest first
        for item in (response.get("result") or {}).get("list") or []:
            updated_ms = int(item.get("updatedTime") or item.get("createdTime") or 0)
            if updated_ms and updated_ms < since_ms:
                continue
            return ClosedPnl(
                symbol=item.get("symbol", symbol),
                exit_price=_safe_float(item.get("avgExitPrice")),
                pnl=_safe_float(item.get("closedPnl")),
                updated_time=updated_ms,
            )
        return None
