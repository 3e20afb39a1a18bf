import time
from unittest.mock import MagicMock

import pytest
from pybit.exceptions import FailedRequestError, InvalidRequestError

from bracketbot.analysis.indicators import IndicatorSnapshot
from bracketbot.core.errors import OrderRejectedError, TransportError
from bracketbot.core.models import AccountContext, Decision, OrderRequest, OrderType, Side
from bracketbot.exchange.bybit_client import TRIGGER_FALL, TRIGGER_RISE, BybitClient, to_bybit_interval
from bracketbot.exchange.bybit_transport import BybitTransport
from bracketbot.execution.order_executor import ExecutionState, OrderExecutionEngine

OK = {"retCode": 0, "retMsg": "OK"}


@pytest.fixture
def client():
    # Bypass __init__: no HTTP session and no clock sync against the network
    c = BybitClient.__new__(BybitClient)
    c.testnet = True
    c.base_url = "https://api-testnet.bybit.com"
    c.http = MagicMock()
    c._last_time_sync = time.time()
    c._symbol_rules_cache = {"BTCUSDT": {"priceFilter": {"tickSize": "0.10"}}}
    c._sync_time = MagicMock()
    return c


def invalid_request(code: int, message: str = "rejected") -> InvalidRequestError:
    return InvalidRequestError(request="POST /v5/order/create", message=message, status_code=code,
                               time="00:00:00", resp_headers={})


def test_interval_mapping():
    assert to_bybit_interval("1m") == "1"
    assert to_bybit_interval("5m") == "5"
    assert to_bybit_interval("1h") == "60"


@pytest.mark.parametrize("side, direction", [(Side.SELL, TRIGGER_FALL), (Side.BUY, TRIGGER_RISE)])
def test_stop_market_maps_to_conditional_market_order(client, side, direction):
    client.http.place_order.return_value = {**OK, "result": {"orderId": "sl-1"}}

    result = client.place_order(OrderRequest(
        symbol="BTCUSDT", side=side, order_type=OrderType.STOP_MARKET,
        quantity=0.01, stop_price=97123.456, reduce_only=True,
    ))

    assert result.order_id == "sl-1"
    params = client.http.place_order.call_args.kwargs
    assert params["orderType"] == "Market"
    assert params["triggerPrice"] == "97123.5"
    assert params["triggerDirection"] == direction
    assert params["triggerBy"] == "MarkPrice"
    assert params["reduceOnly"] is True


def test_limit_take_profit_is_gtc(client):
    client.http.place_order.return_value = {**OK, "result": {"orderId": "tp-1"}}

    client.place_order(OrderRequest(
        symbol="BTCUSDT", side=Side.SELL, order_type=OrderType.LIMIT,
        quantity=0.01, price=101000.04, reduce_only=True,
    ))

    params = client.http.place_order.call_args.kwargs
    assert params["orderType"] == "Limit"
    assert params["timeInForce"] == "GTC"
    assert params["price"] == "101000.0"
    assert params["side"] == "Sell"


def test_market_entry_reports_fill_price(client):
    client.http.place_order.return_value = {**OK, "result": {"orderId": "m-1"}}
    client.http.get_order_history.return_value = {
        **OK,
        "result": {"list": [{"avgPrice": "100.5", "cumExecQty": "0.02", "updatedTime": "1700000000123"}]},
    }

    result = client.place_order(OrderRequest(
        symbol="BTCUSDT", side=Side.BUY, order_type=OrderType.MARKET, quantity=0.02,
    ))

    assert result.avg_price == 100.5
    assert result.orig_qty == 0.02
    assert result.update_time == 1700000000123


def test_failed_fill_lookup_still_reports_the_live_order(client):
    client.http.place_order.return_value = {**OK, "result": {"orderId": "m-2"}}
    client.http.get_order_history.side_effect = FailedRequestError(
        request="GET /v5/order/history", message="bad gateway", status_code=502,
        time="00:00:00", resp_headers={},
    )

    result = client.place_order(OrderRequest(
        symbol="BTCUSDT", side=Side.BUY, order_type=OrderType.MARKET, quantity=0.02,
    ))

    assert result.order_id == "m-2"
    assert result.avg_price == 0.0
    assert result.orig_qty == 0.02


def test_trailing_stop_converts_rate_to_distance(client):
    client.http.get_tickers.return_value = {**OK, "result": {"list": [{"markPrice": "100000"}]}}
    client.http.set_trading_stop.return_value = OK

    result = client.place_order(OrderRequest(
        symbol="BTCUSDT", side=Side.SELL, order_type=OrderType.TRAILING_STOP_MARKET,
        quantity=0.01, callback_rate=1.0, reduce_only=True,
    ))

    params = client.http.set_trading_stop.call_args.kwargs
    assert params["trailingStop"] == "1000.0"
    assert params["positionIdx"] == 0
    assert result.order_id.startswith("trailing-BTCUSDT-")
    client.http.place_order.assert_not_called()


def test_timestamp_error_is_retried_once_after_resync(client):
    client.http.cancel_order.side_effect = [invalid_request(10002, "timestamp"), OK]

    client.cancel_order("BTCUSDT", "abc")

    assert client.http.cancel_order.call_count == 2
    client._sync_time.assert_any_call(force=True)


def test_rejection_carries_exchange_code(client):
    client.http.cancel_order.side_effect = invalid_request(110001, "order not exists")

    with pytest.raises(OrderRejectedError) as exc:
        client.cancel_order("BTCUSDT", "abc")
    assert exc.value.code == 110001


def test_failed_request_is_a_transport_error(client):
    client.http.get_wallet_balance.side_effect = FailedRequestError(
        request="GET /v5/account/wallet-balance", message="connection reset", status_code=500,
        time="00:00:00", resp_headers={},
    )
    with pytest.raises(TransportError):
        client.get_account_state()


def test_non_zero_ret_code_is_rejected(client):
    client.http.place_order.return_value = {"retCode": 110007, "retMsg": "insufficient balance"}
    with pytest.raises(OrderRejectedError):
        client.place_order(OrderRequest(symbol="BTCUSDT", side=Side.BUY, order_type=OrderType.MARKET, quantity=1))


def test_klines_are_oldest_first_without_the_open_bar(client):
    now = int(time.time() * 1000)
    current = now - now % 60_000
    rows = [
        [str(current - offset * 60_000), "1", "2", "0.5", str(100 + offset), "10"]
        for offset in range(4)
    ]
    client.http.get_kline.return_value = {**OK, "result": {"list": rows}}
    client.server_time_ms = lambda: now

    candles = client.get_klines("BTCUSDT", "1m", limit=3)

    assert [c.open_time for c in candles] == [current - 3 * 60_000, current - 2 * 60_000, current - 60_000]
    assert client.http.get_kline.call_args.kwargs["limit"] == 4


def test_account_state_falls_back_to_usdt_row(client):
    client.http.get_wallet_balance.return_value = {**OK, "result": {"list": [{
        "totalEquity": "",
        "coin": [{"coin": "USDT", "equity": "250.5", "availableToWithdraw": "200", "unrealisedPnl": "-1.5"}],
    }]}}

    state = client.get_account_state()

    assert state.equity == 250.5
    assert state.available_balance == 200.0
    assert state.unrealized_pnl == -1.5


def test_zero_size_positions_are_skipped(client):
    client.http.get_positions.return_value = {**OK, "result": {"list": [
        {"symbol": "BTCUSDT", "side": "", "size": "0"},
        {"symbol": "BTCUSDT", "side": "Sell", "size": "0.02", "avgPrice": "100", "markPrice": "99"},
    ]}}

    positions = client.get_positions("BTCUSDT")

    assert len(positions) == 1
    assert positions[0].side is Side.SELL


def test_closed_pnl_ignores_records_before_entry(client):
    client.http.get_closed_pnl.return_value = {**OK, "result": {"list": [
        {"symbol": "BTCUSDT", "avgExitPrice": "99", "closedPnl": "-2", "updatedTime": "900"},
    ]}}
    assert client.get_closed_pnl("BTCUSDT", since_ms=1000) is None

    client.http.get_closed_pnl.return_value = {**OK, "result": {"list": [
        {"symbol": "BTCUSDT", "avgExitPrice": "106", "closedPnl": "3.2", "updatedTime": "1500"},
    ]}}
    closed = client.get_closed_pnl("BTCUSDT", since_ms=1000)
    assert closed.exit_price == 106.0
    assert closed.pnl == 3.2


# ---- streams ---------------------------------------------------------------

@pytest.fixture
def transport(client):
    t = BybitTransport(client)
    t.socket = MagicMock()
    t._open_socket = lambda: t.socket
    return t


def test_trade_stream_emits_ticks_and_skips_malformed(transport):
    ticks = []
    subscription = transport.subscribe_trades("BTCUSDT", ticks.append)
    handler = transport.socket.trade_stream.call_args.kwargs["callback"]

    handler({"data": [
        {"p": "100.5", "v": "0.01", "T": 1700000000000},
        {"p": "bad", "v": "0.01", "T": 1700000000001},
        {"p": "101", "v": "0.2", "T": 1700000000002},
    ]})

    assert [t.price for t in ticks] == [100.5, 101.0]
    subscription.unsubscribe()
    subscription.unsubscribe()
    transport.socket.exit.assert_called_once()
    assert not subscription.active


def test_ticker_stream_skips_deltas_without_mark_price(transport):
    updates = []
    transport.subscribe_mark_price("BTCUSDT", updates.append)
    handler = transport.socket.ticker_stream.call_args.kwargs["callback"]

    handler({"ts": 1, "data": {"symbol": "BTCUSDT", "lastPrice": "100"}})
    handler({"ts": 2, "data": {"symbol": "BTCUSDT", "markPrice": "100.7"}})

    assert [(u.mark_price, u.timestamp_ms) for u in updates] == [(100.7, 2)]


async def test_async_calls_run_the_blocking_client(transport, client):
    client.http.cancel_order.return_value = OK
    await transport.cancel_order("BTCUSDT", "abc")
    assert client.http.cancel_order.call_args.kwargs["orderId"] == "abc"


async def test_entry_with_failed_fill_lookup_is_still_protected(transport, client, history, notifier, execution_settings):
    client.http.place_order.return_value = {**OK, "result": {"orderId": "ENTRY1"}}
    client.http.get_order_history.side_effect = FailedRequestError(
        request="GET /v5/order/history", message="bad gateway", status_code=502,
        time="00:00:00", resp_headers={},
    )
    engine = OrderExecutionEngine(transport, history, notifier, execution_settings, "BTCUSDT", reward_ratio=2.0)
    indicators = IndicatorSnapshot(
        ema_fast=100.0, ema_slow=99.0, rsi=52.0, rsi_prev=50.0,
        bb_upper=104.0, bb_middle=100.0, bb_lower=96.0,
        macd=0.1, macd_signal=0.05, macd_histogram=0.05,
        obv=1000.0, atr=2.0,
    )
    context = AccountContext(
        equity=1000.0, available_balance=1000.0, unrealized_pnl=0.0,
        realized_pnl_daily=0.0, trade_count_daily=0, position_size_usd=2000.0,
    )

    outcome = await engine.execute(Decision.BUY, indicators, context, 100.0)

    assert outcome.state is ExecutionState.PROTECTED
    assert outcome.trade.entry_price == 100.0
    order_types = [c.kwargs["orderType"] for c in client.http.place_order.call_args_list]
    assert order_types.count("Market") == 2  # entry plus the conditional stop
    assert order_types.count("Limit") == 1
