"""
Download about a month of public trades into the backtest input format
"""
import argparse
from pathlib import Path

from loguru import logger

from bracketbot.backtest.trade_archive import download_range, save_trades
from bracketbot.config.settings import MarketDataSettings


def main() -> None:
    parser = argparse.ArgumentParser(description="Fetch Bybit public trade history for backtesting")
    parser.add_argument("--symbol", default=None, help="Symbol (defaults to the configured SYMBOL)")
    parser.add_argument("--days", type=int, default=30, help="Number of full days to download")
    parser.add_argument("--out", default="historical-trades.json", help="Output JSON file")
    args = parser.parse_args()

    symbol = args.symbol or MarketDataSettings().symbol
    logger.info(f"Fetching {args.days} days of {symbol} trades...")
    trades = download_range(symbol, args.days)
    if not trades:
        logger.error("No trades downloaded")
        return
    save_trades(trades, Path(args.out))


if __name__ == "__main__":
    main()
