"""
Replay a recorded trade file through the strategy and print the results
"""
import argparse
from pathlib import Path

from loguru import logger

from bracketbot.backtest.simulator import Backtester, load_trades
from bracketbot.config.settings import Settings
from bracketbot.core.log_setup import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="Tick replay backtest for the bracket strategy")
    parser.add_argument("--trades", default="historical-trades.json", help="JSON file written by fetch_history.py")
    parser.add_argument("--capital", type=float, default=100.0, help="Starting capital in USD")
    parser.add_argument("--fee", type=float, default=0.0005, help="Taker fee per side (0.0005 = 0.05%%)")
    parser.add_argument(
        "--every-tick",
        action="store_true",
        help="Evaluate the signal on every tick instead of once per new fast candle",
    )
    args = parser.parse_args()

    settings = Settings.load()
    settings.logging.log_to_file = False
    setup_logging(settings.logging)

    path = Path(args.trades)
    logger.info(f"Loading trades from {path}...")
    ticks = load_trades(path)
    if not ticks:
        logger.error("No trades to replay")
        return

    backtester = Backtester(
        market=settings.market,
        risk=settings.risk,
        execution=settings.execution,
        starting_capital=args.capital,
        fee_rate=args.fee,
        evaluate_every_tick=args.every_tick,
    )
    account = backtester.run(ticks)
    account.print_summary()


if __name__ == "__main__":
    main()
