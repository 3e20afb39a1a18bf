from .simulator import Backtester, BacktestSummary, SimulatedAccount, load_trades

__all__ = ["Backtester", "BacktestSummary", "SimulatedAccount", "load_trades"]
