"""
Account Context - fresh per-cycle view of equity, open positions and today's trading
"""
import asyncio

from loguru import logger

from bracketbot.core.models import AccountContext
from bracketbot.exchange.transport import AccountTransport, with_timeout
from bracketbot.history.trade_history import TradeHistory
from bracketbot.risk.risk_gate import RiskGate


class AccountContextBuilder:
    """Combines exchange account data with the local trade log"""

    def __init__(
        self,
        account: AccountTransport,
        history: TradeHistory,
        risk_gate: RiskGate,
        symbol: str,
        timeout_s: float = 10.0,
    ):
        self.account = account
        self.history = history
        self.risk_gate = risk_gate
        self.symbol = symbol
        self.timeout_s = timeout_s

    async def build(self) -> AccountContext:
        """Raises TransportError when the exchange cannot be reached, OSError or ValueError on an unreadable history file"""
        state, positions = await asyncio.gather(
            with_timeout(self.account.get_account_state(), self.timeout_s, "get_account_state"),
            with_timeout(self.account.get_open_positions(self.symbol), self.timeout_s, "get_open_positions"),
        )
        todays_trades = await self.history.get_todays_trades()

        context = AccountContext(
            equity=state.equity,
            available_balance=state.available_balance,
            unrealized_pnl=state.unrealized_pnl,
            realized_pnl_daily=sum(t.pnl for t in todays_trades),
            trade_count_daily=len(todays_trades),
            open_positions=positions,
            position_size_usd=self.risk_gate.compute_position_size(state.equity),
        )
        logger.debug(
            f"Account context: equity={context.equity:.2f} realized_today={context.realized_pnl_daily:.2f} "
            f"trades_today={context.trade_count_daily} open_positions={len(positions)}"
        )
        return context
