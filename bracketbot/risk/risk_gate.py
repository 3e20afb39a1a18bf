"""
Risk Gate - Daily limits and position sizing for the next trade
"""
from typing import Dict, Optional

from loguru import logger

from bracketbot.config.settings import RiskSettings
from bracketbot.core.models import AccountContext, RiskDecision
from bracketbot.notifications.alerts import AlertDispatcher, Severity


RULE_DAILY_LOSS = "daily_loss_limit"
RULE_DAILY_PROFIT = "daily_profit_target"
RULE_MAX_TRADES = "max_trades_per_day"


class RiskGate:
    """Decides whether the next trade may be opened and how large it is"""

    def __init__(self, rules: RiskSettings, notifier: Optional[AlertDispatcher] = None):
        self.rules = rules
        self.notifier = notifier
        # Edge-triggered alerts: one per rule until re-armed
        self._notified: Dict[str, bool] = {
            RULE_DAILY_LOSS: False,
            RULE_DAILY_PROFIT: False,
            RULE_MAX_TRADES: False,
        }
        logger.info("Risk gate initialized")

    def compute_position_size(self, equity: float) -> float:
        """
        Notional size in USD such that hitting the stop loses max_risk_per_trade_percent.

        The implied stop distance is risk% / reward-ratio, so a higher reward
        ratio means a tighter stop and a larger notional for the same risk.
        """
        risk_pct = self.rules.max_risk_per_trade_percent
        stop_loss_pct = risk_pct / self.rules.risk_reward_ratio
        return (equity * (risk_pct / 100)) / (stop_loss_pct / 100)

    def check(self, context: AccountContext) -> RiskDecision:
        """
        Evaluate the daily rules in order; the first violated rule wins

        Args:
            context: Fresh account snapshot for this cycle

        Returns:
            RiskDecision (position_size_usd is 0 when denied)
        """
        equity = context.equity
        realized = context.realized_pnl_daily
        rules = self.rules

        # 1. Daily loss limit
        daily_loss_limit = -(equity * (rules.daily_loss_limit_percent / 100))
        if realized < daily_loss_limit:
            self._alert_once(
                RULE_DAILY_LOSS,
                f"Daily loss limit of {daily_loss_limit:.2f} USD reached. Realized PnL: {realized:.2f} USD.",
            )
            return RiskDecision(
                is_trading_allowed=False,
                reason=f"Daily loss limit reached ({realized:.2f} USD).",
                position_size_usd=0.0,
            )

        # 2. Daily profit target (halts trading on success too)
        daily_profit_target = equity * (rules.daily_profit_target_percent / 100)
        if realized >= daily_profit_target:
            self._alert_once(
                RULE_DAILY_PROFIT,
                f"Daily profit target of {daily_profit_target:.2f} USD reached. Realized PnL: {realized:.2f} USD.",
            )
            return RiskDecision(
                is_trading_allowed=False,
                reason=f"Daily profit target reached ({realized:.2f} USD).",
                position_size_usd=0.0,
            )

        # 3. Trade frequency
        if context.trade_count_daily > rules.max_trades_per_day:
            self._alert_once(
                RULE_MAX_TRADES,
                f"Maximum daily trade count exceeded ({context.trade_count_daily} > {rules.max_trades_per_day}).",
            )
            return RiskDecision(
                is_trading_allowed=False,
                reason=f"Maximum daily trade count exceeded ({rules.max_trades_per_day}).",
                position_size_usd=0.0,
            )

        return RiskDecision(
            is_trading_allowed=True,
            reason=None,
            position_size_usd=self.compute_position_size(equity),
        )

    def _alert_once(self, rule: str, message: str):
        if self._notified[rule]:
            return
        self._notified[rule] = True
        logger.warning(f"[RISK] {message}")
        if self.notifier:
            self.notifier.notify(message, Severity.WARNING)

    def reset_notifications(self):
        """Re-arm the one-shot alerts (new trading day)"""
        for rule in self._notified:
            self._notified[rule] = False
