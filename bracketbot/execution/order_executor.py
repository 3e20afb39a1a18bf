"""
Order Execution Engine - Market entry protected by a stop-loss / take-profit bracket
"""
import asyncio
import math
import time
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import List, Optional

from loguru import logger

from bracketbot.analysis.indicators import IndicatorSnapshot
from bracketbot.config.settings import ExecutionSettings
from bracketbot.core.errors import TransportError
from bracketbot.core.models import (
    AccountContext,
    Decision,
    OrderRequest,
    OrderResult,
    OrderType,
    Side,
    Trade,
)
from bracketbot.exchange.transport import OrderTransport, with_timeout
from bracketbot.history.trade_history import TradeHistory
from bracketbot.notifications.alerts import AlertDispatcher, Severity


class ExecutionState(str, Enum):
    """Terminal states of one execution attempt"""
    DECLINED = "declined"          # nothing was sent
    ENTRY_FAILED = "entry_failed"  # entry rejected, nothing opened
    PROTECTED = "protected"        # entry filled, bracket resting
    FLATTENED = "flattened"        # bracket failed, position closed again
    FAILED = "failed"              # bracket failed and the close failed too


@dataclass
class ExecutionOutcome:
    state: ExecutionState
    trade: Optional[Trade] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class Bracket:
    side: Side
    reference_price: float
    stop_loss: float
    take_profit: float
    quantity: float


def round_down(value: float, precision: int) -> float:
    step = Decimal(1).scaleb(-precision)
    return float(Decimal(str(value)).quantize(step, rounding=ROUND_DOWN))


def compute_bracket(
    side: Side,
    price: float,
    atr: float,
    position_size_usd: float,
    atr_multiplier: float = 1.5,
    reward_ratio: float = 2.0,
    quantity_precision: int = 3,
) -> Optional[Bracket]:
    """
    Stop at `atr * atr_multiplier` from the reference price, target at
    `reward_ratio` times that distance on the other side.

    Returns None when the inputs cannot produce a valid order.
    """
    if not (math.isfinite(price) and price > 0 and math.isfinite(atr) and atr > 0):
        return None

    stop_distance = atr * atr_multiplier
    if side is Side.BUY:
        stop_loss = price - stop_distance
        take_profit = price + stop_distance * reward_ratio
    else:
        stop_loss = price + stop_distance
        take_profit = price - stop_distance * reward_ratio

    if stop_loss <= 0 or take_profit <= 0:
        return None

    quantity = round_down(position_size_usd / price, quantity_precision)
    if quantity <= 0:
        return None

    return Bracket(
        side=side,
        reference_price=price,
        stop_loss=stop_loss,
        take_profit=take_profit,
        quantity=quantity,
    )


class OrderExecutionEngine:
    """Opens a position and protects it, flattening it again if protection fails"""

    def __init__(
        self,
        orders: OrderTransport,
        history: TradeHistory,
        notifier: AlertDispatcher,
        settings: ExecutionSettings,
        symbol: str,
        reward_ratio: float = 2.0,
    ):
        self.orders = orders
        self.history = history
        self.notifier = notifier
        self.settings = settings
        self.symbol = symbol
        self.reward_ratio = reward_ratio

    async def _submit(self, request: OrderRequest, action: str) -> OrderResult:
        return await with_timeout(
            self.orders.submit_order(request), self.settings.exchange_call_timeout_s, action
        )

    async def execute(
        self,
        decision: Decision,
        indicators: IndicatorSnapshot,
        context: AccountContext,
        last_close_price: float,
    ) -> ExecutionOutcome:
        side = decision.to_side()
        if side is None:
            return ExecutionOutcome(ExecutionState.DECLINED, reason="No trade decision")

        # Step A: size and price the bracket
        bracket = compute_bracket(
            side,
            last_close_price,
            indicators.atr,
            context.position_size_usd,
            atr_multiplier=self.settings.atr_stop_multiplier,
            reward_ratio=self.reward_ratio,
            quantity_precision=self.settings.quantity_precision,
        )
        if bracket is None:
            reason = (
                f"Cannot build bracket (price={last_close_price}, atr={indicators.atr}, "
                f"size_usd={context.position_size_usd:.2f})"
            )
            logger.warning(f"[EXECUTION] {reason}")
            return ExecutionOutcome(ExecutionState.DECLINED, reason=reason)

        logger.info(
            f"[EXECUTION] {side.value} {bracket.quantity} {self.symbol} @ ~{bracket.reference_price:.2f} "
            f"SL={bracket.stop_loss:.2f} TP={bracket.take_profit:.2f}"
        )

        # Step B: market entry
        try:
            entry = await self._submit(
                OrderRequest(
                    symbol=self.symbol,
                    side=side,
                    order_type=OrderType.MARKET,
                    quantity=bracket.quantity,
                ),
                "entry order",
            )
        except TransportError as e:
            message = f"Entry order failed for {self.symbol} {side.value}: {e}"
            logger.error(f"[EXECUTION] {message}")
            self.notifier.notify(message, Severity.WARNING)
            return ExecutionOutcome(ExecutionState.ENTRY_FAILED, reason=str(e))

        filled_qty = entry.orig_qty if entry.orig_qty > 0 else bracket.quantity
        entry_price = entry.avg_price if entry.avg_price > 0 else bracket.reference_price
        logger.info(f"[EXECUTION] Entry filled: {filled_qty} @ {entry_price} (order {entry.order_id})")

        # Step C: both protective orders at once
        exit_side = side.opposite
        take_profit_req = OrderRequest(
            symbol=self.symbol,
            side=exit_side,
            order_type=OrderType.LIMIT,
            quantity=filled_qty,
            price=bracket.take_profit,
            reduce_only=True,
        )
        stop_loss_req = OrderRequest(
            symbol=self.symbol,
            side=exit_side,
            order_type=OrderType.STOP_MARKET,
            quantity=filled_qty,
            stop_price=bracket.stop_loss,
            reduce_only=True,
        )
        tp_result, sl_result = await asyncio.gather(
            self._submit(take_profit_req, "take-profit order"),
            self._submit(stop_loss_req, "stop-loss order"),
            return_exceptions=True,
        )

        failures = [r for r in (tp_result, sl_result) if isinstance(r, BaseException)]
        if failures:
            survivors = [r for r in (tp_result, sl_result) if isinstance(r, OrderResult)]
            return await self._flatten(exit_side, filled_qty, failures, survivors)

        # Step D: record the protected trade
        trade = Trade(
            id=str(entry.order_id),
            symbol=self.symbol,
            side=side,
            entry_price=entry_price,
            size=filled_qty,
            timestamp=entry.update_time or int(time.time() * 1000),
            stop_loss_price=bracket.stop_loss,
            take_profit_price=bracket.take_profit,
            stop_loss_order_id=sl_result.order_id,
            take_profit_order_id=tp_result.order_id,
        )
        try:
            await self.history.append_trade(trade)
        except (OSError, ValueError) as e:
            logger.error(f"[EXECUTION] Failed to record trade {trade.id}: {e}")
            self.notifier.notify(f"Trade {trade.id} is protected but was not written to history: {e}", Severity.WARNING)

        self.notifier.notify(
            f"Opened {side.value} {filled_qty} {self.symbol} @ {entry_price:.2f} "
            f"(SL {bracket.stop_loss:.2f}, TP {bracket.take_profit:.2f})",
            Severity.INFO,
        )
        logger.success(f"[EXECUTION] Trade {trade.id} protected")
        return ExecutionOutcome(ExecutionState.PROTECTED, trade=trade)

    async def _flatten(
        self,
        exit_side: Side,
        quantity: float,
        failures: List[BaseException],
        survivors: List[OrderResult],
    ) -> ExecutionOutcome:
        """Compensating close after a protective order failed; attempted exactly once"""
        cause = "; ".join(str(f) for f in failures)
        logger.error(f"[EXECUTION] Protective order failed ({cause}), closing position")

        try:
            await self._submit(
                OrderRequest(
                    symbol=self.symbol,
                    side=exit_side,
                    order_type=OrderType.MARKET,
                    quantity=quantity,
                    reduce_only=True,
                ),
                "compensating close",
            )
        except TransportError as e:
            message = (
                f"CRITICAL: position {self.symbol} is OPEN AND UNPROTECTED. Protective order failed ({cause}) "
                f"and the compensating close failed ({e}). Manual intervention required."
            )
            logger.critical(f"[EXECUTION] {message}")
            self.notifier.notify(message, Severity.CRITICAL)
            return ExecutionOutcome(ExecutionState.FAILED, reason=str(e))

        self.notifier.notify(
            f"Protective order failed for {self.symbol} ({cause}); position was closed at market.",
            Severity.CRITICAL,
        )

        for survivor in survivors:
            try:
                await with_timeout(
                    self.orders.cancel_order(self.symbol, survivor.order_id),
                    self.settings.exchange_call_timeout_s,
                    "cancel protective order",
                )
            except TransportError as e:
                logger.warning(f"[EXECUTION] Could not cancel leftover order {survivor.order_id}: {e}")

        return ExecutionOutcome(ExecutionState.FLATTENED, reason=cause)
