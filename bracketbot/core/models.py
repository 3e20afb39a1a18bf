"""
Core domain models - candles, ticks, account state, trades and orders
"""
import math
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class Decision(str, Enum):
    """Signal engine output"""
    BUY = "BUY"
    SELL = "SELL"
    WAIT = "WAIT"

    def to_side(self) -> Optional[Side]:
        if self is Decision.WAIT:
            return None
        return Side(self.value)


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP_MARKET = "STOP_MARKET"
    TRAILING_STOP_MARKET = "TRAILING_STOP_MARKET"


@dataclass
class Candle:
    """OHLCV bar, open_time in ms aligned on the interval"""
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def copy(self) -> "Candle":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Tick:
    """Single trade print from the exchange"""
    price: float
    quantity: float
    timestamp_ms: int

    def is_valid(self) -> bool:
        return (
            math.isfinite(self.price)
            and self.price > 0
            and math.isfinite(self.quantity)
            and self.quantity >= 0
        )


@dataclass(frozen=True)
class MarkPriceUpdate:
    symbol: str
    mark_price: float
    timestamp_ms: int = 0


@dataclass
class Position:
    """Open position as reported by the exchange"""
    symbol: str
    side: Side
    size: float
    entry_price: float
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0


@dataclass
class AccountState:
    equity: float
    available_balance: float
    unrealized_pnl: float


@dataclass
class AccountContext:
    """Snapshot of the account used for one decision cycle"""
    equity: float
    available_balance: float
    unrealized_pnl: float
    realized_pnl_daily: float
    trade_count_daily: int
    open_positions: List[Position] = field(default_factory=list)
    position_size_usd: float = 0.0


@dataclass(frozen=True)
class RiskDecision:
    is_trading_allowed: bool
    reason: Optional[str]
    position_size_usd: float


@dataclass
class Trade:
    """Trade record, open until exit_price/pnl are set by a close event"""
    id: str
    symbol: str
    side: Side
    entry_price: float
    size: float
    timestamp: int
    exit_price: float = 0.0
    pnl: float = 0.0
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    trailing_order_id: Optional[str] = None
    is_trailing_active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        known = {f for f in cls.__dataclass_fields__}
        payload = {k: v for k, v in data.items() if k in known}
        payload["side"] = Side(payload["side"])
        payload["id"] = str(payload["id"])
        return cls(**payload)


@dataclass
class OrderRequest:
    symbol: str
    side: Side
    order_type: OrderType
    quantity: float
    price: Optional[float] = None
    stop_price: Optional[float] = None
    callback_rate: Optional[float] = None
    reduce_only: bool = False


@dataclass
class OrderResult:
    order_id: str
    avg_price: float
    orig_qty: float
    update_time: int


@dataclass
class CapitalEntry:
    timestamp: int
    equity: float
    unrealized_pnl: float
    realized_pnl_daily: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ClosedPnl:
    """Realized result of a position closed on the exchange"""
    symbol: str
    exit_price: float
    pnl: float
    updated_time: int
