"""
Core data types for the range trading engine.

Timestamps are epoch milliseconds (what the exchange reports); dates are
local-calendar "YYYY-MM-DD" strings.
"""
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class TradingState(str, Enum):
    IDLE = "IDLE"
    BUY_ORDER_PLACED = "BUY_ORDER_PLACED"
    BOUGHT = "BOUGHT"
    SELL_ORDER_PLACED = "SELL_ORDER_PLACED"
    DONE = "DONE"


# States that hold capital on the exchange (order or position)
ACTIVE_STATES = (
    TradingState.BUY_ORDER_PLACED,
    TradingState.BOUGHT,
    TradingState.SELL_ORDER_PLACED,
)


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELED = "canceled"


class TradeStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FillState(str, Enum):
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"


class Recommendation(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    AVOID = "AVOID"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return ["LOW", "MEDIUM", "HIGH"].index(self.value)


def _pick(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are fields of cls (tolerates old/extra keys)."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class OrderInfo:
    """An order we placed, as tracked in the trading status."""
    order_id: str
    symbol: str
    side: OrderSide
    price: float
    amount: float
    status: OrderState = OrderState.OPEN
    created_at: int = 0
    filled_at: Optional[int] = None
    filled: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderInfo":
        d = _pick(cls, data)
        d["side"] = OrderSide(d["side"])
        d["status"] = OrderState(d.get("status", "open"))
        return cls(**d)


@dataclass
class OrderStatus:
    """Normalized view of an exchange order.

    Produced only by ``rangebot.orders.to_order_status``; everything else
    branches on ``state``.
    """
    order_id: str
    state: FillState
    amount: float
    filled: float = 0.0
    average: Optional[float] = None
    timestamp: Optional[int] = None
    last_trade_timestamp: Optional[int] = None

    @property
    def fill_ratio(self) -> float:
        if self.amount <= 0:
            return 0.0
        return self.filled / self.amount

    @property
    def remaining(self) -> float:
        return max(0.0, self.amount - self.filled)


@dataclass
class TradeRecord:
    """One attempted position, from buy placement to final exit.

    ``partial_amount``/``partial_proceeds`` accumulate what earlier sell orders
    sold before being cancelled and re-quoted, so profit covers the whole
    position.
    """
    id: str
    symbol: str
    buy_order_id: str
    buy_price: float
    amount: float
    start_time: int
    status: TradeStatus = TradeStatus.IN_PROGRESS
    sell_order_id: Optional[str] = None
    sell_price: Optional[float] = None
    profit: Optional[float] = None
    profit_rate: Optional[float] = None
    end_time: Optional[int] = None
    failure_reason: Optional[str] = None
    partial_amount: float = 0.0
    partial_proceeds: float = 0.0

    @property
    def remaining_amount(self) -> float:
        return max(0.0, round(self.amount - self.partial_amount, 8))

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRecord":
        d = _pick(cls, data)
        d["status"] = TradeStatus(d.get("status", "in_progress"))
        return cls(**d)


@dataclass
class TradingStatus:
    """The single live state-machine instance."""
    state: TradingState = TradingState.IDLE
    symbol: Optional[str] = None
    current_trade_id: Optional[str] = None
    buy_order: Optional[OrderInfo] = None
    sell_order: Optional[OrderInfo] = None
    high: Optional[float] = None
    low: Optional[float] = None
    last_update_time: int = 0

    @classmethod
    def idle(cls, now: int) -> "TradingStatus":
        return cls(state=TradingState.IDLE, last_update_time=now)

    def is_consistent(self) -> bool:
        if self.state in ACTIVE_STATES:
            if self.symbol is None or self.buy_order is None:
                return False
        if self.sell_order is not None and self.state != TradingState.SELL_ORDER_PLACED:
            return False
        if self.state == TradingState.SELL_ORDER_PLACED and self.sell_order is None:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "symbol": self.symbol,
            "current_trade_id": self.current_trade_id,
            "buy_order": self.buy_order.to_dict() if self.buy_order else None,
            "sell_order": self.sell_order.to_dict() if self.sell_order else None,
            "high": self.high,
            "low": self.low,
            "last_update_time": self.last_update_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingStatus":
        buy = data.get("buy_order")
        sell = data.get("sell_order")
        return cls(
            state=TradingState(data.get("state", "IDLE")),
            symbol=data.get("symbol"),
            current_trade_id=data.get("current_trade_id"),
            buy_order=OrderInfo.from_dict(buy) if buy else None,
            sell_order=OrderInfo.from_dict(sell) if sell else None,
            high=data.get("high"),
            low=data.get("low"),
            last_update_time=data.get("last_update_time", 0),
        )


@dataclass
class SystemStats:
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    total_profit: float = 0.0
    total_profit_rate: float = 0.0
    annualized_return: float = 0.0
    current_date: str = ""
    traded_symbols: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemStats":
        d = _pick(cls, data)
        d["traded_symbols"] = dict(d.get("traded_symbols") or {})
        return cls(**d)


@dataclass
class CircuitBreakerState:
    is_tripped: bool = False
    trip_time: Optional[int] = None
    trip_reason: str = ""
    consecutive_failures: int = 0
    daily_loss: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CircuitBreakerState":
        return cls(**_pick(cls, data))


@dataclass
class AmplitudeAnalysis:
    """Range assessment of one instrument over one lookback window."""
    symbol: str
    high: float
    low: float
    amplitude: float
    trend: float
    is_trend_filtered: bool
    buy_price: float
    sell_price: float
    is_valid: bool


@dataclass
class MultiTimeframeAnalysis:
    symbol: str
    horizons: Dict[str, AmplitudeAnalysis]
    score: float
    is_valid: bool
    primary: AmplitudeAnalysis  # short horizon; supplies prices and bounds

    @property
    def passed(self) -> List[str]:
        return [tf for tf, a in self.horizons.items() if a.is_valid]


@dataclass
class Advice:
    symbol: str
    recommendation: Recommendation
    confidence: float
    risk_level: RiskLevel
    reasoning: str = ""
    timestamp: int = 0
