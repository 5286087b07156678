"""
MTF Sentinel Trader - Trade and Position Data Models
Defines positions, the trailing stop ladder, exit decisions and orders.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
import uuid

ALGO_USER_ID = "ALGO"


class PositionStatus(Enum):
    """Status of a position through its lifecycle."""
    ACTIVE = "ACTIVE"
    EXITED = "EXITED"
    STOPPED = "STOPPED"  # Terminal variant of EXITED, distinguished by exit reason


class ExitType(Enum):
    """Why a position is being closed, in evaluation priority order."""
    RSI_REVERSAL = "RSI_REVERSAL"
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"


class MonitorStatus(Enum):
    """Outcome of one monitoring pass over a position."""
    HOLD = "HOLD"
    EXIT = "EXIT"


class OrderSide(Enum):
    """Buy or sell."""
    BUY = "BUY"
    SELL = "SELL"


# =============================================================================
# TRAILING STOP LADDER
# =============================================================================

@dataclass(frozen=True)
class TrailingLevelSpec:
    """One rung of the trailing stop ladder."""
    level: int
    profit_threshold_pct: float
    locked_profit_pct: float
    description: str

    def lock_in_price(self, entry_price: float) -> float:
        return entry_price * (1 + self.locked_profit_pct / 100)

    def target_price(self, entry_price: float) -> float:
        return entry_price * (1 + self.profit_threshold_pct / 100)

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "profit_threshold_pct": self.profit_threshold_pct,
            "locked_profit_pct": self.locked_profit_pct,
            "description": self.description,
        }


# Level 0 means no rung reached yet. Both columns strictly increase.
TRAILING_LADDER: Tuple[TrailingLevelSpec, ...] = (
    TrailingLevelSpec(1, 1.5, 1.0, "Early Protection"),
    TrailingLevelSpec(2, 2.25, 1.75, "Enhanced Early"),
    TrailingLevelSpec(3, 2.75, 2.0, "Small Gain Lock"),
    TrailingLevelSpec(4, 4.0, 2.5, "Base Profit"),
    TrailingLevelSpec(5, 5.0, 3.0, "Steady Growth"),
    TrailingLevelSpec(6, 6.0, 3.5, "Momentum Build"),
    TrailingLevelSpec(7, 7.0, 4.2, "Strong Move"),
    TrailingLevelSpec(8, 8.0, 5.0, "Trend Confirm"),
    TrailingLevelSpec(9, 10.0, 6.5, "Big Move"),
    TrailingLevelSpec(10, 12.0, 8.0, "Strong Trend"),
    TrailingLevelSpec(11, 15.0, 10.5, "Major Move"),
    TrailingLevelSpec(12, 18.0, 13.0, "Breakout"),
    TrailingLevelSpec(13, 20.0, 15.0, "Big Breakout"),
    TrailingLevelSpec(14, 25.0, 19.0, "Explosive Move"),
    TrailingLevelSpec(15, 30.0, 23.0, "Maximum Capture"),
)

MAX_TRAILING_LEVEL = len(TRAILING_LADDER)


def ladder_spec(level: int) -> Optional[TrailingLevelSpec]:
    """Rung for a level, or None for level 0."""
    if level <= 0:
        return None
    return TRAILING_LADDER[min(level, MAX_TRAILING_LEVEL) - 1]


def level_for_profit(pnl_percentage: float) -> int:
    """Highest level whose profit threshold the given PnL% has reached."""
    level = 0
    for spec in TRAILING_LADDER:
        if pnl_percentage >= spec.profit_threshold_pct:
            level = spec.level
        else:
            break
    return level


# =============================================================================
# POSITIONS
# =============================================================================

@dataclass
class Position:
    """
    An open or closed MTF position.

    Algorithm-level positions (user_id == ALGO_USER_ID) track the strategy's
    paper book; per-user positions are backed by real broker orders.
    """

    # Identity
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ALGO_USER_ID
    symbol: str = ""

    # Entry
    entry_price: float = 0.0
    entry_quantity: int = 0
    entry_date: str = field(default_factory=lambda: datetime.now(timezone.utc).date().isoformat())
    entry_time: str = field(default_factory=lambda: datetime.now(timezone.utc).strftime("%H:%M:%S"))
    entry_order_id: Optional[str] = None

    # Margin
    margin_per_share: Optional[float] = None
    margin_required: Optional[float] = None
    leverage: Optional[float] = None
    margin_estimated: bool = False

    # Current state
    current_price: Optional[float] = None
    status: PositionStatus = PositionStatus.ACTIVE
    trailing_level: int = 0
    pnl_amount: float = 0.0
    pnl_percentage: float = 0.0

    # Exit
    exit_price: Optional[float] = None
    exit_date: Optional[str] = None
    exit_time: Optional[str] = None
    exit_reason: Optional[str] = None
    exit_type: Optional[ExitType] = None
    exit_order_id: Optional[str] = None

    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def is_algorithm(self) -> bool:
        return self.user_id == ALGO_USER_ID

    def pnl_at(self, price: float) -> Tuple[float, float]:
        """PnL amount and percentage if the position were valued at price."""
        amount = (price - self.entry_price) * self.entry_quantity
        pct = ((price - self.entry_price) / self.entry_price * 100) if self.entry_price > 0 else 0.0
        return amount, pct

    def to_dict(self) -> dict:
        """Convert position to dictionary (column names match the positions table)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "entry_price": self.entry_price,
            "entry_quantity": self.entry_quantity,
            "entry_date": self.entry_date,
            "entry_time": self.entry_time,
            "entry_order_id": self.entry_order_id,
            "margin_per_share": self.margin_per_share,
            "margin_required": self.margin_required,
            "leverage": self.leverage,
            "margin_estimated": self.margin_estimated,
            "current_price": self.current_price,
            "status": self.status.value,
            "trailing_level": self.trailing_level,
            "pnl_amount": self.pnl_amount,
            "pnl_percentage": self.pnl_percentage,
            "exit_price": self.exit_price,
            "exit_date": self.exit_date,
            "exit_time": self.exit_time,
            "exit_reason": self.exit_reason,
            "exit_type": self.exit_type.value if self.exit_type else None,
            "exit_order_id": self.exit_order_id,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        """Build a position from a database row or API payload."""
        updated_at = data.get("updated_at")
        if isinstance(updated_at, str):
            try:
                updated_at = datetime.fromisoformat(updated_at)
            except ValueError:
                updated_at = None
        exit_type = data.get("exit_type")
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            user_id=data.get("user_id") or ALGO_USER_ID,
            symbol=data.get("symbol", ""),
            entry_price=float(data.get("entry_price") or 0),
            entry_quantity=int(data.get("entry_quantity") or 0),
            entry_date=data.get("entry_date") or datetime.now(timezone.utc).date().isoformat(),
            entry_time=data.get("entry_time") or "00:00:00",
            entry_order_id=data.get("entry_order_id"),
            margin_per_share=data.get("margin_per_share"),
            margin_required=data.get("margin_required"),
            leverage=data.get("leverage"),
            margin_estimated=bool(data.get("margin_estimated") or False),
            current_price=data.get("current_price"),
            status=PositionStatus(data.get("status") or PositionStatus.ACTIVE.value),
            trailing_level=int(data.get("trailing_level") or 0),
            pnl_amount=float(data.get("pnl_amount") or 0),
            pnl_percentage=float(data.get("pnl_percentage") or 0),
            exit_price=data.get("exit_price"),
            exit_date=data.get("exit_date"),
            exit_time=data.get("exit_time"),
            exit_reason=data.get("exit_reason"),
            exit_type=ExitType(exit_type) if exit_type else None,
            exit_order_id=data.get("exit_order_id"),
            updated_at=updated_at or datetime.now(timezone.utc),
        )


# =============================================================================
# EXIT DECISIONS
# =============================================================================

@dataclass(frozen=True)
class ExitSignal:
    """
    Instruction to close a position. Produced by the exit monitor, never persisted directly.

    For TRAILING_STOP exits pnl_percentage is the locked floor, not the live value.
    """
    exit_type: ExitType
    exit_reason: str
    current_price: float
    pnl_amount: float
    pnl_percentage: float
    trailing_level: int = 0
    rsi: Optional[float] = None
    rsi_sma: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "exit_type": self.exit_type.value,
            "exit_reason": self.exit_reason,
            "current_price": self.current_price,
            "pnl_amount": round(self.pnl_amount, 2),
            "pnl_percentage": round(self.pnl_percentage, 2),
            "trailing_level": self.trailing_level,
            "rsi": self.rsi,
            "rsi_sma": self.rsi_sma,
        }


@dataclass
class MonitorDecision:
    """Result of evaluating one position in one monitoring cycle."""
    symbol: str
    status: MonitorStatus
    current_price: float
    pnl_amount: float
    pnl_percentage: float
    trailing_level: int
    previous_trailing_level: int
    exit_signal: Optional[ExitSignal] = None

    @property
    def should_exit(self) -> bool:
        return self.status == MonitorStatus.EXIT

    @property
    def level_advanced(self) -> bool:
        return self.trailing_level > self.previous_trailing_level

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "current_price": self.current_price,
            "pnl_amount": round(self.pnl_amount, 2),
            "pnl_percentage": round(self.pnl_percentage, 2),
            "trailing_level": self.trailing_level,
            "previous_trailing_level": self.previous_trailing_level,
            "exit_signal": self.exit_signal.to_dict() if self.exit_signal else None,
        }


# =============================================================================
# ORDERS AND SIZING
# =============================================================================

@dataclass
class OrderResult:
    """Broker response to an order, normalised."""
    success: bool
    symbol: str
    side: OrderSide
    quantity: int
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    price: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    after_market_order: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "order_id": self.order_id,
            "order_status": self.order_status,
            "price": self.price,
            "error": self.error,
            "error_code": self.error_code,
            "after_market_order": self.after_market_order,
        }


@dataclass(frozen=True)
class SizingResult:
    """Share quantity and leverage for one MTF entry."""
    quantity: int
    amount: float
    margin_required: float
    leverage: float
    margin_per_share: float
    margin_estimated: bool
    price: float

    @property
    def can_enter(self) -> bool:
        """False when the allocation cannot cover one share's margin."""
        return self.quantity > 0

    def to_dict(self) -> dict:
        return {
            "quantity": self.quantity,
            "amount": round(self.amount, 2),
            "margin_required": round(self.margin_required, 2),
            "leverage": round(self.leverage, 2),
            "margin_per_share": round(self.margin_per_share, 2),
            "margin_estimated": self.margin_estimated,
            "price": self.price,
        }


@dataclass
class TradingPreferences:
    """A user's capital and risk settings for real trading."""
    user_id: str
    total_capital: float = 0.0
    allocation_percentage: float = 0.0
    max_concurrent_positions: int = 5
    daily_loss_limit_percentage: float = 5.0
    stop_loss_percentage: Optional[float] = None
    is_real_trading_enabled: bool = False

    @property
    def allocation_amount(self) -> float:
        """Capital allotted to a single position."""
        return self.total_capital * self.allocation_percentage / 100

    @property
    def daily_loss_limit_amount(self) -> float:
        return self.total_capital * self.daily_loss_limit_percentage / 100

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingPreferences":
        stop_loss = data.get("stop_loss_percentage")
        return cls(
            user_id=data["user_id"],
            total_capital=float(data.get("total_capital") or 0),
            allocation_percentage=float(data.get("allocation_percentage") or 0),
            max_concurrent_positions=int(data.get("max_concurrent_positions") or 5),
            daily_loss_limit_percentage=float(data.get("daily_loss_limit_percentage") or 5.0),
            stop_loss_percentage=float(stop_loss) if stop_loss is not None else None,
            is_real_trading_enabled=bool(data.get("is_real_trading_enabled") or False),
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "total_capital": self.total_capital,
            "allocation_percentage": self.allocation_percentage,
            "max_concurrent_positions": self.max_concurrent_positions,
            "daily_loss_limit_percentage": self.daily_loss_limit_percentage,
            "stop_loss_percentage": self.stop_loss_percentage,
            "is_real_trading_enabled": self.is_real_trading_enabled,
        }
