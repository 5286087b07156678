"""
MTF Sentinel Trader - Data Models
"""

from .market import Candle, PivotPoint, PivotKind, Channel, ChannelKind
from .signals import (
    EntrySignal,
    ScanStatus,
    MarketCondition,
    EntryEvaluation,
    IndicatorSnapshot,
    ScanResult,
    ScanSummary,
)
from .trades import (
    Position,
    PositionStatus,
    ExitType,
    ExitSignal,
    MonitorStatus,
    MonitorDecision,
    TrailingLevelSpec,
    TRAILING_LADDER,
    OrderSide,
    OrderResult,
    SizingResult,
    TradingPreferences,
)

__all__ = [
    "Candle",
    "PivotPoint",
    "PivotKind",
    "Channel",
    "ChannelKind",
    "EntrySignal",
    "ScanStatus",
    "MarketCondition",
    "EntryEvaluation",
    "IndicatorSnapshot",
    "ScanResult",
    "ScanSummary",
    "Position",
    "PositionStatus",
    "ExitType",
    "ExitSignal",
    "MonitorStatus",
    "MonitorDecision",
    "TrailingLevelSpec",
    "TRAILING_LADDER",
    "OrderSide",
    "OrderResult",
    "SizingResult",
    "TradingPreferences",
]
