"""
MTF Sentinel Trader - Signal Data Models
Entry evaluations and scan results produced by the scanners.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
import uuid

from models.market import Channel


class EntrySignal(Enum):
    """Classification produced by the entry rule set."""
    ENTRY = "ENTRY"
    WATCHLIST = "WATCHLIST"
    NO_ENTRY = "NO_ENTRY"


class ScanStatus(Enum):
    """How far a symbol's scan got."""
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"  # Evaluated without support/resistance data
    FAILED = "FAILED"


class MarketCondition(Enum):
    """Breadth reading derived from the share of ENTRY signals in a scan."""
    BULLISH = "BULLISH"
    MIXED = "MIXED"
    NEUTRAL = "NEUTRAL"
    BEARISH = "BEARISH"


@dataclass
class ConditionResult:
    """One independently evaluated entry condition."""
    name: str
    passed: bool
    weight: int
    reason: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "passed": self.passed,
            "weight": self.weight,
            "reason": self.reason,
        }


@dataclass
class IndicatorSnapshot:
    """Latest indicator values for one symbol. None means insufficient history."""
    close: Optional[float] = None
    ema50: Optional[float] = None
    rsi14: Optional[float] = None
    rsi_sma14: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    histogram: Optional[float] = None
    histogram_count: int = 0

    def to_dict(self) -> dict:
        return {
            "close": self.close,
            "ema50": self.ema50,
            "rsi14": self.rsi14,
            "rsi_sma14": self.rsi_sma14,
            "macd": self.macd,
            "macd_signal": self.macd_signal,
            "histogram": self.histogram,
            "histogram_count": self.histogram_count,
        }


@dataclass
class ResistanceCheck:
    """Outcome of the distance-to-resistance gate."""
    passed: bool
    reason: str
    distance_pct: Optional[float] = None
    resistance_price: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "reason": self.reason,
            "distance_pct": round(self.distance_pct, 2) if self.distance_pct is not None else None,
            "resistance_price": self.resistance_price,
        }


@dataclass
class RiskAssessment:
    """Suggested stop and targets for an entry."""
    entry_price: float
    stop_loss: float
    target1: float
    target2: float

    @property
    def risk_reward(self) -> float:
        """Reward to the first target per unit of risk to the stop."""
        risk = self.entry_price - self.stop_loss
        if risk <= 0:
            return 0.0
        return round((self.target1 - self.entry_price) / risk, 2)

    def to_dict(self) -> dict:
        return {
            "entry_price": round(self.entry_price, 2),
            "stop_loss": round(self.stop_loss, 2),
            "risk_reward": self.risk_reward,
            "target1": round(self.target1, 2),
            "target2": round(self.target2, 2),
        }


@dataclass
class EntryEvaluation:
    """
    Full, auditable output of the entry rule set for one symbol.
    Every condition is reported individually, not just the aggregate.
    """

    signal: EntrySignal = EntrySignal.NO_ENTRY
    confidence: int = 0
    conditions: List[ConditionResult] = field(default_factory=list)
    reasoning: str = ""
    indicators: IndicatorSnapshot = field(default_factory=IndicatorSnapshot)
    resistance_check: Optional[ResistanceCheck] = None
    risk_assessment: Optional[RiskAssessment] = None
    win_probability: int = 0

    @property
    def passed_count(self) -> int:
        return sum(1 for c in self.conditions if c.passed)

    def condition(self, name: str) -> Optional[ConditionResult]:
        """Look up a condition by name."""
        for item in self.conditions:
            if item.name == name:
                return item
        return None

    def conditions_map(self) -> Dict[str, bool]:
        return {c.name: c.passed for c in self.conditions}

    def to_dict(self) -> dict:
        return {
            "signal": self.signal.value,
            "confidence": self.confidence,
            "conditions": [c.to_dict() for c in self.conditions],
            "passed_count": self.passed_count,
            "reasoning": self.reasoning,
            "indicators": self.indicators.to_dict(),
            "resistance_check": self.resistance_check.to_dict() if self.resistance_check else None,
            "risk_assessment": self.risk_assessment.to_dict() if self.risk_assessment else None,
            "win_probability": self.win_probability,
        }


@dataclass
class ScanResult:
    """One symbol's entry in a scan. Every scanned symbol gets exactly one."""

    symbol: str
    status: ScanStatus
    evaluation: Optional[EntryEvaluation] = None
    error: Optional[str] = None
    attempts: int = 1
    channels: List[Channel] = field(default_factory=list)
    nearest_support: Optional[Channel] = None
    nearest_resistance: Optional[Channel] = None
    scanned_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def signal(self) -> Optional[EntrySignal]:
        return self.evaluation.signal if self.evaluation else None

    @property
    def outcome(self) -> str:
        """ENTRY / WATCHLIST / NO_ENTRY, or FAILED when the symbol could not be evaluated."""
        if self.status == ScanStatus.FAILED or self.evaluation is None:
            return ScanStatus.FAILED.value
        return self.evaluation.signal.value

    @property
    def current_price(self) -> Optional[float]:
        return self.evaluation.indicators.close if self.evaluation else None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "outcome": self.outcome,
            "current_price": self.current_price,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "error": self.error,
            "attempts": self.attempts,
            "channels": [c.to_dict() for c in self.channels],
            "nearest_support": self.nearest_support.to_dict() if self.nearest_support else None,
            "nearest_resistance": self.nearest_resistance.to_dict() if self.nearest_resistance else None,
            "scanned_at": self.scanned_at.isoformat(),
        }


@dataclass
class ScanSummary:
    """Aggregate counts for one scan run."""

    scan_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    total_symbols: int = 0
    successful: int = 0
    partial: int = 0
    failed: int = 0
    entry_count: int = 0
    watchlist_count: int = 0
    no_entry_count: int = 0
    market_condition: MarketCondition = MarketCondition.NEUTRAL
    top_opportunities: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        """Percentage of symbols evaluated (fully or partially)."""
        if self.total_symbols == 0:
            return 0.0
        return round((self.successful + self.partial) / self.total_symbols * 100, 2)

    def to_dict(self) -> dict:
        return {
            "scan_id": self.scan_id,
            "started_at": self.started_at.isoformat(),
            "total_symbols": self.total_symbols,
            "successful": self.successful,
            "partial": self.partial,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "entry_count": self.entry_count,
            "watchlist_count": self.watchlist_count,
            "no_entry_count": self.no_entry_count,
            "market_condition": self.market_condition.value,
            "top_opportunities": self.top_opportunities,
            "duration_seconds": round(self.duration_seconds, 2),
        }
