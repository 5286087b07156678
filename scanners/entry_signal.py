"""
MTF Sentinel Trader - Entry Signal Evaluator
Classifies a symbol as ENTRY / WATCHLIST / NO_ENTRY from six independent conditions.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from config import Config
from models.market import Candle, Channel
from models.signals import (
    ConditionResult,
    EntryEvaluation,
    EntrySignal,
    IndicatorSnapshot,
    RiskAssessment,
)
from scanners import indicators
from scanners import support_resistance

logger = logging.getLogger(__name__)

# Condition weights, summing to 100
CONDITION_WEIGHTS = {
    "above_ema": 20,
    "rsi_in_range": 15,
    "rsi_above_sma": 15,
    "macd_bullish": 20,
    "histogram_ok": 15,
    "resistance_ok": 15,
}

WATCHLIST_MIN_CONDITIONS = 4


@dataclass
class EntryConfig:
    """Thresholds for the entry rule set."""
    ema_period: int = 50
    rsi_min: float = Config.RSI_MIN
    rsi_max: float = Config.RSI_MAX
    max_histogram_bars: int = Config.MAX_HISTOGRAM_BARS
    min_resistance_distance_pct: float = Config.MIN_RESISTANCE_DISTANCE_PCT
    stop_loss_pct: float = Config.DEFAULT_STOP_LOSS_PCT
    target1_pct: float = 5.0
    target2_pct: float = 8.0


def _condition(name: str, passed: bool, reason: str) -> ConditionResult:
    return ConditionResult(name=name, passed=passed, weight=CONDITION_WEIGHTS[name], reason=reason)


def _fmt(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else "n/a"


def evaluate_conditions(
    snapshot: IndicatorSnapshot,
    channels: List[Channel],
    config: EntryConfig,
):
    """Evaluate every base condition independently. Returns (conditions, resistance_check)."""
    close = snapshot.close
    conditions = []

    if close is None or snapshot.ema50 is None:
        conditions.append(_condition("above_ema", False, "EMA50 unavailable (insufficient history)"))
    else:
        passed = close > snapshot.ema50
        conditions.append(_condition(
            "above_ema", passed,
            f"Close {_fmt(close)} {'>' if passed else '<='} EMA50 {_fmt(snapshot.ema50)}",
        ))

    if snapshot.rsi14 is None:
        conditions.append(_condition("rsi_in_range", False, "RSI14 unavailable"))
    else:
        passed = config.rsi_min <= snapshot.rsi14 <= config.rsi_max
        conditions.append(_condition(
            "rsi_in_range", passed,
            f"RSI14 {_fmt(snapshot.rsi14)} {'within' if passed else 'outside'} "
            f"{config.rsi_min:g}-{config.rsi_max:g}",
        ))

    if snapshot.rsi14 is None or snapshot.rsi_sma14 is None:
        conditions.append(_condition("rsi_above_sma", False, "RSI14 SMA unavailable"))
    else:
        passed = snapshot.rsi14 > snapshot.rsi_sma14
        conditions.append(_condition(
            "rsi_above_sma", passed,
            f"RSI14 {_fmt(snapshot.rsi14)} {'>' if passed else '<='} RSI SMA14 {_fmt(snapshot.rsi_sma14)}",
        ))

    if snapshot.macd is None or snapshot.macd_signal is None:
        conditions.append(_condition("macd_bullish", False, "MACD unavailable"))
    else:
        passed = snapshot.macd > snapshot.macd_signal
        conditions.append(_condition(
            "macd_bullish", passed,
            f"MACD {_fmt(snapshot.macd)} {'>' if passed else '<='} signal {_fmt(snapshot.macd_signal)}",
        ))

    if snapshot.histogram is None:
        conditions.append(_condition("histogram_ok", False, "MACD histogram unavailable"))
    else:
        passed = snapshot.histogram_count <= config.max_histogram_bars
        conditions.append(_condition(
            "histogram_ok", passed,
            f"{snapshot.histogram_count} consecutive positive histogram bars "
            f"({'<=' if passed else '>'} {config.max_histogram_bars})",
        ))

    if close is None:
        resistance_check = None
        conditions.append(_condition("resistance_ok", False, "No price available"))
    else:
        _, resistance = support_resistance.nearest_levels(channels, close)
        resistance_check = support_resistance.check_resistance_proximity(
            close, resistance, config.min_resistance_distance_pct
        )
        conditions.append(_condition("resistance_ok", resistance_check.passed, resistance_check.reason))

    return conditions, resistance_check


def classify(conditions: List[ConditionResult]) -> EntrySignal:
    """ENTRY when all conditions pass, WATCHLIST with four or more, else NO_ENTRY."""
    passed = sum(1 for c in conditions if c.passed)
    if passed == len(conditions):
        return EntrySignal.ENTRY
    if passed >= WATCHLIST_MIN_CONDITIONS:
        return EntrySignal.WATCHLIST
    return EntrySignal.NO_ENTRY


def evaluate(
    candles: List[Candle],
    channels: Optional[List[Channel]] = None,
    config: Optional[EntryConfig] = None,
) -> EntryEvaluation:
    """
    Run the entry rule set for one symbol.

    When channels is None they are detected from the candles; pass an empty
    list to evaluate without support/resistance data.
    """
    config = config or EntryConfig()
    if channels is None:
        channels = support_resistance.detect(candles)

    snapshot = indicators.compute_snapshot(candles, config.ema_period)
    conditions, resistance_check = evaluate_conditions(snapshot, channels, config)
    signal = classify(conditions)
    confidence = sum(c.weight for c in conditions if c.passed)

    passed_names = [c.name for c in conditions if c.passed]
    failed_reasons = [c.reason for c in conditions if not c.passed]
    if signal == EntrySignal.ENTRY:
        reasoning = "All entry conditions met"
    else:
        reasoning = (
            f"{len(passed_names)}/{len(conditions)} conditions met. "
            f"Failed: {'; '.join(failed_reasons)}"
        )

    risk_assessment = None
    if snapshot.close is not None:
        price = snapshot.close
        risk_assessment = RiskAssessment(
            entry_price=price,
            stop_loss=price * (1 - config.stop_loss_pct / 100),
            target1=price * (1 + config.target1_pct / 100),
            target2=price * (1 + config.target2_pct / 100),
        )

    return EntryEvaluation(
        signal=signal,
        confidence=confidence,
        conditions=conditions,
        reasoning=reasoning,
        indicators=snapshot,
        resistance_check=resistance_check,
        risk_assessment=risk_assessment,
        win_probability=max(20, min(95, confidence + 10)),
    )
