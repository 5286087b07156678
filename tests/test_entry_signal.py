"""
MTF Sentinel Trader - Entry Signal Tests
Six-condition rule set, classification thresholds and the resistance gate.
"""

import math
import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.market import Candle, Channel, ChannelKind
from models.signals import EntrySignal, IndicatorSnapshot
from scanners import entry_signal
from scanners.entry_signal import CONDITION_WEIGHTS, EntryConfig


def bullish_snapshot(**overrides):
    values = dict(
        close=100.0,
        ema50=95.0,
        rsi14=60.0,
        rsi_sma14=55.0,
        macd=1.2,
        macd_signal=0.8,
        histogram=0.4,
        histogram_count=2,
    )
    values.update(overrides)
    return IndicatorSnapshot(**values)


def resistance(bottom, top):
    return Channel(top_price=top, bottom_price=bottom, kind=ChannelKind.RESISTANCE, strength=60)


class TestConditions:
    """Each condition is evaluated independently."""

    def test_weights_sum_to_100(self):
        assert sum(CONDITION_WEIGHTS.values()) == 100

    def test_all_conditions_pass(self):
        conditions, check = entry_signal.evaluate_conditions(bullish_snapshot(), [], EntryConfig())
        assert len(conditions) == 6
        assert all(c.passed for c in conditions)
        assert check.passed is True
        assert entry_signal.classify(conditions) == EntrySignal.ENTRY

    def test_rsi_band_is_inclusive(self):
        config = EntryConfig(rsi_min=50, rsi_max=65)
        for value in (50.0, 65.0):
            conditions, _ = entry_signal.evaluate_conditions(
                bullish_snapshot(rsi14=value, rsi_sma14=40.0), [], config
            )
            assert {c.name: c.passed for c in conditions}["rsi_in_range"] is True

        conditions, _ = entry_signal.evaluate_conditions(bullish_snapshot(rsi14=68.0), [], config)
        assert {c.name: c.passed for c in conditions}["rsi_in_range"] is False

    def test_rsi_band_widened_to_70(self):
        conditions, _ = entry_signal.evaluate_conditions(
            bullish_snapshot(rsi14=68.0), [], EntryConfig(rsi_max=70)
        )
        assert {c.name: c.passed for c in conditions}["rsi_in_range"] is True

    def test_histogram_too_extended(self):
        conditions, _ = entry_signal.evaluate_conditions(
            bullish_snapshot(histogram_count=4), [], EntryConfig()
        )
        assert {c.name: c.passed for c in conditions}["histogram_ok"] is False

    def test_missing_indicators_fail_without_raising(self):
        conditions, _ = entry_signal.evaluate_conditions(IndicatorSnapshot(), [], EntryConfig())
        assert not any(c.passed for c in conditions)


class TestResistanceGate:
    """Price too close to resistance blocks ENTRY."""

    def test_entry_rejected_near_resistance(self):
        """Price 100, resistance bottom 101 (1% away) with a 1.5% minimum."""
        conditions, check = entry_signal.evaluate_conditions(
            bullish_snapshot(), [resistance(101.0, 103.0)], EntryConfig(min_resistance_distance_pct=1.5)
        )
        assert check.passed is False
        assert check.distance_pct == pytest.approx(1.0)
        signal = entry_signal.classify(conditions)
        assert signal != EntrySignal.ENTRY
        assert signal == EntrySignal.WATCHLIST

    def test_distant_resistance_allows_entry(self):
        conditions, check = entry_signal.evaluate_conditions(
            bullish_snapshot(), [resistance(105.0, 107.0)], EntryConfig()
        )
        assert check.passed is True
        assert entry_signal.classify(conditions) == EntrySignal.ENTRY


class TestClassification:
    """ENTRY needs all six, WATCHLIST four or more."""

    def test_four_passing_is_watchlist(self):
        conditions, _ = entry_signal.evaluate_conditions(
            bullish_snapshot(rsi14=70.0, histogram_count=5), [], EntryConfig()
        )
        assert sum(c.passed for c in conditions) == 4
        assert entry_signal.classify(conditions) == EntrySignal.WATCHLIST

    def test_three_passing_is_no_entry(self):
        conditions, _ = entry_signal.evaluate_conditions(
            bullish_snapshot(rsi14=70.0, histogram_count=5, macd=0.1), [], EntryConfig()
        )
        assert sum(c.passed for c in conditions) == 3
        assert entry_signal.classify(conditions) == EntrySignal.NO_ENTRY


class TestEvaluate:
    """Full evaluation over candles."""

    def _candles(self, n):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        closes = [500 + 40 * math.sin(i / 10) + i * 0.3 for i in range(n)]
        return [
            Candle(timestamp=start + timedelta(days=i), open=c, high=c + 3, low=c - 3, close=c)
            for i, c in enumerate(closes)
        ]

    def test_short_history_is_no_entry(self):
        evaluation = entry_signal.evaluate(self._candles(10), channels=[])
        assert evaluation.signal == EntrySignal.NO_ENTRY
        assert len(evaluation.conditions) == 6

    def test_evaluation_fields(self):
        evaluation = entry_signal.evaluate(self._candles(300))
        assert evaluation.confidence == sum(c.weight for c in evaluation.conditions if c.passed)
        assert 20 <= evaluation.win_probability <= 95
        assert evaluation.win_probability == max(20, min(95, evaluation.confidence + 10))
        risk = evaluation.risk_assessment
        assert risk.stop_loss == pytest.approx(risk.entry_price * 0.975)
        assert risk.target1 == pytest.approx(risk.entry_price * 1.05)
        assert risk.target2 == pytest.approx(risk.entry_price * 1.08)
        assert evaluation.to_dict()["signal"] == evaluation.signal.value
