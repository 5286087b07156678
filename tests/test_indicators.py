"""
MTF Sentinel Trader - Indicator Tests
EMA / RSI / MACD conventions and snapshot behaviour on short histories.
"""

import math
import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.market import Candle
from scanners import indicators


def make_candles(closes):
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return [
        Candle(timestamp=start + timedelta(days=i), open=c, high=c + 0.5, low=c - 0.5, close=c, volume=1000)
        for i, c in enumerate(closes)
    ]


class TestMovingAverages:
    """SMA and SMA-seeded EMA."""

    def test_sma_needs_full_window(self):
        result = indicators.sma([1, 2, 3, 4], 3)
        assert math.isnan(result.iloc[1])
        assert result.iloc[2] == pytest.approx(2.0)
        assert result.iloc[3] == pytest.approx(3.0)

    def test_ema_seeded_with_sma(self):
        """First EMA value is the SMA of the first `period` values."""
        result = indicators.ema([1, 2, 3, 4, 5], 3)
        assert math.isnan(result.iloc[0])
        assert math.isnan(result.iloc[1])
        assert result.iloc[2] == pytest.approx(2.0)
        # alpha = 2 / (3 + 1) = 0.5
        assert result.iloc[3] == pytest.approx(3.0)
        assert result.iloc[4] == pytest.approx(4.0)

    def test_ema_insufficient_data_is_nan(self):
        result = indicators.ema([1, 2], 5)
        assert result.isna().all()


class TestRSI:
    """Wilder RSI edge cases."""

    def test_rising_series_is_100(self):
        result = indicators.rsi(list(range(1, 31)), 14)
        assert result.iloc[-1] == pytest.approx(100.0)

    def test_flat_series_is_neutral(self):
        result = indicators.rsi([50.0] * 30, 14)
        assert result.iloc[-1] == pytest.approx(50.0)

    def test_falling_series_is_zero(self):
        result = indicators.rsi(list(range(30, 0, -1)), 14)
        assert result.iloc[-1] == pytest.approx(0.0)

    def test_rsi_bounded(self):
        closes = [100 + 5 * math.sin(i / 3) for i in range(80)]
        values = indicators.rsi(closes, 14).dropna()
        assert len(values) > 0
        assert ((values >= 0) & (values <= 100)).all()

    def test_rsi_sma_available_after_warmup(self):
        closes = [100 + 5 * math.sin(i / 3) for i in range(40)]
        result = indicators.rsi_sma(closes, 14, 14)
        # 14 changes to seed RSI (index 14), then 14 RSI values for the SMA
        assert math.isnan(result.iloc[26])
        assert not math.isnan(result.iloc[27])


class TestMACD:
    """MACD frame and histogram counting."""

    def test_macd_columns(self):
        closes = [100 + i * 0.5 for i in range(60)]
        frame = indicators.macd(closes)
        assert list(frame.columns) == ["macd", "signal", "histogram"]
        last = frame.iloc[-1]
        assert last["histogram"] == pytest.approx(last["macd"] - last["signal"])

    def test_macd_short_history_is_nan(self):
        frame = indicators.macd([100 + i for i in range(30)])
        assert len(frame) == 30
        assert frame.isna().all().all()

    def test_macd_signal_starts_after_warmup(self):
        frame = indicators.macd([100 + 3 * math.sin(i / 4) for i in range(60)])
        # MACD from index 25, signal after 9 MACD values
        assert math.isnan(frame["macd"].iloc[24])
        assert not math.isnan(frame["macd"].iloc[25])
        assert math.isnan(frame["signal"].iloc[32])
        assert not math.isnan(frame["signal"].iloc[33])

    def test_consecutive_positive_histogram(self):
        assert indicators.consecutive_positive_histogram([-1.0, 0.5, 0.2, 0.1]) == 3
        assert indicators.consecutive_positive_histogram([0.5, 0.2, -0.1]) == 0
        assert indicators.consecutive_positive_histogram([float("nan"), 0.3]) == 1
        assert indicators.consecutive_positive_histogram([]) == 0


class TestSnapshot:
    """compute_snapshot never raises on short histories."""

    def test_empty_candles(self):
        snapshot = indicators.compute_snapshot([])
        assert snapshot.close is None
        assert snapshot.ema50 is None

    def test_short_history_has_no_ema50(self):
        snapshot = indicators.compute_snapshot(make_candles([100 + i for i in range(20)]))
        assert snapshot.close == 119
        assert snapshot.ema50 is None
        assert snapshot.rsi14 == pytest.approx(100.0)
        assert snapshot.rsi_sma14 is None

    def test_full_history(self):
        closes = [100 + 10 * math.sin(i / 8) + i * 0.1 for i in range(120)]
        snapshot = indicators.compute_snapshot(make_candles(closes))
        assert snapshot.ema50 is not None
        assert snapshot.rsi14 is not None
        assert snapshot.rsi_sma14 is not None
        assert snapshot.macd is not None
        assert snapshot.macd_signal is not None
        assert snapshot.histogram == pytest.approx(snapshot.macd - snapshot.macd_signal)
