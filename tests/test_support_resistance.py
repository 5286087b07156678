"""
MTF Sentinel Trader - Support/Resistance Detector Tests
Pivot determinism, channel width and non-overlap invariants, degenerate inputs.
"""

import math
import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.market import Candle, Channel, ChannelKind, PivotKind
from scanners import support_resistance as sr
from scanners.support_resistance import SRConfig


def make_candles(closes, spread=1.0):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [
        Candle(
            timestamp=start + timedelta(days=i),
            open=c,
            high=c + spread,
            low=c - spread,
            close=c,
            volume=1000,
        )
        for i, c in enumerate(closes)
    ]


def wave_candles(n=300):
    """Oscillating series with drift so several bands form."""
    closes = [1000 + 80 * math.sin(i / 9) + 30 * math.sin(i / 23) + i * 0.4 for i in range(n)]
    return make_candles(closes, spread=6.0)


class TestPivotDetection:
    """Pivot highs/lows over a symmetric window."""

    def test_single_peak_and_trough(self):
        closes = [10, 11, 12, 13, 12, 11, 10, 9, 8, 9, 10]
        pivots = sr.detect_pivots(make_candles(closes, spread=0.5), radius=2)
        highs = [p for p in pivots if p.kind == PivotKind.HIGH]
        lows = [p for p in pivots if p.kind == PivotKind.LOW]
        assert [p.index for p in highs] == [3]
        assert [p.index for p in lows] == [8]
        assert highs[0].price == pytest.approx(13.5)
        assert lows[0].price == pytest.approx(7.5)

    def test_pivot_detection_is_deterministic(self):
        candles = wave_candles()
        first = sr.detect_pivots(candles, 10)
        second = sr.detect_pivots(candles, 10)
        assert first == second
        assert [p.index for p in first] == sorted(p.index for p in first)

    def test_ties_go_to_earliest_bar(self):
        pivots = sr.detect_pivots(make_candles([100.0] * 30), radius=5)
        assert [(p.index, p.kind) for p in pivots] == [(5, PivotKind.HIGH), (5, PivotKind.LOW)]

    def test_too_short_series_has_no_pivots(self):
        assert sr.detect_pivots(make_candles([1, 2, 3]), radius=2) == []


class TestChannelInvariants:
    """Width and non-overlap hold for every accepted channel."""

    def test_width_within_limit(self):
        candles = wave_candles()
        config = SRConfig(pivot_radius=10, max_channel_width_pct=5, min_strength=1, max_channels=6, lookback=290)
        channels = sr.detect(candles, config)
        assert channels

        high, low = sr.window_range(candles[-config.lookback:])
        for channel in channels:
            assert channel.width_pct(high - low) <= config.max_channel_width_pct + 1e-9

    def test_channels_do_not_overlap(self):
        channels = sr.detect(wave_candles(), SRConfig(max_channel_width_pct=8, max_channels=10))
        for i, a in enumerate(channels):
            for b in channels[i + 1:]:
                assert not a.overlaps(b)

    def test_max_channels_respected(self):
        channels = sr.detect(wave_candles(), SRConfig(max_channels=2))
        assert len(channels) <= 2

    def test_ranked_by_strength(self):
        channels = sr.detect(wave_candles())
        strengths = [c.strength for c in channels]
        assert strengths == sorted(strengths, reverse=True)

    def test_min_strength_counts_pivots(self):
        """A band needs min_strength pivots' worth of score to survive."""
        channels = sr.detect(wave_candles(), SRConfig(min_strength=50))
        assert channels == []


class TestDegenerateInputs:
    """Short and flat windows."""

    def test_short_series_returns_empty(self):
        assert sr.detect(make_candles([100 + i for i in range(15)]), SRConfig(pivot_radius=10)) == []

    def test_flat_series_single_zero_width_channel(self):
        candles = make_candles([100.0] * 60, spread=0.0)
        channels = sr.detect(candles, SRConfig(pivot_radius=5))
        assert len(channels) == 1
        channel = channels[0]
        assert channel.width == 0
        assert channel.width_pct(0.0) == 0.0
        assert channel.kind == ChannelKind.IN_CHANNEL


class TestClassification:
    """Support/resistance labels and the resistance distance gate."""

    def _channel(self, bottom, top):
        return Channel(top_price=top, bottom_price=bottom, kind=ChannelKind.IN_CHANNEL, strength=40)

    def test_classify_relative_to_price(self):
        channels = [self._channel(90, 92), self._channel(99, 101), self._channel(110, 112)]
        kinds = [c.kind for c in sr.classify_channels(channels, 100)]
        assert kinds == [ChannelKind.SUPPORT, ChannelKind.IN_CHANNEL, ChannelKind.RESISTANCE]

    def test_nearest_levels_skip_containing_band(self):
        channels = [
            self._channel(80, 82), self._channel(90, 92),
            self._channel(99, 101),
            self._channel(110, 112), self._channel(120, 125),
        ]
        support, resistance = sr.nearest_levels(channels, 100)
        assert support.top_price == 92
        assert resistance.bottom_price == 110

    def test_resistance_too_close(self):
        check = sr.check_resistance_proximity(100.0, self._channel(101, 103), 1.5)
        assert check.passed is False
        assert check.distance_pct == pytest.approx(1.0)
        assert check.resistance_price == 101

    def test_resistance_far_enough(self):
        check = sr.check_resistance_proximity(100.0, self._channel(102, 104), 1.5)
        assert check.passed is True
        assert check.distance_pct == pytest.approx(2.0)

    def test_no_resistance_passes(self):
        assert sr.check_resistance_proximity(100.0, None).passed is True
