"""
MTF Sentinel Trader - Risk Engine Tests
Margin-based sizing and the per-user checks that gate new orders.
"""

import sys
import os

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from executors.risk_engine import RiskEngine, size_position
from models.trades import Position, TradingPreferences


def preferences(**overrides):
    values = dict(
        user_id="U1",
        total_capital=100000,
        allocation_percentage=5,
        max_concurrent_positions=3,
        daily_loss_limit_percentage=2,
        stop_loss_percentage=3.0,
        is_real_trading_enabled=True,
    )
    values.update(overrides)
    return TradingPreferences(**values)


class TestSizing:
    """quantity = floor(allocation / margin_per_share)."""

    def test_fallback_margin(self):
        """No quote: 20% of 2500 = 500 per share, 5000 allocation -> 10 shares."""
        sizing = size_position(5000, None, 2500, fallback_margin_pct=20)
        assert sizing.margin_per_share == pytest.approx(500)
        assert sizing.quantity == 10
        assert sizing.leverage == pytest.approx(5.0)
        assert sizing.margin_estimated is True
        assert sizing.amount == pytest.approx(25000)
        assert sizing.margin_required == pytest.approx(5000)

    def test_quoted_margin_used(self):
        sizing = size_position(5000, 625, 2500)
        assert sizing.quantity == 8
        assert sizing.leverage == pytest.approx(4.0)
        assert sizing.margin_estimated is False

    def test_non_positive_quote_falls_back(self):
        for quote in (0, -10, float("nan")):
            sizing = size_position(5000, quote, 2500, fallback_margin_pct=20)
            assert sizing.margin_estimated is True
            assert sizing.quantity == 10

    def test_allocation_below_one_share(self):
        sizing = size_position(400, None, 2500, fallback_margin_pct=20)
        assert sizing.quantity == 0
        assert sizing.can_enter is False
        assert sizing.amount == 0

    def test_engine_uses_allocation(self):
        engine = RiskEngine(fallback_margin_pct=20)
        sizing = engine.size(preferences(), None, 2500)
        assert sizing.quantity == 10


class TestStopLoss:
    """The user's own stop loss wins over the default."""

    def test_user_preference(self):
        assert RiskEngine(default_stop_loss_pct=2.5).stop_loss_for(preferences()) == 3.0

    def test_default_without_preference(self):
        engine = RiskEngine(default_stop_loss_pct=2.5)
        assert engine.stop_loss_for(preferences(stop_loss_percentage=None)) == 2.5
        assert engine.stop_loss_for(None) == 2.5


class TestChecks:
    """can_place_new_order."""

    def _position(self, symbol):
        return Position(user_id="U1", symbol=symbol, entry_price=100, entry_quantity=1)

    def test_all_checks_pass(self):
        passed, results = RiskEngine().can_place_new_order(preferences(), "TCS", [])
        assert passed is True
        assert all(r.passed for r in results)

    def test_real_trading_disabled(self):
        passed, results = RiskEngine().can_place_new_order(
            preferences(is_real_trading_enabled=False), "TCS", []
        )
        assert passed is False
        assert "real_trading_enabled" in [r.rule for r in results if not r.passed]

    def test_existing_position_blocks(self):
        passed, results = RiskEngine().can_place_new_order(
            preferences(), "TCS", [self._position("TCS")]
        )
        assert passed is False
        assert [r.rule for r in results if not r.passed] == ["existing_position"]

    def test_max_positions(self):
        positions = [self._position(s) for s in ("A", "B", "C")]
        passed, results = RiskEngine().can_place_new_order(preferences(), "TCS", positions)
        assert passed is False
        assert "max_positions" in [r.rule for r in results if not r.passed]

    def test_daily_loss_limit(self):
        """2% of 100000 = 2000 limit."""
        engine = RiskEngine()
        assert engine.daily_loss_breached(preferences(), -2000) is True
        assert engine.daily_loss_breached(preferences(), -1999) is False
        assert engine.daily_loss_breached(preferences(), 500) is False

        passed, results = engine.can_place_new_order(
            preferences(), "TCS", [], {"realized_pnl": -2500}
        )
        assert passed is False
        assert "daily_loss_limit" in [r.rule for r in results if not r.passed]

    def test_trading_halted(self):
        passed, results = RiskEngine().can_place_new_order(
            preferences(), "TCS", [], {"is_trading_stopped": 1, "stop_reason": "limit"}
        )
        assert passed is False
        assert "trading_halt" in [r.rule for r in results if not r.passed]
