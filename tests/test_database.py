"""
MTF Sentinel Trader - Database Tests
Idempotent writes: one ACTIVE position per user and symbol, ratcheting
trailing levels, single-shot exits and sticky trading halts.
"""

import sys
import os
from datetime import datetime, timezone

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.trades import Position
from storage.database import Database


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "test.db")


def position(user_id="U1", symbol="TCS"):
    return Position(user_id=user_id, symbol=symbol, entry_price=100, entry_quantity=10)


class TestPositions:
    """Position writes."""

    def test_one_active_position_per_symbol(self, db):
        assert db.create_position(position().to_dict()) is True
        assert db.create_position(position().to_dict()) is False
        assert len(db.get_active_positions("U1")) == 1

        # Other users and other symbols are independent
        assert db.create_position(position(user_id="U2").to_dict()) is True
        assert db.create_position(position(symbol="INFY").to_dict()) is True

    def test_reentry_after_exit(self, db):
        first = position()
        db.create_position(first.to_dict())
        db.mark_position_exited(first.id, 105.0, "Take profit", "TRAILING_STOP")
        assert db.create_position(position().to_dict()) is True

    def test_trailing_level_only_ratchets_up(self, db):
        p = position()
        db.create_position(p.to_dict())
        assert db.ratchet_trailing_level(p.id, 4) == 4
        assert db.ratchet_trailing_level(p.id, 2) == 4
        assert db.ratchet_trailing_level(p.id, 6) == 6
        assert db.ratchet_trailing_level("missing", 3) is None

    def test_exit_applies_once(self, db):
        p = position()
        db.create_position(p.to_dict())

        assert db.mark_position_exited(p.id, 97.0, "Stop loss hit", "STOP_LOSS",
                                       pnl_amount=-30.0, pnl_percentage=-3.0, status="STOPPED") is True
        assert db.mark_position_exited(p.id, 95.0, "Again", "STOP_LOSS") is False

        row = db.get_position(p.id)
        assert row["status"] == "STOPPED"
        assert row["exit_price"] == pytest.approx(97.0)
        assert row["pnl_amount"] == pytest.approx(-30.0)
        assert db.get_active_positions() == []

    def test_price_update_ignores_closed_positions(self, db):
        p = position()
        db.create_position(p.to_dict())
        assert db.update_position_price(p.id, 101.0, 10.0, 1.0) is True
        db.mark_position_exited(p.id, 101.0, "Done")
        assert db.update_position_price(p.id, 99.0, -10.0, -1.0) is False


class TestUsers:
    """Preferences, credentials and eligibility."""

    def test_eligible_users(self, db):
        for user_id, enabled, with_credentials in (("U1", True, True), ("U2", False, True), ("U3", True, False)):
            db.save_user(user_id, user_id)
            db.save_trading_preferences({
                "user_id": user_id,
                "total_capital": 100000,
                "allocation_percentage": 5,
                "is_real_trading_enabled": enabled,
            })
            if with_credentials:
                db.save_api_credentials(user_id, f"C-{user_id}", "key", "00" * 32)

        assert [u["user_id"] for u in db.get_eligible_users()] == ["U1"]

    def test_new_credentials_clear_cached_token(self, db):
        db.save_api_credentials("U1", "C1", "key", "00" * 32)
        db.save_access_token("U1", "tok", "2030-01-01T00:00:00+00:00")
        assert db.get_api_credentials("U1")["access_token"] == "tok"

        db.save_api_credentials("U1", "C1", "key2", "11" * 32)
        assert db.get_api_credentials("U1")["access_token"] is None


class TestDailySummary:
    """Realized PnL aggregation and the trading halt."""

    def test_realized_pnl(self, db):
        today = datetime.now(timezone.utc).date().isoformat()
        for symbol, pnl in (("TCS", 50.0), ("INFY", -80.0)):
            p = position(symbol=symbol)
            db.create_position(p.to_dict())
            db.mark_position_exited(p.id, 100.0, "exit", pnl_amount=pnl)
        db.create_position(position(symbol="SBIN").to_dict())

        totals = db.get_realized_pnl("U1", today)
        assert totals["realized_pnl"] == pytest.approx(-30.0)
        assert totals["trades_count"] == 2
        assert totals["winning_trades"] == 1
        assert totals["losing_trades"] == 1

    def test_trading_halt_is_sticky(self, db):
        db.upsert_daily_summary("U1", "2026-10-19", -6000, 3, 0, 3, is_trading_stopped=True,
                                stop_reason="Daily loss limit reached")
        db.upsert_daily_summary("U1", "2026-10-19", -4000, 4, 1, 3, is_trading_stopped=False)

        summary = db.get_daily_summary("U1", "2026-10-19")
        assert summary["is_trading_stopped"] is True
        assert summary["stop_reason"] == "Daily loss limit reached"
        assert summary["realized_pnl"] == pytest.approx(-4000)


class TestHistory:
    """Scans and errors."""

    def test_scan_round_trip(self, db):
        summary = {"scan_id": "scan-1", "started_at": "2026-10-19T04:00:00+00:00", "total_symbols": 2,
                   "entry_count": 1, "market_condition": "BULLISH"}
        db.save_scan(summary, [{"symbol": "TCS"}, {"symbol": "INFY"}])
        scans = db.get_recent_scans()
        assert scans[0]["scan_id"] == "scan-1"
        assert scans[0]["market_condition"] == "BULLISH"

    def test_log_error(self, db):
        db.log_error("scan_failure", "MarketScanner", "TCS: timeout", context={"attempts": 5})
        errors = db.get_recent_errors()
        assert errors[0]["component"] == "MarketScanner"
        assert errors[0]["message"] == "TCS: timeout"
