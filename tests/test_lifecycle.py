"""
MTF Sentinel Trader - Position Lifecycle Tests
Entry execution for users and the algorithm book, simulated orders in
PAPER mode and duplicate-entry protection.
"""

import sys
import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from executors.lemon_broker import BrokerTransientError
from executors.lifecycle import PositionLifecycleManager
from executors.risk_engine import RiskEngine
from models.signals import (
    ConditionResult,
    EntryEvaluation,
    EntrySignal,
    IndicatorSnapshot,
    ScanResult,
    ScanStatus,
)
from models.trades import ExitSignal, ExitType, OrderResult, OrderSide, Position
from storage.database import Database


def scan_result(symbol, price, signal=EntrySignal.ENTRY):
    evaluation = EntryEvaluation(
        signal=signal,
        confidence=100,
        conditions=[ConditionResult(name="above_ema", passed=True, weight=20, reason="ok")],
        indicators=IndicatorSnapshot(close=price),
        win_probability=95,
    )
    return ScanResult(symbol=symbol, status=ScanStatus.SUCCESS, evaluation=evaluation)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "lifecycle.db")
    database.save_user("U1", "Asha", "9876543210")
    database.save_trading_preferences({
        "user_id": "U1",
        "total_capital": 100000,
        "allocation_percentage": 5,
        "max_concurrent_positions": 5,
        "stop_loss_percentage": 2.5,
        "is_real_trading_enabled": True,
    })
    database.save_api_credentials("U1", "CLIENT1", "key", "11" * 32)
    return database


def make_broker(margin=None, order_success=True):
    broker = MagicMock()
    broker.get_margin_info = AsyncMock(return_value=margin)

    async def place_order(user_id, symbol, side, quantity, **kwargs):
        if not order_success:
            return OrderResult(success=False, symbol=symbol, side=side, quantity=quantity,
                               error="Insufficient funds", error_code="INSUFFICIENT_FUNDS")
        return OrderResult(success=True, symbol=symbol, side=side, quantity=quantity,
                           order_id=f"ORD-{symbol}", order_status="OPEN")

    broker.place_order = AsyncMock(side_effect=place_order)
    return broker


class TestAlgorithmPositions:
    """One-share algorithm book."""

    def test_opens_entries_only(self, db):
        manager = PositionLifecycleManager(db, make_broker(), live_trading=False)
        results = [
            scan_result("TCS", 3500.0),
            scan_result("INFY", 1500.0, EntrySignal.WATCHLIST),
            ScanResult(symbol="SBIN", status=ScanStatus.FAILED, error="timeout"),
        ]
        outcome = manager.open_algorithm_positions(results)

        assert outcome == {"opened": ["TCS"], "skipped": []}
        row = db.get_active_position("ALGO", "TCS")
        assert row["entry_quantity"] == 1
        assert db.get_entry_conditions(row["id"])["signal"] == "ENTRY"

    def test_rerun_does_not_duplicate(self, db):
        manager = PositionLifecycleManager(db, make_broker(), live_trading=False)
        manager.open_algorithm_positions([scan_result("TCS", 3500.0)])
        outcome = manager.open_algorithm_positions([scan_result("TCS", 3510.0)])
        assert outcome == {"opened": [], "skipped": ["TCS"]}
        assert len(db.get_active_positions("ALGO")) == 1


class TestUserEntries:
    """execute_entry_signals."""

    @pytest.mark.asyncio
    async def test_live_entry_with_fallback_margin(self, db):
        """5% of 100000 = 5000; no quote so 20% of 2500 = 500 per share -> 10 shares."""
        broker = make_broker(margin=None)
        notifier = MagicMock()
        notifier.notify_entry_orders = AsyncMock(return_value=True)
        manager = PositionLifecycleManager(
            db, broker, risk_engine=RiskEngine(fallback_margin_pct=20), notifier=notifier, live_trading=True
        )

        batch = await manager.execute_entry_signals([scan_result("RELIANCE", 2500.0)])

        assert batch["orders_placed"] == 1
        broker.place_order.assert_awaited_once_with("U1", "RELIANCE", OrderSide.BUY, 10)
        row = db.get_active_position("U1", "RELIANCE")
        assert row["entry_quantity"] == 10
        assert row["entry_order_id"] == "ORD-RELIANCE"
        assert row["leverage"] == pytest.approx(5.0)
        assert row["margin_estimated"] == 1

        orders = db.get_orders("U1")
        assert len(orders) == 1
        assert orders[0]["side"] == "BUY"
        assert orders[0]["position_id"] == row["id"]

        notifier.notify_entry_orders.assert_awaited_once()
        phone, name, placed = notifier.notify_entry_orders.await_args.args
        assert phone == "9876543210"
        assert placed[0]["quantity"] == 10

    @pytest.mark.asyncio
    async def test_quoted_margin_used(self, db):
        broker = make_broker(margin=625.0)
        manager = PositionLifecycleManager(db, broker, live_trading=True)
        await manager.execute_entry_signals([scan_result("RELIANCE", 2500.0)], send_notifications=False)
        assert db.get_active_position("U1", "RELIANCE")["entry_quantity"] == 8

    @pytest.mark.asyncio
    async def test_margin_failure_falls_back(self, db):
        broker = make_broker()
        broker.get_margin_info = AsyncMock(side_effect=BrokerTransientError("timeout"))
        manager = PositionLifecycleManager(
            db, broker, risk_engine=RiskEngine(fallback_margin_pct=20), live_trading=True
        )
        batch = await manager.execute_entry_signals([scan_result("RELIANCE", 2500.0)], send_notifications=False)
        assert batch["orders_placed"] == 1
        assert db.get_active_position("U1", "RELIANCE")["entry_quantity"] == 10

    @pytest.mark.asyncio
    async def test_second_run_skips_held_symbol(self, db):
        broker = make_broker()
        manager = PositionLifecycleManager(db, broker, live_trading=True)
        await manager.execute_entry_signals([scan_result("TCS", 2500.0)], send_notifications=False)
        batch = await manager.execute_entry_signals([scan_result("TCS", 2500.0)], send_notifications=False)

        assert batch["orders_placed"] == 0
        assert batch["skipped"] == 1
        assert broker.place_order.await_count == 1
        assert len(db.get_active_positions("U1")) == 1

    @pytest.mark.asyncio
    async def test_rejected_order_creates_no_position(self, db):
        broker = make_broker(order_success=False)
        manager = PositionLifecycleManager(db, broker, live_trading=True)
        batch = await manager.execute_entry_signals([scan_result("TCS", 2500.0)], send_notifications=False)

        assert batch["orders_failed"] == 1
        assert db.get_active_positions("U1") == []
        orders = db.get_orders("U1")
        assert orders[0]["success"] == 0
        assert orders[0]["error_code"] == "INSUFFICIENT_FUNDS"

    @pytest.mark.asyncio
    async def test_paper_mode_simulates_orders(self, db):
        broker = make_broker()
        manager = PositionLifecycleManager(db, broker, live_trading=False)
        batch = await manager.execute_entry_signals([scan_result("TCS", 2500.0)], send_notifications=False)

        assert batch["live_trading"] is False
        broker.place_order.assert_not_awaited()
        row = db.get_active_position("U1", "TCS")
        assert row["entry_order_id"].startswith("TEST_TCS_")

    @pytest.mark.asyncio
    async def test_allocation_too_small(self, db):
        db.save_trading_preferences({
            "user_id": "U1",
            "total_capital": 1000,
            "allocation_percentage": 5,
            "is_real_trading_enabled": True,
        })
        broker = make_broker()
        manager = PositionLifecycleManager(db, broker, live_trading=True)
        batch = await manager.execute_entry_signals([scan_result("TCS", 2500.0)], send_notifications=False)

        assert batch["skipped"] == 1
        broker.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_entries_is_a_no_op(self, db):
        broker = make_broker()
        manager = PositionLifecycleManager(db, broker, live_trading=True)
        batch = await manager.execute_entry_signals([scan_result("TCS", 2500.0, EntrySignal.WATCHLIST)])
        assert batch["entry_signals"] == 0
        assert batch["users"] == []


class TestExits:
    """exit_position outcomes."""

    def _signal(self, price, exit_type=ExitType.TRAILING_STOP):
        return ExitSignal(exit_type=exit_type, exit_reason="test exit", current_price=price,
                          pnl_amount=0.0, pnl_percentage=0.0)

    @pytest.mark.asyncio
    async def test_successful_exit(self, db):
        p = Position(user_id="U1", symbol="TCS", entry_price=100, entry_quantity=10)
        db.create_position(p.to_dict())
        manager = PositionLifecycleManager(db, make_broker(), live_trading=True)

        order = await manager.exit_position(p, self._signal(104.0), send_notification=False)

        assert order.success is True
        row = db.get_position(p.id)
        assert row["status"] == "EXITED"
        assert row["exit_order_id"] == "ORD-TCS"
        assert row["pnl_percentage"] == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_failed_exit_keeps_position(self, db):
        p = Position(user_id="U1", symbol="TCS", entry_price=100, entry_quantity=10, trailing_level=4)
        db.create_position(p.to_dict())
        manager = PositionLifecycleManager(db, make_broker(order_success=False), live_trading=True)

        order = await manager.exit_position(p, self._signal(103.0), send_notification=False)

        assert order.success is False
        row = db.get_position(p.id)
        assert row["status"] == "ACTIVE"
        assert row["trailing_level"] == 4

    @pytest.mark.asyncio
    async def test_closed_position_is_not_sold_again(self, db):
        p = Position(user_id="U1", symbol="TCS", entry_price=100, entry_quantity=10)
        db.create_position(p.to_dict())
        broker = make_broker()
        manager = PositionLifecycleManager(db, broker, live_trading=True)

        first = await manager.exit_position(p, self._signal(104.0), send_notification=False)
        second = await manager.exit_position(p, self._signal(104.0), send_notification=False)

        assert first.success is True
        assert second is None
        assert broker.place_order.await_count == 1
        assert len(db.get_orders()) == 1

    @pytest.mark.asyncio
    async def test_daily_loss_limit_halts_trading(self, db):
        """2% limit on 100000 capital; a 2500 loss stops further entries today."""
        db.save_trading_preferences({
            "user_id": "U1",
            "total_capital": 100000,
            "allocation_percentage": 5,
            "daily_loss_limit_percentage": 2,
            "is_real_trading_enabled": True,
        })
        p = Position(user_id="U1", symbol="TCS", entry_price=1000, entry_quantity=10)
        db.create_position(p.to_dict())
        manager = PositionLifecycleManager(db, make_broker(), live_trading=True)

        await manager.exit_position(p, self._signal(750.0, ExitType.STOP_LOSS), send_notification=False)
        summary = await manager.refresh_daily_summary("U1")

        assert summary["is_trading_stopped"] is True
        assert summary["realized_pnl"] == pytest.approx(-2500.0)

        batch = await manager.execute_entry_signals([scan_result("INFY", 1500.0)], send_notifications=False)
        assert batch["orders_placed"] == 0
        assert batch["skipped"] == 1
