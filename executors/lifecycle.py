"""
MTF Sentinel Trader - Position Lifecycle Manager
Turns ENTRY signals into sized MTF orders and positions, and closes positions
on exit decisions.

A position only becomes ACTIVE after the broker confirms the BUY, and only
becomes EXITED after the broker confirms the SELL. A failed exit leaves the
position ACTIVE at its trailing level so the next cycle retries it.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple

from config import Config
from executors.lemon_broker import BrokerError
from executors.risk_engine import RiskEngine
from models.signals import EntrySignal, ScanResult
from models.trades import (
    ALGO_USER_ID,
    ExitSignal,
    ExitType,
    OrderResult,
    OrderSide,
    Position,
    PositionStatus,
    TradingPreferences,
)

logger = logging.getLogger(__name__)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class PositionLifecycleManager:
    """Entry execution and exit handling for algorithm and user positions."""

    def __init__(
        self,
        db,
        broker,
        risk_engine: Optional[RiskEngine] = None,
        notifier=None,
        live_trading: Optional[bool] = None,
    ):
        self.db = db
        self.broker = broker
        self.risk_engine = risk_engine or RiskEngine()
        self.notifier = notifier
        # PAPER mode simulates order fills instead of calling the broker
        self.live_trading = Config.MODE == "LIVE" if live_trading is None else live_trading
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock(self, user_id: str, symbol: str) -> asyncio.Lock:
        return self._locks[(user_id, symbol)]

    # =========================================================================
    # ALGORITHM POSITIONS
    # =========================================================================

    def open_algorithm_positions(self, results: List[ScanResult]) -> Dict[str, Any]:
        """Record one-share algorithm positions for new ENTRY signals."""
        opened, skipped = [], []

        for result in results:
            if result.signal != EntrySignal.ENTRY or not result.current_price:
                continue

            position = Position(
                user_id=ALGO_USER_ID,
                symbol=result.symbol,
                entry_price=result.current_price,
                entry_quantity=1,
                current_price=result.current_price,
            )
            if self.db.create_position(position.to_dict()):
                self.db.save_entry_conditions(position.id, result.symbol, result.evaluation.to_dict())
                opened.append(result.symbol)
            else:
                skipped.append(result.symbol)

        logger.info(f"Algorithm positions: {len(opened)} opened, {len(skipped)} already held")
        return {"opened": opened, "skipped": skipped}

    # =========================================================================
    # USER ENTRIES
    # =========================================================================

    async def execute_entry_signals(
        self,
        results: List[ScanResult],
        send_notifications: bool = True,
    ) -> Dict[str, Any]:
        """
        Place MTF entries for every eligible user and every ENTRY signal.

        Returns:
            Batch summary with per-user detail
        """
        entries = [r for r in results if r.signal == EntrySignal.ENTRY and r.current_price]
        users = self.db.get_eligible_users()
        logger.info(
            f"Executing {len(entries)} entry signals for {len(users)} eligible users "
            f"({'LIVE' if self.live_trading else 'SIMULATED'})"
        )

        batch = {
            "entry_signals": len(entries),
            "eligible_users": len(users),
            "orders_placed": 0,
            "orders_failed": 0,
            "skipped": 0,
            "live_trading": self.live_trading,
            "users": [],
        }
        if not entries:
            return batch

        for row in users:
            preferences = TradingPreferences.from_dict(row)
            try:
                user_summary = await self._execute_for_user(preferences, entries, send_notifications)
            except Exception as e:
                logger.exception(f"Entry execution failed for user {preferences.user_id}: {e}")
                self.db.log_error(
                    error_type="entry_execution_error",
                    component="PositionLifecycleManager",
                    message=str(e),
                    context={"user_id": preferences.user_id},
                )
                user_summary = {"user_id": preferences.user_id, "error": str(e),
                                "orders_placed": 0, "orders_failed": 0, "skipped": 0, "orders": []}

            batch["orders_placed"] += user_summary["orders_placed"]
            batch["orders_failed"] += user_summary["orders_failed"]
            batch["skipped"] += user_summary["skipped"]
            batch["users"].append(user_summary)

        logger.info(
            f"Entry execution completed: {batch['orders_placed']} orders placed, "
            f"{batch['orders_failed']} failed, {batch['skipped']} skipped"
        )
        return batch

    async def _execute_for_user(
        self,
        preferences: TradingPreferences,
        entries: List[ScanResult],
        send_notifications: bool,
    ) -> Dict[str, Any]:
        user_id = preferences.user_id
        daily_summary = self.db.get_daily_summary(user_id, _today()) or {}
        summary = {"user_id": user_id, "orders_placed": 0, "orders_failed": 0, "skipped": 0, "orders": []}
        placed = []

        for result in entries:
            symbol = result.symbol
            async with self._lock(user_id, symbol):
                active = [Position.from_dict(r) for r in self.db.get_active_positions(user_id)]
                passed, checks = self.risk_engine.can_place_new_order(preferences, symbol, active, daily_summary)
                if not passed:
                    reasons = [c.message for c in checks if not c.passed and c.severity == "error"]
                    summary["skipped"] += 1
                    summary["orders"].append({"symbol": symbol, "status": "SKIPPED", "reasons": reasons})
                    continue

                record = await self._enter(preferences, result)
                summary["orders"].append(record)
                if record["status"] == "PLACED":
                    summary["orders_placed"] += 1
                    placed.append(record)
                elif record["status"] == "FAILED":
                    summary["orders_failed"] += 1
                else:
                    summary["skipped"] += 1

        if placed and send_notifications and self.notifier is not None:
            user = self.db.get_user(user_id) or {}
            if user.get("phone_number"):
                await self.notifier.notify_entry_orders(user["phone_number"], user.get("name", ""), placed)

        return summary

    async def _enter(self, preferences: TradingPreferences, result: ScanResult) -> Dict[str, Any]:
        """Quote, size, order and record one entry. Caller holds the (user, symbol) lock."""
        user_id = preferences.user_id
        symbol = result.symbol
        price = result.current_price

        try:
            quoted = await self.broker.get_margin_info(symbol, price, user_id=user_id)
        except BrokerError as e:
            logger.warning(f"Margin quote failed for {symbol} ({user_id}), using fallback: {e.message}")
            quoted = None

        sizing = self.risk_engine.size(preferences, quoted, price)
        if not sizing.can_enter:
            logger.info(
                f"Cannot size {symbol} for {user_id}: allocation {preferences.allocation_amount:,.2f} "
                f"below margin {sizing.margin_per_share:,.2f} per share"
            )
            return {"symbol": symbol, "status": "SKIPPED", "reasons": ["Allocation too small for one share"]}

        logger.info(
            f"MTF position size for {symbol}: {sizing.quantity} shares (₹{sizing.amount:,.2f}) | "
            f"Margin: ₹{sizing.margin_required:,.2f} | Leverage: {sizing.leverage:.2f}x"
            f"{' (estimated margin)' if sizing.margin_estimated else ''}"
        )

        if self.live_trading:
            order = await self.broker.place_order(user_id, symbol, OrderSide.BUY, sizing.quantity)
        else:
            order = OrderResult(
                success=True,
                symbol=symbol,
                side=OrderSide.BUY,
                quantity=sizing.quantity,
                order_id=f"TEST_{symbol}_{uuid.uuid4().hex[:8]}",
                order_status="SIMULATED",
            )
        order.price = price

        position_id = None
        if order.success:
            position = Position(
                user_id=user_id,
                symbol=symbol,
                entry_price=price,
                entry_quantity=sizing.quantity,
                entry_order_id=order.order_id,
                margin_per_share=sizing.margin_per_share,
                margin_required=sizing.margin_required,
                leverage=sizing.leverage,
                margin_estimated=sizing.margin_estimated,
                current_price=price,
            )
            if self.db.create_position(position.to_dict()):
                position_id = position.id
                self.db.save_entry_conditions(position.id, symbol, result.evaluation.to_dict())
            else:
                logger.error(f"Order {order.order_id} filled but {user_id}/{symbol} already has an ACTIVE position")

        self._record_order(user_id, order, position_id)

        record = {
            "symbol": symbol,
            "status": "PLACED" if order.success else "FAILED",
            "quantity": sizing.quantity,
            "price": price,
            "amount": sizing.amount,
            "order_id": order.order_id,
            "sizing": sizing.to_dict(),
        }
        if not order.success:
            record["error"] = order.error
            record["error_code"] = order.error_code
        return record

    def _record_order(self, user_id: str, order: OrderResult, position_id: Optional[str]) -> None:
        data = order.to_dict()
        data.update({"id": str(uuid.uuid4()), "user_id": user_id, "position_id": position_id})
        data["side"] = order.side.value
        self.db.save_order(data)

    # =========================================================================
    # EXITS
    # =========================================================================

    async def exit_position(
        self,
        position: Position,
        exit_signal: ExitSignal,
        send_notification: bool = True,
    ) -> Optional[OrderResult]:
        """
        Close a position on an exit decision.

        Returns the SELL OrderResult. The position is marked EXITED only when
        it succeeded; otherwise it stays ACTIVE for the next cycle. Returns
        None without placing an order when the position was already closed
        by an overlapping cycle.
        """
        async with self._lock(position.user_id, position.symbol):
            current = self.db.get_position(position.id)
            if current is None or current.get("status") != PositionStatus.ACTIVE.value:
                logger.info(
                    f"Exit skipped for {position.user_id}/{position.symbol}: position is "
                    f"{current.get('status') if current else 'missing'}"
                )
                return None

            if position.is_algorithm or not self.live_trading:
                order = OrderResult(
                    success=True,
                    symbol=position.symbol,
                    side=OrderSide.SELL,
                    quantity=position.entry_quantity,
                    price=exit_signal.current_price,
                    order_status="SIMULATED",
                )
            else:
                order = await self.broker.place_order(
                    position.user_id, position.symbol, OrderSide.SELL, position.entry_quantity
                )
                order.price = exit_signal.current_price

            if not position.is_algorithm:
                self._record_order(position.user_id, order, position.id)

            pnl_amount, pnl_pct = position.pnl_at(exit_signal.current_price)
            if order.success:
                status = (
                    PositionStatus.STOPPED if exit_signal.exit_type == ExitType.STOP_LOSS
                    else PositionStatus.EXITED
                )
                self.db.mark_position_exited(
                    position.id,
                    exit_price=exit_signal.current_price,
                    exit_reason=exit_signal.exit_reason,
                    exit_type=exit_signal.exit_type.value,
                    pnl_amount=pnl_amount,
                    pnl_percentage=pnl_pct,
                    exit_order_id=order.order_id,
                    status=status.value,
                )
                logger.info(
                    f"Exited {position.user_id}/{position.symbol} at ₹{exit_signal.current_price:.2f} "
                    f"({pnl_pct:+.2f}%): {exit_signal.exit_reason}"
                )
            else:
                logger.error(
                    f"Exit order failed for {position.user_id}/{position.symbol}, position stays ACTIVE "
                    f"at level {position.trailing_level}: {order.error}"
                )
                self.db.log_error(
                    error_type="exit_order_failed",
                    component="PositionLifecycleManager",
                    message=f"{position.symbol}: {order.error}",
                    context={"position_id": position.id, "error_code": order.error_code},
                )

        if send_notification and self.notifier is not None and not position.is_algorithm:
            user = self.db.get_user(position.user_id) or {}
            if user.get("phone_number"):
                await self.notifier.notify_position_exited(
                    user["phone_number"],
                    position.symbol,
                    exit_signal.exit_reason,
                    exit_signal.current_price,
                    pnl_amount,
                    pnl_pct,
                    success=order.success,
                )
        return order

    async def refresh_daily_summary(self, user_id: str) -> Dict[str, Any]:
        """Recompute today's realized PnL and halt the user's trading if the loss limit is hit."""
        today = _today()
        totals = self.db.get_realized_pnl(user_id, today)
        row = self.db.get_trading_preferences(user_id)

        stop, reason = False, None
        if row:
            preferences = TradingPreferences.from_dict(row)
            if self.risk_engine.daily_loss_breached(preferences, totals["realized_pnl"]):
                stop = True
                reason = (
                    f"Daily loss limit reached: ₹{totals['realized_pnl']:,.2f} "
                    f"({preferences.daily_loss_limit_percentage}% of capital)"
                )
                logger.warning(f"Trading stopped for user {user_id} - {reason}")

        self.db.upsert_daily_summary(
            user_id,
            today,
            realized_pnl=totals["realized_pnl"],
            trades_count=totals["trades_count"],
            winning_trades=totals["winning_trades"],
            losing_trades=totals["losing_trades"],
            is_trading_stopped=stop,
            stop_reason=reason,
        )
        return self.db.get_daily_summary(user_id, today)
