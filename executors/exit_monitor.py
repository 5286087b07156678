"""
MTF Sentinel Trader - Exit Monitoring Engine
Evaluates every ACTIVE position once per cycle and decides HOLD or EXIT.

Exit rules, first match wins:
1. RSI reversal: RSI14 below its 14-period SMA, whatever the PnL.
2. Stop loss: PnL% at or below -stop_loss_pct.
3. Trailing stop: once a ladder level is reached, falling below its locked
   profit exits at that floor.

The engine never sells. EXIT decisions go to the lifecycle manager, which
only marks the position exited after the broker confirms the SELL.
"""

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Union

from config import Config
from executors.lemon_broker import BrokerError
from executors.risk_engine import RiskEngine
from models.market import Candle
from models.trades import (
    ExitSignal,
    ExitType,
    MonitorDecision,
    MonitorStatus,
    Position,
    PositionStatus,
    TradingPreferences,
    ladder_spec,
    level_for_profit,
    MAX_TRAILING_LEVEL,
)
from scanners.indicators import compute_snapshot
from scanners.market_scanner import DataUnavailableError

logger = logging.getLogger(__name__)

MarketData = Union[List[Candle], float]

RSI_REVERSAL_REASON = "Exit due to trend reversal: RSI crossed down RSI 14 SMA"


# =============================================================================
# PURE DECISION LOGIC
# =============================================================================

def ratchet(stored_level: int, computed_level: int) -> int:
    """Trailing levels only move up."""
    return max(stored_level, computed_level)


def _price_and_rsi(market: MarketData):
    if isinstance(market, (int, float)):
        return float(market), None, None
    if not market:
        raise DataUnavailableError("No candles to evaluate")
    snapshot = compute_snapshot(market)
    return snapshot.close, snapshot.rsi14, snapshot.rsi_sma14


def analyze_for_exit(
    position: Position,
    market: MarketData,
    stop_loss_pct: float = Config.DEFAULT_STOP_LOSS_PCT,
) -> MonitorDecision:
    """
    Decide HOLD or EXIT for one position.

    Args:
        position: The ACTIVE position, carrying its stored trailing level
        market: Daily candles (latest last) or a bare last traded price.
            With a bare price the RSI rule cannot be evaluated and is skipped.
        stop_loss_pct: Positive percentage, e.g. 2.5

    Returns:
        MonitorDecision with the (possibly advanced) trailing level to persist
    """
    price, rsi, rsi_sma = _price_and_rsi(market)
    pnl_amount, pnl_pct = position.pnl_at(price)
    previous_level = position.trailing_level
    level = ratchet(previous_level, level_for_profit(pnl_pct))

    def decide(signal: Optional[ExitSignal]) -> MonitorDecision:
        return MonitorDecision(
            symbol=position.symbol,
            status=MonitorStatus.EXIT if signal else MonitorStatus.HOLD,
            current_price=price,
            pnl_amount=pnl_amount,
            pnl_percentage=pnl_pct,
            trailing_level=level,
            previous_trailing_level=previous_level,
            exit_signal=signal,
        )

    if rsi is not None and rsi_sma is not None and rsi < rsi_sma:
        return decide(ExitSignal(
            exit_type=ExitType.RSI_REVERSAL,
            exit_reason=RSI_REVERSAL_REASON,
            current_price=price,
            pnl_amount=pnl_amount,
            pnl_percentage=pnl_pct,
            trailing_level=level,
            rsi=rsi,
            rsi_sma=rsi_sma,
        ))

    if pnl_pct <= -stop_loss_pct:
        return decide(ExitSignal(
            exit_type=ExitType.STOP_LOSS,
            exit_reason=(
                f"Stop loss hit: Price dropped {stop_loss_pct}% below entry ({pnl_pct:.2f}%)"
            ),
            current_price=price,
            pnl_amount=pnl_amount,
            pnl_percentage=pnl_pct,
            trailing_level=level,
            rsi=rsi,
            rsi_sma=rsi_sma,
        ))

    spec = ladder_spec(level)
    if spec is not None and pnl_pct < spec.locked_profit_pct:
        locked_amount = (spec.lock_in_price(position.entry_price) - position.entry_price) * position.entry_quantity
        return decide(ExitSignal(
            exit_type=ExitType.TRAILING_STOP,
            exit_reason=(
                f"Book profits now! {position.symbol} hit trailing stop at "
                f"{spec.locked_profit_pct}% (Level {level}: {spec.description})"
            ),
            current_price=price,
            pnl_amount=locked_amount,
            pnl_percentage=spec.locked_profit_pct,
            trailing_level=level,
            rsi=rsi,
            rsi_sma=rsi_sma,
        ))

    return decide(None)


def trailing_status(position: Position, current_price: float) -> Dict[str, Any]:
    """Where a position sits on the trailing ladder at a given price."""
    _, pnl_pct = position.pnl_at(current_price)
    level = ratchet(position.trailing_level, level_for_profit(pnl_pct))
    spec = ladder_spec(level)
    next_spec = ladder_spec(level + 1) if level < MAX_TRAILING_LEVEL else None

    return {
        "symbol": position.symbol,
        "current_price": current_price,
        "pnl_percentage": round(pnl_pct, 2),
        "current_level": level,
        "description": spec.description if spec else "No level reached",
        "locked_profit_pct": spec.locked_profit_pct if spec else None,
        "lock_in_price": round(spec.lock_in_price(position.entry_price), 2) if spec else None,
        "next_level": next_spec.level if next_spec else None,
        "next_target_pct": next_spec.profit_threshold_pct if next_spec else None,
        "next_target_price": round(next_spec.target_price(position.entry_price), 2) if next_spec else None,
    }


# =============================================================================
# MONITOR CYCLE
# =============================================================================

@dataclass
class MonitorCycleReport:
    """Outcome of one monitoring pass over all ACTIVE positions."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    total_positions: int = 0
    updated_positions: int = 0
    exit_signals: int = 0
    exits_completed: int = 0
    exits_failed: int = 0
    level_changes: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "total_positions": self.total_positions,
            "updated_positions": self.updated_positions,
            "exit_signals": self.exit_signals,
            "exits_completed": self.exits_completed,
            "exits_failed": self.exits_failed,
            "level_changes": self.level_changes,
            "errors": self.errors,
            "details": self.details,
        }


class ExitMonitor:
    """
    Runs the exit rules over every ACTIVE position.

    Collaborators are injected: a Database, a LemonBrokerClient for market
    data, the PositionLifecycleManager that places exits, and an optional
    WhatsAppNotifier for trailing level alerts.
    """

    def __init__(
        self,
        db,
        broker,
        lifecycle,
        notifier=None,
        risk_engine: Optional[RiskEngine] = None,
        candle_days: int = Config.CANDLE_LOOKBACK_DAYS,
    ):
        self.db = db
        self.broker = broker
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.risk_engine = risk_engine or RiskEngine()
        self.candle_days = candle_days

    async def run_cycle(self, send_notifications: bool = True) -> MonitorCycleReport:
        report = MonitorCycleReport()
        positions = [Position.from_dict(row) for row in self.db.get_active_positions()]
        report.total_positions = len(positions)
        logger.info(f"Monitoring {len(positions)} active positions")

        market_cache: Dict[str, MarketData] = {}
        users_with_exits = set()

        for position in positions:
            try:
                detail = await self._monitor_position(position, market_cache, report, send_notifications)
                if detail.get("exit_completed") and not position.is_algorithm:
                    users_with_exits.add(position.user_id)
            except Exception as e:
                logger.exception(f"Error monitoring {position.symbol} ({position.id}): {e}")
                report.errors += 1
                detail = {
                    "position_id": position.id,
                    "user_id": position.user_id,
                    "symbol": position.symbol,
                    "status": MonitorStatus.HOLD.value,
                    "error": str(e),
                }
                self.db.log_error(
                    error_type="monitor_error",
                    component="ExitMonitor",
                    message=f"{position.symbol}: {e}",
                    stack_trace=traceback.format_exc(),
                    context={"position_id": position.id, "user_id": position.user_id},
                )
            report.details.append(detail)

        for user_id in sorted(users_with_exits):
            await self.lifecycle.refresh_daily_summary(user_id)

        if report.exit_signals == 0 and report.level_changes == 0:
            logger.info(f"No exit conditions met - all {report.total_positions} positions holding")
        logger.info(
            f"Monitor cycle complete: {report.updated_positions} updated, "
            f"{report.exits_completed} exited, {report.exits_failed} exit failures, "
            f"{report.errors} errors"
        )
        return report

    async def _monitor_position(
        self,
        position: Position,
        market_cache: Dict[str, MarketData],
        report: MonitorCycleReport,
        send_notifications: bool,
    ) -> Dict[str, Any]:
        market = await self._market_data(position.symbol, market_cache)

        # The snapshot may be stale: an overlapping cycle can close the position or raise its level
        stored = self.db.get_position(position.id)
        if stored is None or stored.get("status") != PositionStatus.ACTIVE.value:
            logger.info(f"{position.symbol} ({position.id}) closed during this cycle, skipped")
            return {
                "position_id": position.id,
                "user_id": position.user_id,
                "symbol": position.symbol,
                "status": MonitorStatus.HOLD.value,
                "skipped": True,
            }
        position.trailing_level = ratchet(position.trailing_level, int(stored.get("trailing_level") or 0))

        decision = analyze_for_exit(position, market, self._stop_loss_for(position))

        self.db.update_position_price(
            position.id, decision.current_price, decision.pnl_amount, decision.pnl_percentage
        )
        report.updated_positions += 1

        detail = decision.to_dict()
        detail.update({"position_id": position.id, "user_id": position.user_id})

        if decision.level_advanced:
            self.db.ratchet_trailing_level(position.id, decision.trailing_level)
            position.trailing_level = decision.trailing_level
            report.level_changes += 1
            spec = ladder_spec(decision.trailing_level)
            logger.info(
                f"TRAILING LEVEL ACTIVATED: {position.symbol} reached Level "
                f"{decision.trailing_level} ({spec.description})"
            )
            if send_notifications:
                await self._notify_level(position, decision)

        if decision.should_exit:
            report.exit_signals += 1
            logger.warning(f"EXIT SIGNAL: {position.symbol} - {decision.exit_signal.exit_reason}")
            order = await self.lifecycle.exit_position(
                position, decision.exit_signal, send_notification=send_notifications
            )
            if order is None:
                detail["exit_skipped"] = True
                return detail
            detail["exit_order"] = order.to_dict()
            detail["exit_completed"] = order.success
            if order.success:
                report.exits_completed += 1
            else:
                report.exits_failed += 1

        return detail

    async def _market_data(self, symbol: str, cache: Dict[str, MarketData]) -> MarketData:
        """Candles for the symbol, fetched once per cycle; the LTP when candles are unavailable."""
        if symbol in cache:
            return cache[symbol]

        market: Optional[MarketData] = None
        try:
            candles = await self.broker.get_trading_candles(symbol, self.candle_days)
            if candles:
                market = candles
        except BrokerError as e:
            logger.warning(f"Candles unavailable for {symbol}, falling back to LTP: {e.message}")

        if market is None:
            ltp = await self.broker.get_ltp(symbol)
            if ltp is None or ltp <= 0:
                raise DataUnavailableError(f"No market data for {symbol}")
            market = ltp

        cache[symbol] = market
        return market

    def _stop_loss_for(self, position: Position) -> float:
        if position.is_algorithm:
            return self.risk_engine.default_stop_loss_pct
        row = self.db.get_trading_preferences(position.user_id)
        preferences = TradingPreferences.from_dict(row) if row else None
        return self.risk_engine.stop_loss_for(preferences)

    async def _notify_level(self, position: Position, decision: MonitorDecision) -> None:
        if self.notifier is None or position.is_algorithm:
            return
        user = self.db.get_user(position.user_id) or {}
        if not user.get("phone_number"):
            return
        spec = ladder_spec(decision.trailing_level)
        await self.notifier.notify_trailing_level(
            user["phone_number"],
            position.symbol,
            decision.trailing_level,
            spec.locked_profit_pct,
            decision.pnl_percentage,
            decision.current_price,
        )
