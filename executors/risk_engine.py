"""
MTF Sentinel Trader - Risk Engine
Position sizing against broker margin, and per-user checks before any new order.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Tuple

from config import Config
from models.trades import Position, SizingResult, TradingPreferences

logger = logging.getLogger(__name__)


@dataclass
class RiskCheckResult:
    """Result of a risk check."""
    passed: bool
    rule: str
    message: str
    severity: str = "error"  # error, warning, info

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "rule": self.rule,
            "message": self.message,
            "severity": self.severity,
        }


# =============================================================================
# SIZING
# =============================================================================

def fallback_margin_per_share(
    price: float,
    fallback_margin_pct: float = Config.FALLBACK_MARGIN_PCT,
) -> float:
    """Estimated margin per share when the broker cannot quote one."""
    return price * fallback_margin_pct / 100


def _has_quote(quoted_margin_per_share: Optional[float]) -> bool:
    if quoted_margin_per_share is None:
        return False
    try:
        value = float(quoted_margin_per_share)
    except (TypeError, ValueError):
        return False
    return not math.isnan(value) and value > 0


def size_position(
    allocation: float,
    quoted_margin_per_share: Optional[float],
    price: float,
    fallback_margin_pct: float = Config.FALLBACK_MARGIN_PCT,
) -> SizingResult:
    """
    Size an MTF entry.

    quantity = floor(allocation / margin_per_share); leverage = price / margin_per_share.
    A missing or non-positive quote falls back to price * fallback_margin_pct and
    the result is flagged as estimated. Zero quantity is a valid "cannot enter" result.
    """
    estimated = not _has_quote(quoted_margin_per_share)
    if estimated:
        margin_per_share = fallback_margin_per_share(price, fallback_margin_pct)
    else:
        margin_per_share = float(quoted_margin_per_share)

    if margin_per_share <= 0 or price <= 0 or allocation <= 0:
        quantity = 0
    else:
        # Tolerance keeps exact multiples (5000 / 500) from flooring to one less
        quantity = int(math.floor(allocation / margin_per_share + 1e-9))

    leverage = price / margin_per_share if margin_per_share > 0 else 0.0

    return SizingResult(
        quantity=quantity,
        amount=quantity * price,
        margin_required=quantity * margin_per_share,
        leverage=leverage,
        margin_per_share=margin_per_share,
        margin_estimated=estimated,
        price=price,
    )


# =============================================================================
# RISK ENGINE
# =============================================================================

class RiskEngine:
    """
    Validates a user's new entries against their trading preferences.
    All real orders must pass the risk engine before reaching the broker.
    """

    def __init__(
        self,
        fallback_margin_pct: float = Config.FALLBACK_MARGIN_PCT,
        default_stop_loss_pct: float = Config.DEFAULT_STOP_LOSS_PCT,
    ):
        self.fallback_margin_pct = fallback_margin_pct
        self.default_stop_loss_pct = default_stop_loss_pct

    def size(
        self,
        preferences: TradingPreferences,
        quoted_margin_per_share: Optional[float],
        price: float,
    ) -> SizingResult:
        """Size a position from the user's per-position allocation."""
        return size_position(
            preferences.allocation_amount,
            quoted_margin_per_share,
            price,
            self.fallback_margin_pct,
        )

    def stop_loss_for(self, preferences: Optional[TradingPreferences]) -> float:
        """The user's stop loss percentage; the configured default only when they have none."""
        if preferences is not None and preferences.stop_loss_percentage:
            return preferences.stop_loss_percentage
        if preferences is not None:
            logger.warning(
                f"No stop loss preference for user {preferences.user_id}, "
                f"using default {self.default_stop_loss_pct}%"
            )
        return self.default_stop_loss_pct

    def daily_loss_breached(self, preferences: TradingPreferences, realized_pnl: float) -> bool:
        """True once today's realized loss reaches the user's daily limit."""
        limit = preferences.daily_loss_limit_amount
        if limit <= 0:
            return False
        return -min(0.0, realized_pnl) >= limit

    def can_place_new_order(
        self,
        preferences: TradingPreferences,
        symbol: str,
        active_positions: List[Position],
        daily_summary: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, List[RiskCheckResult]]:
        """
        Validate a new entry against every rule.

        Returns:
            Tuple of (passed, list of check results)
        """
        daily_summary = daily_summary or {}
        results = [
            self._check_real_trading_enabled(preferences),
            self._check_trading_halted(daily_summary),
            self._check_capital(preferences),
            self._check_position_count(preferences, active_positions),
            self._check_daily_loss_limit(preferences, daily_summary),
            self._check_existing_position(symbol, active_positions),
        ]

        critical_failures = [r for r in results if not r.passed and r.severity == "error"]
        passed = len(critical_failures) == 0

        for result in results:
            if not result.passed:
                logger.warning(
                    f"Risk check FAILED for {preferences.user_id}/{symbol}: "
                    f"{result.rule} - {result.message}"
                )
            else:
                logger.debug(f"Risk check passed: {result.rule}")

        return passed, results

    # =========================================================================
    # INDIVIDUAL RISK CHECKS
    # =========================================================================

    def _check_real_trading_enabled(self, preferences: TradingPreferences) -> RiskCheckResult:
        if not preferences.is_real_trading_enabled:
            return RiskCheckResult(
                passed=False,
                rule="real_trading_enabled",
                message="Real trading is disabled for this user"
            )
        return RiskCheckResult(passed=True, rule="real_trading_enabled", message="Real trading enabled")

    def _check_trading_halted(self, daily_summary: Dict[str, Any]) -> RiskCheckResult:
        if daily_summary.get("is_trading_stopped"):
            return RiskCheckResult(
                passed=False,
                rule="trading_halt",
                message=f"Trading stopped for today: {daily_summary.get('stop_reason') or 'daily loss limit'}"
            )
        return RiskCheckResult(passed=True, rule="trading_halt", message="Trading is active")

    def _check_capital(self, preferences: TradingPreferences) -> RiskCheckResult:
        if preferences.allocation_amount <= 0:
            return RiskCheckResult(
                passed=False,
                rule="allocation",
                message=(
                    f"No capital allocated (capital {preferences.total_capital}, "
                    f"allocation {preferences.allocation_percentage}%)"
                )
            )
        return RiskCheckResult(
            passed=True,
            rule="allocation",
            message=f"Allocation {preferences.allocation_amount:,.2f} per position"
        )

    def _check_position_count(
        self,
        preferences: TradingPreferences,
        active_positions: List[Position],
    ) -> RiskCheckResult:
        count = len([p for p in active_positions if p.is_active])
        if count >= preferences.max_concurrent_positions:
            return RiskCheckResult(
                passed=False,
                rule="max_positions",
                message=f"At max positions ({count}/{preferences.max_concurrent_positions})"
            )
        return RiskCheckResult(
            passed=True,
            rule="max_positions",
            message=f"Position count {count}/{preferences.max_concurrent_positions}"
        )

    def _check_daily_loss_limit(
        self,
        preferences: TradingPreferences,
        daily_summary: Dict[str, Any],
    ) -> RiskCheckResult:
        realized = float(daily_summary.get("realized_pnl") or 0)
        if self.daily_loss_breached(preferences, realized):
            return RiskCheckResult(
                passed=False,
                rule="daily_loss_limit",
                message=(
                    f"Daily loss {realized:,.2f} breaches limit "
                    f"{preferences.daily_loss_limit_percentage}% of capital"
                )
            )
        return RiskCheckResult(passed=True, rule="daily_loss_limit", message="Daily loss within limit")

    def _check_existing_position(
        self,
        symbol: str,
        active_positions: List[Position],
    ) -> RiskCheckResult:
        for position in active_positions:
            if position.symbol == symbol and position.is_active:
                return RiskCheckResult(
                    passed=False,
                    rule="existing_position",
                    message=f"Already holding {symbol}: {position.entry_quantity} shares"
                )
        return RiskCheckResult(
            passed=True,
            rule="existing_position",
            message=f"No existing position in {symbol}"
        )
