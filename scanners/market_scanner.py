"""
MTF Sentinel Trader - Market Scanner
Runs channel detection and entry evaluation over a symbol universe.

Every requested symbol gets exactly one result. Data failures are retried
with exponential backoff; a symbol that still fails is recorded as FAILED
and the batch carries on.
"""

import asyncio
import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Optional, List, Tuple

from config import Config
from models.signals import (
    EntrySignal,
    MarketCondition,
    ScanResult,
    ScanStatus,
    ScanSummary,
)
from scanners import entry_signal
from scanners import support_resistance
from scanners.entry_signal import EntryConfig
from scanners.support_resistance import SRConfig
from utils.retry import retry_async

logger = logging.getLogger(__name__)

TOP_OPPORTUNITIES = 5


class DataUnavailableError(Exception):
    """No usable market data for a symbol."""


def market_condition_for(entry_count: int, total: int) -> MarketCondition:
    """Breadth of ENTRY signals across the universe."""
    if total <= 0:
        return MarketCondition.NEUTRAL
    entry_rate = entry_count / total * 100
    if entry_rate > 15:
        return MarketCondition.BULLISH
    if entry_rate > 8:
        return MarketCondition.MIXED
    if entry_rate < 3:
        return MarketCondition.BEARISH
    return MarketCondition.NEUTRAL


class MarketScanner:
    """Sequential, rate-limited scanner over daily candles."""

    def __init__(
        self,
        broker,
        db=None,
        sr_config: Optional[SRConfig] = None,
        entry_config: Optional[EntryConfig] = None,
        max_retries: int = Config.SCAN_MAX_RETRIES,
        base_delay: float = Config.SCAN_BASE_DELAY_SECONDS,
        symbol_delay: float = Config.SCAN_SYMBOL_DELAY_SECONDS,
        candle_days: int = Config.CANDLE_LOOKBACK_DAYS,
        sleep=asyncio.sleep,
    ):
        self.broker = broker
        self.db = db
        self.sr_config = sr_config or SRConfig()
        self.entry_config = entry_config or EntryConfig()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.symbol_delay = symbol_delay
        self.candle_days = candle_days
        self._sleep = sleep

    async def scan(self, symbols: Optional[List[str]] = None) -> Tuple[List[ScanResult], ScanSummary]:
        """
        Scan symbols (the default universe when omitted).

        Returns:
            Tuple of (one ScanResult per distinct symbol, ScanSummary)
        """
        symbols = list(dict.fromkeys(s.strip().upper() for s in (symbols or Config.DEFAULT_UNIVERSE) if s.strip()))
        started_at = datetime.now(timezone.utc)
        clock = time.monotonic()
        logger.info(f"Starting scan of {len(symbols)} symbols")

        results = []
        for i, symbol in enumerate(symbols):
            if i > 0 and self.symbol_delay > 0:
                await self._sleep(self.symbol_delay)

            result = await self.scan_symbol(symbol)
            results.append(result)

            progress = f"{i + 1}/{len(symbols)}"
            if result.status == ScanStatus.FAILED:
                logger.warning(f"[{progress}] {symbol}: FAILED after {result.attempts} attempts")
            else:
                logger.info(f"[{progress}] {symbol}: {result.outcome}")
                if result.signal == EntrySignal.ENTRY:
                    logger.info(f"ENTRY FOUND: {symbol} - all 6 conditions met")

        summary = self.build_summary(results, started_at, time.monotonic() - clock)
        logger.info(
            f"Scan complete: {summary.entry_count} entries, {summary.watchlist_count} watchlist, "
            f"{summary.failed} failed, {summary.success_rate}% success, "
            f"market {summary.market_condition.value}"
        )

        if self.db is not None:
            try:
                self.db.save_scan(summary.to_dict(), [r.to_dict() for r in results])
            except sqlite3.Error as e:
                logger.error(f"Failed to save scan {summary.scan_id}: {e}")

        return results, summary

    async def scan_symbol(self, symbol: str) -> ScanResult:
        """Evaluate one symbol, retrying data failures. Never raises."""
        attempts = {"count": 0}
        try:
            return await retry_async(
                self._analyze,
                symbol,
                attempts,
                attempts=self.max_retries,
                base_delay=self.base_delay,
                description=f"Scan {symbol}",
                sleep=self._sleep,
            )
        except Exception as e:
            logger.error(f"{symbol} failed after {attempts['count']} attempts: {e}")
            if self.db is not None:
                self.db.log_error(
                    error_type="scan_failure",
                    component="MarketScanner",
                    message=f"{symbol}: {e}",
                    context={"symbol": symbol, "attempts": attempts["count"]},
                )
            return ScanResult(
                symbol=symbol,
                status=ScanStatus.FAILED,
                error=str(e) or type(e).__name__,
                attempts=attempts["count"],
            )

    async def _analyze(self, symbol: str, attempts: dict) -> ScanResult:
        attempts["count"] += 1
        candles = await self.broker.get_trading_candles(symbol, self.candle_days)
        if not candles:
            raise DataUnavailableError(f"No candle data for {symbol}")

        status = ScanStatus.SUCCESS
        try:
            channels = support_resistance.detect(candles, self.sr_config)
        except Exception as e:
            # Entry rules still run, just without resistance data
            logger.warning(f"Channel detection failed for {symbol}: {e}", exc_info=True)
            channels = []
            status = ScanStatus.PARTIAL_SUCCESS

        evaluation = entry_signal.evaluate(candles, channels, self.entry_config)
        support, resistance = support_resistance.nearest_levels(channels, candles[-1].close)

        return ScanResult(
            symbol=symbol,
            status=status,
            evaluation=evaluation,
            attempts=attempts["count"],
            channels=channels,
            nearest_support=support,
            nearest_resistance=resistance,
        )

    def build_summary(
        self,
        results: List[ScanResult],
        started_at: Optional[datetime] = None,
        duration_seconds: float = 0.0,
    ) -> ScanSummary:
        summary = ScanSummary(
            started_at=started_at or datetime.now(timezone.utc),
            total_symbols=len(results),
            duration_seconds=duration_seconds,
        )

        for result in results:
            if result.status == ScanStatus.SUCCESS:
                summary.successful += 1
            elif result.status == ScanStatus.PARTIAL_SUCCESS:
                summary.partial += 1
            else:
                summary.failed += 1
                continue

            if result.signal == EntrySignal.ENTRY:
                summary.entry_count += 1
            elif result.signal == EntrySignal.WATCHLIST:
                summary.watchlist_count += 1
            else:
                summary.no_entry_count += 1

        summary.market_condition = market_condition_for(summary.entry_count, summary.total_symbols)

        candidates = [
            r for r in results
            if r.evaluation is not None and r.signal in (EntrySignal.ENTRY, EntrySignal.WATCHLIST)
        ]
        candidates.sort(key=lambda r: (-r.evaluation.win_probability, -r.evaluation.confidence, r.symbol))
        summary.top_opportunities = [
            {
                "symbol": r.symbol,
                "signal": r.outcome,
                "current_price": r.current_price,
                "confidence": r.evaluation.confidence,
                "win_probability": r.evaluation.win_probability,
                "reasoning": r.evaluation.reasoning,
            }
            for r in candidates[:TOP_OPPORTUNITIES]
        ]
        return summary
