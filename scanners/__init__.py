"""
MTF Sentinel Trader - Scanners
Indicators, support/resistance detection, entry evaluation and batch scanning.
"""

from .support_resistance import SRConfig, detect, detect_pivots
from .entry_signal import EntryConfig, evaluate
from .market_scanner import MarketScanner, DataUnavailableError

__all__ = [
    "SRConfig",
    "detect",
    "detect_pivots",
    "EntryConfig",
    "evaluate",
    "MarketScanner",
    "DataUnavailableError",
]
