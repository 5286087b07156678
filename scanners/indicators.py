"""
MTF Sentinel Trader - Technical Indicators
Thin wrappers over pandas-ta. Insufficient history yields NaN, never an exception.

pandas-ta conventions apply: EMA is seeded with the SMA of its first `length`
values, RSI uses Wilder (RMA) smoothing, MACD is EMA(12) - EMA(26) with an
EMA(9) signal line.
"""

import logging
import math
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import pandas_ta as ta

from models.market import Candle
from models.signals import IndicatorSnapshot

logger = logging.getLogger(__name__)

SeriesLike = Union[pd.Series, Sequence[float], np.ndarray]


def _as_series(values: SeriesLike) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.astype(float).reset_index(drop=True)
    return pd.Series(list(values), dtype=float)


def _or_nan(result: Optional[pd.Series], index: pd.Index) -> pd.Series:
    # pandas-ta returns None when the series is shorter than the window
    if result is None:
        return pd.Series(np.nan, index=index, dtype=float)
    return result.astype(float)


def sma(values: SeriesLike, period: int) -> pd.Series:
    """Simple moving average; NaN until `period` valid values are available."""
    series = _as_series(values)
    return _or_nan(ta.sma(series, length=period), series.index)


def ema(values: SeriesLike, period: int) -> pd.Series:
    series = _as_series(values)
    return _or_nan(ta.ema(series, length=period), series.index)


def rsi(values: SeriesLike, period: int = 14) -> pd.Series:
    """Relative strength index (0-100). A flat series reads a neutral 50."""
    series = _as_series(values)
    result = _or_nan(ta.rsi(series, length=period), series.index)
    if len(result) > period:
        # No gains and no losses leaves 0/0 after warm-up
        result.iloc[period:] = result.iloc[period:].fillna(50.0)
    return result


def rsi_sma(values: SeriesLike, rsi_period: int = 14, sma_period: int = 14) -> pd.Series:
    """Simple moving average of the RSI series."""
    return sma(rsi(values, rsi_period), sma_period)


def macd(
    values: SeriesLike,
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> pd.DataFrame:
    """MACD line, signal line and histogram as a DataFrame."""
    series = _as_series(values)
    frame = pd.DataFrame(np.nan, index=series.index, columns=["macd", "signal", "histogram"])

    # The signal line needs signal_period MACD values after the slow EMA warm-up
    if len(series) < slow_period + signal_period - 1:
        return frame

    result = ta.macd(series, fast=fast_period, slow=slow_period, signal=signal_period)
    if result is None:
        return frame

    suffix = f"{fast_period}_{slow_period}_{signal_period}"
    frame["macd"] = result[f"MACD_{suffix}"]
    frame["signal"] = result[f"MACDs_{suffix}"]
    frame["histogram"] = result[f"MACDh_{suffix}"]
    return frame


def consecutive_positive_histogram(histogram: SeriesLike) -> int:
    """Number of consecutive positive histogram bars counted back from the latest bar."""
    count = 0
    for value in reversed(_as_series(histogram).dropna().tolist()):
        if value > 0:
            count += 1
        else:
            break
    return count


def _last(series: pd.Series) -> Optional[float]:
    if series.empty:
        return None
    value = series.iloc[-1]
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return float(value)


def compute_snapshot(candles: List[Candle], ema_period: int = 50) -> IndicatorSnapshot:
    """Latest values of every indicator the entry and exit rules use."""
    if not candles:
        return IndicatorSnapshot()

    closes = pd.Series([c.close for c in candles], dtype=float)
    macd_frame = macd(closes)

    return IndicatorSnapshot(
        close=float(closes.iloc[-1]),
        ema50=_last(ema(closes, ema_period)),
        rsi14=_last(rsi(closes, 14)),
        rsi_sma14=_last(rsi_sma(closes, 14, 14)),
        macd=_last(macd_frame["macd"]),
        macd_signal=_last(macd_frame["signal"]),
        histogram=_last(macd_frame["histogram"]),
        histogram_count=consecutive_positive_histogram(macd_frame["histogram"]),
    )
