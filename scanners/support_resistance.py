"""
MTF Sentinel Trader - Support/Resistance Channel Detector

Pivot highs/lows are grouped into price bands no wider than a fixed share of
the analysis window's range. Bands are scored (20 per pivot plus one per
extra candle touching the band), the strongest non-overlapping ones are kept
and classified against the latest close.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

import numpy as np

from config import Config
from models.market import Candle, Channel, ChannelKind, PivotKind, PivotPoint
from models.signals import ResistanceCheck

logger = logging.getLogger(__name__)

PIVOT_WEIGHT = 20


@dataclass
class SRConfig:
    """Detector settings."""
    pivot_radius: int = Config.SR_PIVOT_RADIUS
    max_channel_width_pct: float = Config.SR_MAX_CHANNEL_WIDTH_PCT
    min_strength: int = Config.SR_MIN_STRENGTH  # In pivots; compared against strength / 20
    max_channels: int = Config.SR_MAX_CHANNELS
    lookback: int = Config.SR_LOOKBACK


@dataclass
class _Band:
    """A channel under construction."""
    pivots: List[PivotPoint] = field(default_factory=list)

    @property
    def top(self) -> float:
        return max(p.price for p in self.pivots)

    @property
    def bottom(self) -> float:
        return min(p.price for p in self.pivots)

    @property
    def mid(self) -> float:
        return (self.top + self.bottom) / 2

    def width_with(self, price: float) -> float:
        return max(self.top, price) - min(self.bottom, price)


# =============================================================================
# PIVOTS
# =============================================================================

def detect_pivots(candles: List[Candle], radius: int) -> List[PivotPoint]:
    """
    Mark pivot highs and lows over every bar with a full window on both sides.

    A bar is a pivot high when its high is >= every high in [i-radius, i+radius]
    and no earlier eligible bar in that window has the same high (ties go to the
    earliest index). Lows mirror this. Output is ordered by index, HIGH before LOW.
    """
    n = len(candles)
    if radius < 1 or n < 2 * radius + 1:
        return []

    highs = np.array([c.high for c in candles], dtype=float)
    lows = np.array([c.low for c in candles], dtype=float)
    pivots: List[PivotPoint] = []

    for i in range(radius, n - radius):
        start, end = i - radius, i + radius + 1
        earliest = max(start, radius)

        high_window = highs[start:end]
        if highs[i] >= high_window.max() and not np.any(highs[earliest:i] == highs[i]):
            pivots.append(PivotPoint(
                index=i,
                price=float(highs[i]),
                kind=PivotKind.HIGH,
                strength=int(np.sum(high_window < highs[i])),
            ))

        low_window = lows[start:end]
        if lows[i] <= low_window.min() and not np.any(lows[earliest:i] == lows[i]):
            pivots.append(PivotPoint(
                index=i,
                price=float(lows[i]),
                kind=PivotKind.LOW,
                strength=int(np.sum(low_window > lows[i])),
            ))

    return pivots


# =============================================================================
# BANDS
# =============================================================================

def form_bands(pivots: List[PivotPoint], max_width: float) -> List[_Band]:
    """Greedily place each pivot in the nearest band it fits in, else open a new one."""
    bands: List[_Band] = []
    for pivot in pivots:
        best: Optional[_Band] = None
        best_distance = None
        for band in bands:
            if band.width_with(pivot.price) > max_width:
                continue
            distance = abs(band.mid - pivot.price)
            if best is None or distance < best_distance:
                best, best_distance = band, distance
        if best is None:
            bands.append(_Band(pivots=[pivot]))
        else:
            best.pivots.append(pivot)
    return bands


def _score(band: _Band, highs: np.ndarray, lows: np.ndarray) -> Channel:
    """Turn a band into an (unclassified) channel with strength and touches."""
    top, bottom = band.top, band.bottom
    pivot_indices = {p.index for p in band.pivots}

    touched = ((highs >= bottom) & (highs <= top)) | ((lows >= bottom) & (lows <= top))
    touch_indices = [int(i) for i in np.flatnonzero(touched) if int(i) not in pivot_indices]

    last_index = max([p.index for p in band.pivots] + touch_indices)
    pivot_count = len(band.pivots)
    return Channel(
        top_price=top,
        bottom_price=bottom,
        kind=ChannelKind.IN_CHANNEL,
        strength=PIVOT_WEIGHT * pivot_count + len(touch_indices),
        touch_count=len(touch_indices),
        pivot_count=pivot_count,
        last_index=last_index,
    )


def _rank_key(channel: Channel) -> Tuple:
    # Strength, then touches, then recency, then lower price
    return (-channel.strength, -channel.touch_count, -channel.last_index, channel.bottom_price)


def select_channels(
    bands: List[_Band],
    candles: List[Candle],
    max_width: float,
    max_channels: int,
    min_strength: int,
) -> List[Channel]:
    """
    Keep the strongest non-overlapping bands.

    A candidate overlapping exactly one accepted band is merged into it when
    the union still fits max_width and does not touch any other accepted band;
    otherwise the candidate is dropped.
    """
    highs = np.array([c.high for c in candles], dtype=float)
    lows = np.array([c.low for c in candles], dtype=float)

    scored = [(_score(band, highs, lows), band) for band in bands]
    scored = [item for item in scored if item[0].strength >= PIVOT_WEIGHT * min_strength]
    scored.sort(key=lambda item: _rank_key(item[0]))

    accepted: List[Tuple[Channel, _Band]] = []
    for channel, band in scored:
        overlapping = [i for i, (other, _) in enumerate(accepted) if channel.overlaps(other)]

        if not overlapping:
            if len(accepted) < max_channels:
                accepted.append((channel, band))
            continue

        if len(overlapping) > 1:
            continue

        index = overlapping[0]
        stronger_band = accepted[index][1]
        merged = _Band(pivots=stronger_band.pivots + band.pivots)
        if merged.top - merged.bottom > max_width:
            continue
        merged_channel = _score(merged, highs, lows)
        clashes = any(
            merged_channel.overlaps(other)
            for i, (other, _) in enumerate(accepted) if i != index
        )
        if clashes:
            continue
        accepted[index] = (merged_channel, merged)

    channels = [channel for channel, _ in accepted]
    channels.sort(key=_rank_key)
    return channels


# =============================================================================
# CLASSIFICATION
# =============================================================================

def classify_channels(channels: List[Channel], price: float) -> List[Channel]:
    """Label each channel as support, resistance or in-channel relative to price."""
    classified = []
    for channel in channels:
        if channel.bottom_price > price:
            kind = ChannelKind.RESISTANCE
        elif channel.top_price < price:
            kind = ChannelKind.SUPPORT
        else:
            kind = ChannelKind.IN_CHANNEL
        classified.append(replace(channel, kind=kind))
    return classified


def nearest_levels(
    channels: List[Channel],
    price: float,
) -> Tuple[Optional[Channel], Optional[Channel]]:
    """
    (nearest support, nearest resistance) for price.

    Support is the highest band entirely below price, resistance the lowest band
    entirely above it. A band containing price is neither.
    """
    supports = [c for c in channels if c.top_price < price]
    resistances = [c for c in channels if c.bottom_price > price]
    support = max(supports, key=lambda c: c.top_price) if supports else None
    resistance = min(resistances, key=lambda c: c.bottom_price) if resistances else None
    return support, resistance


def check_resistance_proximity(
    price: float,
    resistance: Optional[Channel],
    min_distance_pct: float = Config.MIN_RESISTANCE_DISTANCE_PCT,
) -> ResistanceCheck:
    """Pass when price is at least min_distance_pct below the resistance band, or there is none."""
    if resistance is None:
        return ResistanceCheck(passed=True, reason="No resistance channel above price")

    if price <= 0:
        return ResistanceCheck(
            passed=False,
            reason="Invalid price for resistance check",
            resistance_price=resistance.bottom_price,
        )

    distance_pct = (resistance.bottom_price - price) / price * 100
    if distance_pct >= min_distance_pct:
        return ResistanceCheck(
            passed=True,
            reason=f"Resistance at {resistance.bottom_price:.2f} is {distance_pct:.2f}% away",
            distance_pct=distance_pct,
            resistance_price=resistance.bottom_price,
        )
    return ResistanceCheck(
        passed=False,
        reason=(
            f"Too close to resistance at {resistance.bottom_price:.2f} "
            f"({distance_pct:.2f}% < {min_distance_pct}%)"
        ),
        distance_pct=distance_pct,
        resistance_price=resistance.bottom_price,
    )


# =============================================================================
# DETECTOR
# =============================================================================

def window_range(candles: List[Candle]) -> Tuple[float, float]:
    """(highest high, lowest low) of a candle window."""
    if not candles:
        return 0.0, 0.0
    return max(c.high for c in candles), min(c.low for c in candles)


def detect(candles: List[Candle], config: Optional[SRConfig] = None) -> List[Channel]:
    """
    Detect support/resistance channels over the most recent `lookback` candles.

    Fewer than 2 * pivot_radius + 1 candles yields an empty list, which callers
    treat as "no resistance data" rather than an error.
    """
    config = config or SRConfig()
    window = candles[-config.lookback:] if config.lookback > 0 else list(candles)

    if len(window) < 2 * config.pivot_radius + 1:
        logger.debug(f"Not enough candles for channel detection: {len(window)}")
        return []

    high, low = window_range(window)
    max_width = (high - low) * config.max_channel_width_pct / 100

    pivots = detect_pivots(window, config.pivot_radius)
    if not pivots:
        return []

    bands = form_bands(pivots, max_width)
    channels = select_channels(
        bands,
        window,
        max_width=max_width,
        max_channels=config.max_channels,
        min_strength=config.min_strength,
    )
    return classify_channels(channels, window[-1].close)
