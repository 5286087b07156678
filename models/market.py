"""
MTF Sentinel Trader - Market Data Models
Candles, pivots and support/resistance channels.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any


class PivotKind(Enum):
    """Which extreme a pivot marks."""
    HIGH = "high"
    LOW = "low"


class ChannelKind(Enum):
    """Position of a channel relative to the current price."""
    SUPPORT = "support"          # Entire band below price
    RESISTANCE = "resistance"    # Entire band above price
    IN_CHANNEL = "in_channel"    # Price is inside the band


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_point(cls, point: Dict[str, Any]) -> "Candle":
        """Build a candle from a broker chart point (string values allowed)."""
        timestamp = point.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        return cls(
            timestamp=timestamp,
            open=float(point["open"]),
            high=float(point["high"]),
            low=float(point["low"]),
            close=float(point["close"]),
            volume=float(point.get("volume") or 0),
        )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class PivotPoint:
    """A local extreme relative to a symmetric neighbourhood of bars."""
    index: int
    price: float
    kind: PivotKind
    strength: int = 0  # Bars in the window strictly dominated by this pivot

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "price": self.price,
            "kind": self.kind.value,
            "strength": self.strength,
        }


@dataclass(frozen=True)
class Channel:
    """
    A merged price band formed from nearby pivots.

    ``kind`` is relative to the price the channel set was classified against.
    """
    top_price: float
    bottom_price: float
    kind: ChannelKind
    strength: int
    touch_count: int = 0
    pivot_count: int = 0
    last_index: int = -1  # Most recent bar index that formed or touched the band

    @property
    def width(self) -> float:
        return self.top_price - self.bottom_price

    @property
    def mid_price(self) -> float:
        return (self.top_price + self.bottom_price) / 2

    def width_pct(self, window_range: float) -> float:
        """Width as a percentage of the analysis window's high-low range (0 when degenerate)."""
        if window_range <= 0:
            return 0.0
        return self.width / window_range * 100

    def overlaps(self, other: "Channel") -> bool:
        return self.bottom_price <= other.top_price and other.bottom_price <= self.top_price

    def contains(self, price: float) -> bool:
        return self.bottom_price <= price <= self.top_price

    def distance_pct(self, price: float) -> Optional[float]:
        """Percentage distance from price to the nearest edge of the band, 0 inside it."""
        if price <= 0:
            return None
        if self.contains(price):
            return 0.0
        edge = self.bottom_price if self.bottom_price > price else self.top_price
        return abs(edge - price) / price * 100

    def to_dict(self) -> dict:
        return {
            "top_price": round(self.top_price, 2),
            "bottom_price": round(self.bottom_price, 2),
            "kind": self.kind.value,
            "strength": self.strength,
            "touch_count": self.touch_count,
            "pivot_count": self.pivot_count,
            "last_index": self.last_index,
        }
