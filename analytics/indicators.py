from datetime import datetime, timedelta, timezone
from typing import Sequence

import numpy as np

from ingest.market_types import DailyCandle


def daily_vwap(candle: DailyCandle) -> float:
    """Quote/base volume ratio, or the typical price for a zero-volume day."""
    if candle.base_volume > 0:
        return candle.quote_volume / candle.base_volume
    return (candle.high + candle.low + candle.close) / 3


def daily_vwaps(candles: Sequence[DailyCandle]) -> np.ndarray:
    return np.array([daily_vwap(c) for c in candles], dtype=float)


def true_ranges(candles: Sequence[DailyCandle]) -> np.ndarray:
    if not candles:
        return np.array([], dtype=float)
    highs = np.array([c.high for c in candles], dtype=float)
    lows = np.array([c.low for c in candles], dtype=float)
    closes = np.array([c.close for c in candles], dtype=float)

    ranges = highs - lows
    if len(candles) > 1:
        prev_close = closes[:-1]
        ranges[1:] = np.maximum.reduce([
            ranges[1:],
            np.abs(highs[1:] - prev_close),
            np.abs(lows[1:] - prev_close),
        ])
    return ranges


def average_true_range(candles: Sequence[DailyCandle], window: int = 14) -> float:
    """Simple mean of the last ``window`` true ranges; 0 with too little history."""
    ranges = true_ranges(candles)
    if window <= 0 or len(ranges) < window:
        return 0.0
    return float(np.mean(ranges[-window:]))


def relative_volume(candles: Sequence[DailyCandle], window: int = 20) -> float:
    """Live-day quote volume against the mean of the preceding completed days."""
    if len(candles) < 2:
        return 1.0
    baseline = np.array([c.quote_volume for c in candles[:-1]][-window:], dtype=float)
    mean = float(np.mean(baseline)) if len(baseline) else 0.0
    if mean <= 0:
        return 1.0
    return candles[-1].quote_volume / mean


def week_start(now: datetime) -> datetime:
    """Most recent Monday 00:00 UTC at or before ``now``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=midnight.weekday())
