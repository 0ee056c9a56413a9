import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence, Tuple

import aiohttp

from ingest.candle_source import CandleSource
from ingest.errors import SourceHTTPError, SourceShapeError
from ingest.market_types import DailyCandle
from .indicators import average_true_range, daily_vwaps, relative_volume, week_start


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LevelSet:
    symbol: str
    max: float
    min: float
    mid: float
    slope: float
    normalized_slope: float
    relative_volume: float = 1.0
    computed_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'max': self.max,
            'min': self.min,
            'mid': self.mid,
            'slope': self.slope,
            'normalized_slope': self.normalized_slope,
            'relative_volume': self.relative_volume,
            'computed_at': self.computed_at,
        }


def derive_levels(
    symbol: str,
    candles: Sequence[DailyCandle],
    now: Optional[datetime] = None,
    atr_window: int = 14,
    slope_lookback: int = 10,
    rvol_window: int = 20,
    min_candles: Optional[int] = None,
) -> Optional[LevelSet]:
    """Structural weekly max/min, live mid and ATR-normalized slope.

    Max and min only look at completed days that opened on or after Monday
    00:00 UTC, so they stay frozen for the rest of a UTC day. Returns ``None``
    when history is too short.
    """
    required = min_candles if min_candles is not None else atr_window + 1
    if len(candles) < max(required, 1):
        return None

    now = now or datetime.now(timezone.utc)
    monday_ts = week_start(now).timestamp()
    vwaps = daily_vwaps(candles)
    last = len(candles) - 1
    mid = float(vwaps[last])

    structural = [
        float(vwaps[i]) for i in range(last)
        if candles[i].open_time >= monday_ts
    ]
    w_max = max(structural) if structural else mid
    w_min = min(structural) if structural else mid

    atr = average_true_range(candles, atr_window)
    slope = 0.0
    normalized = 0.0
    if last >= slope_lookback:
        slope = mid - float(vwaps[last - slope_lookback])
        normalized = slope / atr if atr > 0 else 0.0

    return LevelSet(
        symbol=symbol,
        max=w_max,
        min=w_min,
        mid=mid,
        slope=slope,
        normalized_slope=normalized,
        relative_volume=relative_volume(candles, rvol_window),
        computed_at=now.timestamp(),
    )


class LevelCalculator:
    """Fetches daily candles per symbol and caches derived levels for a short TTL."""

    def __init__(self, candle_source: CandleSource, config: Dict, metrics=None):
        self.candle_source = candle_source
        self.history_days = int(config.get('history_days', 30))
        self.atr_window = int(config.get('atr_window', 14))
        self.slope_lookback = int(config.get('slope_lookback', 10))
        self.rvol_window = int(config.get('rvol_window', 20))
        self.min_candles = int(config.get('min_candles', self.atr_window + 1))
        self.cache_ttl_s = float(config.get('cache_ttl_s', 60))
        self.metrics = metrics
        self._cache: Dict[str, Tuple[float, LevelSet]] = {}

    def _record(self, outcome: str):
        if self.metrics is not None:
            self.metrics.record_level_fetch(outcome)

    def cached(self, symbol: str) -> Optional[LevelSet]:
        entry = self._cache.get(symbol)
        if entry and entry[0] > time.time():
            return entry[1]
        return None

    async def compute_levels(self, symbol: str) -> Optional[LevelSet]:
        hit = self.cached(symbol)
        if hit is not None:
            self._record('cached')
            return hit

        try:
            candles = await self.candle_source.fetch_daily_candles(symbol, self.history_days)
        except (aiohttp.ClientError, asyncio.TimeoutError, SourceHTTPError, SourceShapeError) as exc:
            self._record('error')
            logger.warning("Daily candle fetch failed for %s: %s", symbol, exc)
            return None

        levels = derive_levels(
            symbol,
            candles,
            atr_window=self.atr_window,
            slope_lookback=self.slope_lookback,
            rvol_window=self.rvol_window,
            min_candles=self.min_candles,
        )
        if levels is None:
            self._record('insufficient_history')
            logger.debug("Insufficient daily history for %s (%s candles)", symbol, len(candles))
            return None

        self._cache[symbol] = (time.time() + self.cache_ttl_s, levels)
        self._record('ok')
        return levels
