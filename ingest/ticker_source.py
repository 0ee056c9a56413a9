import asyncio
import logging
import time
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import aiohttp
from pydantic import ValidationError

from .errors import SourceHTTPError, SourceShapeError, SourceUnavailable
from .market_types import TickerSnapshot
from .rest_client import RESTClient
from .schemas import BinanceTickerRow, KucoinTickerRow, kucoin_rows


logger = logging.getLogger(__name__)

BINANCE_TICKER_PATH = "/api/v3/ticker/24hr"
KUCOIN_TICKER_PATH = "/api/v1/market/allTickers"

_FETCH_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    SourceHTTPError,
    SourceShapeError,
    UnicodeDecodeError,
)


class TickerSource:
    """Top-K ticker snapshots with Binance primary, KuCoin secondary and a shared TTL cache."""

    def __init__(self, primary: RESTClient, secondary: RESTClient, config: Dict, metrics=None):
        self.primary = primary
        self.secondary = secondary
        self.quote_asset = str(config.get('quote_asset', 'USDT')).upper()
        self.top_k = int(config.get('top_k', 250))
        self.cache_ttl_s = float(config.get('ticker_cache_ttl_s', 30))
        self.stable_assets: FrozenSet[str] = frozenset(
            str(s).upper() for s in config.get('stable_assets', ())
        )
        self.metrics = metrics
        self._cache: Optional[List[TickerSnapshot]] = None
        self._cache_ts = 0.0

    def _cache_fresh(self, now: float) -> bool:
        return self._cache is not None and now - self._cache_ts < self.cache_ttl_s

    def _record(self, source: str, outcome: str):
        if self.metrics is not None:
            self.metrics.record_ticker_fetch(source, outcome)

    def is_stable(self, base: str) -> bool:
        return base.upper() in self.stable_assets

    async def fetch_tickers(self) -> List[TickerSnapshot]:
        now = time.time()
        if self._cache_fresh(now):
            return self._cache

        tickers: Optional[List[TickerSnapshot]] = None
        try:
            tickers = self._require_rows('binance', self._parse_binance(await self.primary.get(BINANCE_TICKER_PATH)))
            self._record('binance', 'ok')
        except _FETCH_ERRORS as exc:
            self._record('binance', 'error')
            logger.warning("Primary ticker source failed: %s", exc)

        if tickers is None:
            try:
                tickers = self._require_rows('kucoin', self._parse_kucoin(await self.secondary.get(KUCOIN_TICKER_PATH)))
                self._record('kucoin', 'ok')
            except _FETCH_ERRORS as exc:
                self._record('kucoin', 'error')
                logger.error("Secondary ticker source failed: %s", exc)

        if tickers is None:
            if self._cache is not None:
                logger.warning("Both ticker sources failed; serving last good snapshot from %.0fs ago", time.time() - self._cache_ts)
                return self._cache
            raise SourceUnavailable("Both ticker sources failed and no previous snapshot is available")

        self._cache = tickers
        self._cache_ts = time.time()
        return tickers

    @staticmethod
    def _require_rows(source: str, tickers: List[TickerSnapshot]) -> List[TickerSnapshot]:
        if not tickers:
            raise SourceShapeError(f"{source} returned no usable tickers")
        return tickers

    def _finalize(self, tickers: Iterable[TickerSnapshot]) -> List[TickerSnapshot]:
        ranked = sorted(tickers, key=lambda t: t.quote_volume_24h, reverse=True)
        return ranked[:self.top_k]

    def _parse_binance(self, payload: Any) -> List[TickerSnapshot]:
        if not isinstance(payload, list):
            raise SourceShapeError("Binance ticker payload is not a list")
        suffix = self.quote_asset
        out: List[TickerSnapshot] = []
        skipped = 0
        for raw in payload:
            try:
                row = BinanceTickerRow.model_validate(raw)
            except ValidationError as exc:
                skipped += 1
                logger.debug("Skipping malformed Binance ticker %r: %s", raw, exc)
                continue
            if not row.symbol.endswith(suffix) or len(row.symbol) == len(suffix):
                continue
            base = row.symbol[:-len(suffix)]
            if self.is_stable(base):
                continue
            out.append(
                TickerSnapshot(
                    id=row.symbol,
                    symbol=base,
                    pair=f"{base}/{suffix}",
                    price=row.last_price,
                    change_24h=row.price_change,
                    change_pct_24h=row.price_change_percent,
                    high_24h=row.high_price,
                    low_24h=row.low_price,
                    quote_volume_24h=row.quote_volume,
                    source='binance',
                )
            )
        if skipped and self.metrics is not None:
            self.metrics.record_parse_failure('binance_ticker', skipped)
        return self._finalize(out)

    def _parse_kucoin(self, payload: Any) -> List[TickerSnapshot]:
        rows = kucoin_rows(payload)
        suffix = f"-{self.quote_asset}"
        out: List[TickerSnapshot] = []
        skipped = 0
        for raw in rows:
            try:
                row = KucoinTickerRow.model_validate(raw)
            except ValidationError as exc:
                skipped += 1
                logger.debug("Skipping malformed KuCoin ticker %r: %s", raw, exc)
                continue
            if not row.symbol.endswith(suffix):
                continue
            base = row.symbol.split('-')[0]
            if not base or self.is_stable(base):
                continue
            out.append(
                TickerSnapshot(
                    id=row.symbol,
                    symbol=base,
                    pair=f"{base}/{self.quote_asset}",
                    price=row.last,
                    change_24h=row.change_price,
                    change_pct_24h=row.change_rate * 100,
                    high_24h=row.high,
                    low_24h=row.low,
                    quote_volume_24h=row.vol_value,
                    source='kucoin',
                )
            )
        if skipped and self.metrics is not None:
            self.metrics.record_parse_failure('kucoin_ticker', skipped)
        return self._finalize(out)
