import logging
from typing import Any, List

from pydantic import ValidationError

from .errors import SourceShapeError
from .market_types import DailyCandle
from .rest_client import RESTClient
from .schemas import KlineRow


logger = logging.getLogger(__name__)

KLINES_PATH = "/api/v3/klines"


class CandleSource:
    """Daily klines per base asset, oldest first; the last candle is the live day."""

    def __init__(self, client: RESTClient, quote_asset: str = 'USDT', metrics=None):
        self.client = client
        self.quote_asset = quote_asset.upper()
        self.metrics = metrics

    def pair_for(self, symbol: str) -> str:
        symbol = symbol.upper()
        if symbol.endswith(self.quote_asset) and symbol != self.quote_asset:
            return symbol
        return f"{symbol}{self.quote_asset}"

    async def fetch_daily_candles(self, symbol: str, limit: int = 30) -> List[DailyCandle]:
        payload = await self.client.get(
            KLINES_PATH,
            params={'symbol': self.pair_for(symbol), 'interval': '1d', 'limit': limit},
        )
        return self.parse_klines(payload)

    def parse_klines(self, payload: Any) -> List[DailyCandle]:
        if not isinstance(payload, list):
            raise SourceShapeError("Kline payload is not a list")
        candles: List[DailyCandle] = []
        skipped = 0
        for raw in payload:
            try:
                row = KlineRow.from_row(raw)
            except (ValidationError, ValueError) as exc:
                skipped += 1
                logger.debug("Skipping malformed kline %r: %s", raw, exc)
                continue
            candles.append(
                DailyCandle(
                    open_time=row.open_time / 1000.0,
                    open=row.open,
                    high=row.high,
                    low=row.low,
                    close=row.close,
                    base_volume=row.base_volume,
                    quote_volume=row.quote_volume,
                )
            )
        if skipped and self.metrics is not None:
            self.metrics.record_parse_failure('kline', skipped)
        return candles
