"""Wire schemas for provider payloads.

Every row is validated on its own so that one malformed record is skipped
instead of failing the whole response.
"""
from typing import Any, List, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import SourceShapeError


class BinanceTickerRow(BaseModel):
    model_config = ConfigDict(extra='ignore')

    symbol: str
    last_price: float = Field(alias='lastPrice')
    price_change: float = Field(alias='priceChange')
    price_change_percent: float = Field(alias='priceChangePercent')
    high_price: float = Field(alias='highPrice')
    low_price: float = Field(alias='lowPrice')
    quote_volume: float = Field(alias='quoteVolume')


class KucoinTickerRow(BaseModel):
    model_config = ConfigDict(extra='ignore')

    symbol: str
    last: float
    change_price: float = Field(default=0.0, alias='changePrice')
    change_rate: float = Field(default=0.0, alias='changeRate')
    high: float
    low: float
    vol_value: float = Field(alias='volValue')

    @field_validator('change_price', 'change_rate', mode='before')
    @classmethod
    def _null_as_zero(cls, value: Any) -> Any:
        # KuCoin reports null change fields for freshly listed pairs
        return 0.0 if value is None else value


class KlineRow(BaseModel):
    open_time: int
    open: float
    high: float
    low: float
    close: float
    base_volume: float
    close_time: int
    quote_volume: float

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> 'KlineRow':
        if not isinstance(row, (list, tuple)) or len(row) < 8:
            raise ValueError(f"kline row needs at least 8 fields, got {row!r}")
        return cls(
            open_time=row[0],
            open=row[1],
            high=row[2],
            low=row[3],
            close=row[4],
            base_volume=row[5],
            close_time=row[6],
            quote_volume=row[7],
        )


def kucoin_rows(payload: Any) -> List[Any]:
    """Unwrap the KuCoin ``{code, data: {ticker: [...]}}`` envelope."""
    if not isinstance(payload, dict):
        raise SourceShapeError("KuCoin payload is not an object")
    if payload.get('code') != '200000':
        raise SourceShapeError(f"KuCoin error: {payload.get('msg')}")
    data = payload.get('data') or {}
    rows = data.get('ticker') if isinstance(data, dict) else None
    if not isinstance(rows, list):
        raise SourceShapeError("KuCoin payload has no ticker list")
    return rows
