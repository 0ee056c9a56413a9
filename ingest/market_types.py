from dataclasses import dataclass


@dataclass(frozen=True)
class TickerSnapshot:
    id: str
    symbol: str
    pair: str
    price: float
    change_24h: float
    change_pct_24h: float
    high_24h: float
    low_24h: float
    quote_volume_24h: float
    source: str

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'pair': self.pair,
            'price': self.price,
            'change_24h': self.change_24h,
            'change_pct_24h': self.change_pct_24h,
            'high_24h': self.high_24h,
            'low_24h': self.low_24h,
            'quote_volume_24h': self.quote_volume_24h,
            'source': self.source,
        }


@dataclass(frozen=True)
class DailyCandle:
    open_time: float
    open: float
    high: float
    low: float
    close: float
    base_volume: float
    quote_volume: float
