import sys
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

sys.path.insert(0, '.')

from analytics.vwap_levels import LevelSet
from ingest.market_types import DailyCandle, TickerSnapshot
from strategy.signal_classifier import Signal, SignalKind


def make_ticker(symbol: str = 'A', price: float = 110.0, quote_volume: float = 1_000_000.0,
                change_pct: float = 0.0, source: str = 'binance') -> TickerSnapshot:
    return TickerSnapshot(
        id=f"{symbol}USDT",
        symbol=symbol,
        pair=f"{symbol}/USDT",
        price=price,
        change_24h=0.0,
        change_pct_24h=change_pct,
        high_24h=price,
        low_24h=price,
        quote_volume_24h=quote_volume,
        source=source,
    )


def make_levels(symbol: str = 'A', max: float = 100.0, min: float = 90.0, mid: float = 95.0,
                normalized_slope: float = 0.10, relative_volume: float = 1.0) -> LevelSet:
    return LevelSet(
        symbol=symbol,
        max=max,
        min=min,
        mid=mid,
        slope=normalized_slope,
        normalized_slope=normalized_slope,
        relative_volume=relative_volume,
        computed_at=0.0,
    )


def make_signal(kind: SignalKind, symbol: str = 'A', price: float = 110.0, score: float = 96.0,
                reason: str = 'test signal', active_since: Optional[float] = None) -> Signal:
    return Signal(kind, score, reason, make_ticker(symbol, price), make_levels(symbol), active_since)


def daily_candles(first_day: datetime, vwaps: Sequence[float], spread: float = 1.0,
                  base_volume: float = 10.0) -> List[DailyCandle]:
    """One candle per day from ``first_day`` whose daily VWAP equals the given value."""
    candles = []
    for i, vwap in enumerate(vwaps):
        day = first_day + timedelta(days=i)
        candles.append(
            DailyCandle(
                open_time=day.timestamp(),
                open=vwap,
                high=vwap + spread,
                low=vwap - spread,
                close=vwap,
                base_volume=base_volume,
                quote_volume=vwap * base_volume,
            )
        )
    return candles


class FakeRESTClient:
    """Canned responses per path; an Exception value is raised instead of returned."""

    def __init__(self, responses: Optional[Dict] = None):
        self.responses = dict(responses or {})
        self.calls: List = []
        self.closed = False

    async def _respond(self, method: str, path: str, payload):
        self.calls.append((method, path, payload))
        resp = self.responses[path]
        if callable(resp):
            resp = resp(payload)
        if isinstance(resp, Exception):
            raise resp
        return resp

    async def get(self, path, params=None):
        return await self._respond('GET', path, params)

    async def post(self, path, json_body=None):
        return await self._respond('POST', path, json_body)

    async def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, accept: bool = True, per_chat: Optional[Dict[str, bool]] = None):
        self.accept = accept
        self.per_chat = per_chat
        self.sent: List = []

    async def send_message(self, token, chat_id, text):
        self.sent.append((token, chat_id, text))
        if self.per_chat is not None:
            return self.per_chat.get(chat_id, False)
        return self.accept
