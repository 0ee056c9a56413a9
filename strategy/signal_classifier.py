from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from analytics.vwap_levels import LevelSet
from ingest.market_types import TickerSnapshot


class SignalKind(Enum):
    GOLDEN = "GOLDEN"
    MOMENTUM = "MOMENTUM"
    SUPPORT = "SUPPORT"
    EXIT = "EXIT"


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    score: float
    reason: str
    ticker: TickerSnapshot
    levels: LevelSet
    active_since: Optional[float] = None

    @property
    def symbol_id(self) -> str:
        return self.ticker.symbol

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol_id,
            'pair': self.ticker.pair,
            'kind': self.kind.value,
            'score': self.score,
            'reason': self.reason,
            'price': self.ticker.price,
            'change_pct_24h': self.ticker.change_pct_24h,
            'active_since': self.active_since,
            'levels': self.levels.to_dict(),
        }


def _fmt(price: float) -> str:
    if price >= 1000:
        return f"{price:,.2f}"
    if price >= 1:
        return f"{price:.2f}"
    if price >= 0.001:
        return f"{price:.4f}"
    return f"{price:.8f}"


class SignalClassifier:
    """Maps a ticker and its level set to at most one signal.

    Rules are evaluated in a fixed order and the first match wins:
    EXIT, GOLDEN, MOMENTUM, SUPPORT.
    """

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.exit_slope = float(config.get('exit_slope', 0.05))
        self.golden_slope = float(config.get('golden_slope', 0.05))
        self.golden_base_score = float(config.get('golden_base_score', 95))
        self.golden_slope_bonus_cap = float(config.get('golden_slope_bonus_cap', 3))
        self.golden_rvol_threshold = float(config.get('golden_rvol_threshold', 1.5))
        self.golden_rvol_bonus = float(config.get('golden_rvol_bonus', 2))
        self.momentum_base_score = float(config.get('momentum_base_score', 85))
        self.momentum_slope_bonus_cap = float(config.get('momentum_slope_bonus_cap', 5))
        self.support_band_pct = float(config.get('support_band_pct', 0.02))
        self.support_score = float(config.get('support_score', 80))
        self.exit_score = float(config.get('exit_score', 90))

    def classify(
        self,
        ticker: TickerSnapshot,
        levels: LevelSet,
        active_since: Optional[float] = None,
    ) -> Optional[Signal]:
        price = ticker.price
        slope = levels.normalized_slope

        if slope < -self.exit_slope:
            return Signal(
                SignalKind.EXIT,
                self.exit_score,
                f"Trend reversal: normalized VWAP slope {slope:.3f} below -{self.exit_slope:g}.",
                ticker,
                levels,
                active_since,
            )

        if price > levels.max and slope > self.golden_slope:
            score = self.golden_base_score + min(self.golden_slope_bonus_cap, slope * 10)
            if levels.relative_volume > self.golden_rvol_threshold:
                score += self.golden_rvol_bonus
            return Signal(
                SignalKind.GOLDEN,
                min(100.0, score),
                f"Breakout: ${_fmt(price)} above weekly VWAP max ${_fmt(levels.max)} "
                f"with slope {slope:.3f} (RVOL {levels.relative_volume:.1f}x).",
                ticker,
                levels,
                active_since,
            )

        if levels.mid < price <= levels.max and slope > 0:
            score = self.momentum_base_score + min(self.momentum_slope_bonus_cap, slope * 10)
            return Signal(
                SignalKind.MOMENTUM,
                score,
                f"Momentum: ${_fmt(price)} between live VWAP ${_fmt(levels.mid)} "
                f"and weekly max ${_fmt(levels.max)}.",
                ticker,
                levels,
                active_since,
            )

        if levels.mid > 0 and abs(price - levels.mid) / levels.mid <= self.support_band_pct and slope > 0:
            return Signal(
                SignalKind.SUPPORT,
                self.support_score,
                f"Support: ${_fmt(price)} holding within {self.support_band_pct:.0%} "
                f"of live VWAP ${_fmt(levels.mid)}.",
                ticker,
                levels,
                active_since,
            )

        return None


def sort_signals(signals: Iterable[Signal], key: str = 'score') -> List[Signal]:
    """EXIT signals first, then by score or by first-seen time, newest first."""
    if key not in ('score', 'time'):
        raise ValueError(f"Unknown sort key: {key}")

    def _rank(sig: Signal):
        exit_rank = 0 if sig.kind is SignalKind.EXIT else 1
        if key == 'score':
            return (exit_rank, -sig.score)
        return (exit_rank, -(sig.active_since or 0.0))

    return sorted(signals, key=_rank)
