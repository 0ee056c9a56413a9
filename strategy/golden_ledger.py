import copy
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from ingest.market_types import TickerSnapshot
from .ledger_states import INVALIDATION_POLICIES, LedgerState, LedgerTransition, OpenState
from .signal_classifier import Signal, SignalKind


logger = logging.getLogger(__name__)


@dataclass
class TrackedSignal:
    symbol: str
    entry_price: float
    signal_time: float
    max_price_seen: float
    max_gain_pct: float
    last_price: float
    still_active: bool = True
    exit_price: Optional[float] = None
    exit_time: Optional[float] = None
    realized_pnl_pct: Optional[float] = None
    price_history: List[float] = field(default_factory=list)
    tp_hit: bool = False
    close_reason: Optional[str] = None

    @classmethod
    def open(cls, symbol: str, price: float, now: float) -> 'TrackedSignal':
        return cls(
            symbol=symbol,
            entry_price=price,
            signal_time=now,
            max_price_seen=price,
            max_gain_pct=0.0,
            last_price=price,
            price_history=[price],
        )

    @property
    def state(self) -> LedgerState:
        if self.exit_time is None:
            return LedgerState.OPEN
        return LedgerState.CLOSED_TP if self.tp_hit else LedgerState.CLOSED_INVALIDATED

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    def pnl_pct(self, price: Optional[float] = None) -> float:
        price = self.last_price if price is None else price
        return (price - self.entry_price) * 100.0 / self.entry_price

    def age(self, now: float) -> float:
        return now - self.signal_time

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'TrackedSignal':
        entry_price = float(data['entry_price'])
        if entry_price <= 0:
            raise ValueError(f"entry_price must be positive, got {entry_price}")
        exit_price = data.get('exit_price')
        exit_time = data.get('exit_time')
        realized = data.get('realized_pnl_pct')
        return cls(
            symbol=str(data['symbol']),
            entry_price=entry_price,
            signal_time=float(data['signal_time']),
            max_price_seen=float(data.get('max_price_seen', entry_price)),
            max_gain_pct=float(data.get('max_gain_pct', 0.0)),
            last_price=float(data.get('last_price', entry_price)),
            still_active=bool(data.get('still_active', exit_time is None)) and exit_time is None,
            exit_price=float(exit_price) if exit_price is not None else None,
            exit_time=float(exit_time) if exit_time is not None else None,
            realized_pnl_pct=float(realized) if realized is not None else None,
            price_history=[float(p) for p in data.get('price_history') or [entry_price]],
            tp_hit=bool(data.get('tp_hit', False)),
            close_reason=data.get('close_reason'),
        )


@dataclass
class GoldenStats:
    total_signals: int = 0
    success_count: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_signals <= 0:
            return 0.0
        return self.success_count * 100.0 / self.total_signals

    def to_dict(self) -> Dict:
        return {'total_signals': self.total_signals, 'success_count': self.success_count}

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'GoldenStats':
        if not isinstance(data, dict):
            return cls()
        try:
            return cls(
                total_signals=max(0, int(data.get('total_signals', 0))),
                success_count=max(0, int(data.get('success_count', 0))),
            )
        except (TypeError, ValueError):
            logger.warning("Discarding malformed golden stats record: %r", data)
            return cls()


@dataclass
class LedgerSnapshot:
    entries: List[TrackedSignal]
    stats: GoldenStats
    transitions: List[LedgerTransition] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'entries': [e.to_dict() for e in self.entries],
            'stats': {**self.stats.to_dict(), 'success_rate': self.stats.success_rate},
        }


class GoldenLedger:
    """Registry of GOLDEN signal occurrences and their realized outcome.

    One open entry per symbol at most. Entries close on take-profit or on the
    configured invalidation policy, and disappear once older than the
    retention window whether open or closed.
    """

    def __init__(self, config: Optional[Dict] = None, persistence=None, metrics=None):
        config = config or {}
        self.take_profit_pct = float(config.get('take_profit_pct', 4.0))
        self.retention_s = float(config.get('retention_hours', 24)) * 3600.0
        self.history_interval_s = float(config.get('history_interval_s', 600))
        self.history_max_points = int(config.get('history_max_points', 144))
        policy = str(config.get('invalidation_policy', 'none'))
        if policy not in INVALIDATION_POLICIES:
            raise ValueError(f"Unknown invalidation policy: {policy}")
        self.invalidation_policy = policy

        self.persistence = persistence
        self.metrics = metrics
        self.stats = GoldenStats()
        self._entries: List[TrackedSignal] = []
        # symbols closed while still GOLDEN; they reopen only after dropping out of GOLDEN once
        self._awaiting_rearm: Set[str] = set()

        self.state_map = {
            LedgerState.OPEN: OpenState,
        }

    def load(self, now: Optional[float] = None) -> None:
        if self.persistence is None:
            return
        now = time.time() if now is None else now
        entries: List[TrackedSignal] = []
        for raw in self.persistence.load_tracked():
            try:
                entry = TrackedSignal.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed tracked signal %r: %s", raw, exc)
                continue
            if entry.age(now) < self.retention_s:
                entries.append(entry)
        self._entries = entries
        self.stats = GoldenStats.from_dict(self.persistence.load_stats())
        self._awaiting_rearm = set(self.persistence.load_rearm())
        logger.info(
            "Restored %s tracked golden signals (%s total, %s successes)",
            len(entries),
            self.stats.total_signals,
            self.stats.success_count,
        )

    def entries(self, now: Optional[float] = None) -> List[TrackedSignal]:
        now = time.time() if now is None else now
        return [copy.deepcopy(e) for e in self._entries if e.age(now) < self.retention_s]

    def open_entries(self, now: Optional[float] = None) -> List[TrackedSignal]:
        return [e for e in self.entries(now) if e.is_open]

    def open_entry(self, symbol: str) -> Optional[TrackedSignal]:
        for entry in self._entries:
            if entry.symbol == symbol and entry.is_open:
                return entry
        return None

    def snapshot(self, now: Optional[float] = None, transitions: Optional[List[LedgerTransition]] = None) -> LedgerSnapshot:
        return LedgerSnapshot(
            entries=self.entries(now),
            stats=copy.copy(self.stats),
            transitions=list(transitions or []),
        )

    def reconcile(
        self,
        signals: Iterable[Signal],
        tickers: Iterable[TickerSnapshot],
        now: Optional[float] = None,
    ) -> LedgerSnapshot:
        now = time.time() if now is None else now
        transitions: List[LedgerTransition] = []
        self._purge_expired(now)

        by_symbol: Dict[str, Signal] = {}
        for sig in signals:
            by_symbol.setdefault(sig.symbol_id, sig)
        golden = [s for s in by_symbol.values() if s.kind is SignalKind.GOLDEN]
        golden_symbols = {s.symbol_id for s in golden}
        prices = {t.symbol: t for t in tickers}

        self._awaiting_rearm &= golden_symbols

        for sig in golden:
            symbol = sig.symbol_id
            if symbol in self._awaiting_rearm or self.open_entry(symbol) is not None:
                continue
            entry = TrackedSignal.open(symbol, sig.ticker.price, now)
            self._entries.append(entry)
            self.stats.total_signals += 1
            transitions.append(LedgerTransition(symbol, 'none', LedgerState.OPEN.value, 'golden'))
            if self.metrics is not None:
                self.metrics.record_golden_opened()
            logger.info("Tracking golden signal %s @ %s", symbol, entry.entry_price)

        for entry in self._entries:
            processor = self.state_map.get(entry.state)
            if processor is None:
                continue
            ticker = prices.get(entry.symbol)
            if ticker is None:
                # symbol left the feed; keep the entry frozen until it ages out
                continue
            transitions.extend(
                processor(entry, self).process(ticker.price, by_symbol.get(entry.symbol), now)
            )

        if self.metrics is not None:
            self.metrics.update_ledger_open(sum(1 for e in self._entries if e.is_open))
        self._persist()
        return self.snapshot(now, transitions)

    def reset(self, clear_entries: bool = True) -> None:
        self.stats = GoldenStats()
        if clear_entries:
            self._entries = []
            self._awaiting_rearm = set()
        logger.info("Golden ledger reset (entries cleared=%s)", clear_entries)
        self._persist()

    def _purge_expired(self, now: float) -> None:
        kept = [e for e in self._entries if e.age(now) < self.retention_s]
        expired = len(self._entries) - len(kept)
        if expired:
            logger.info("Expired %s tracked golden signals", expired)
        self._entries = kept

    def _mark_price(self, entry: TrackedSignal, price: float, now: float) -> float:
        pnl = entry.pnl_pct(price)
        entry.last_price = price
        entry.max_price_seen = max(entry.max_price_seen, price)
        entry.max_gain_pct = max(entry.max_gain_pct, pnl)
        if self._should_sample(entry, now):
            entry.price_history.append(price)
        return pnl

    def _should_sample(self, entry: TrackedSignal, now: float) -> bool:
        if len(entry.price_history) >= self.history_max_points:
            return False
        last_slot = entry.signal_time + (len(entry.price_history) - 1) * self.history_interval_s
        return now - last_slot >= self.history_interval_s

    def _close(
        self,
        entry: TrackedSignal,
        price: float,
        now: float,
        pnl: float,
        reason: str,
        transitions: List[LedgerTransition],
        signal: Optional[Signal],
    ) -> None:
        tp_hit = reason == 'take_profit'
        entry.still_active = False
        entry.exit_price = price
        entry.exit_time = now
        entry.realized_pnl_pct = pnl
        entry.tp_hit = tp_hit
        entry.close_reason = reason
        if tp_hit:
            self.stats.success_count += 1
        if signal is not None and signal.kind is SignalKind.GOLDEN:
            self._awaiting_rearm.add(entry.symbol)
        transitions.append(LedgerTransition(entry.symbol, LedgerState.OPEN.value, entry.state.value, reason))
        if self.metrics is not None:
            self.metrics.record_golden_closed(reason)
        logger.info(
            "Closed golden signal %s %s @ %s, PnL=%.2f%%",
            entry.symbol,
            reason.upper(),
            price,
            pnl,
        )

    def _persist(self) -> None:
        if self.persistence is None:
            return
        self.persistence.save_tracked([e.to_dict() for e in self._entries])
        self.persistence.save_stats(self.stats.to_dict())
        self.persistence.save_rearm(list(self._awaiting_rearm))
