from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from .signal_classifier import Signal, SignalKind

if TYPE_CHECKING:
    from .golden_ledger import GoldenLedger, TrackedSignal


class LedgerState(Enum):
    OPEN = "open"
    CLOSED_TP = "closed_tp"
    CLOSED_INVALIDATED = "closed_invalidated"


INVALIDATION_POLICIES = ('none', 'exit_signal', 'not_golden')


@dataclass
class LedgerTransition:
    symbol: str
    from_state: str
    to_state: str
    reason: str


class LedgerStateProcessor(ABC):
    def __init__(self, entry: TrackedSignal, ledger: GoldenLedger):
        self.entry = entry
        self.ledger = ledger

    @abstractmethod
    def process(self, price: float, signal: Optional[Signal], now: float) -> List[LedgerTransition]:
        pass


class OpenState(LedgerStateProcessor):
    def process(self, price: float, signal: Optional[Signal], now: float) -> List[LedgerTransition]:
        transitions: List[LedgerTransition] = []
        pnl = self.ledger._mark_price(self.entry, price, now)

        if pnl >= self.ledger.take_profit_pct:
            self.ledger._close(self.entry, price, now, pnl, 'take_profit', transitions, signal)
            return transitions

        if self._invalidated(signal):
            self.ledger._close(self.entry, price, now, pnl, self.ledger.invalidation_policy, transitions, signal)
        return transitions

    def _invalidated(self, signal: Optional[Signal]) -> bool:
        policy = self.ledger.invalidation_policy
        if policy == 'exit_signal':
            return signal is not None and signal.kind is SignalKind.EXIT
        if policy == 'not_golden':
            return signal is None or signal.kind is not SignalKind.GOLDEN
        return False
