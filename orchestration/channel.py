import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from analytics.vwap_levels import LevelSet
from ingest.market_types import TickerSnapshot
from strategy.golden_ledger import LedgerSnapshot
from strategy.signal_classifier import Signal


logger = logging.getLogger(__name__)


@dataclass
class EngineSnapshot:
    generation: int
    tickers: List[TickerSnapshot]
    levels: Dict[str, LevelSet]
    signals: List[Signal]
    ledger: LedgerSnapshot
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'generation': self.generation,
            'created_at': self.created_at,
            'tickers': len(self.tickers),
            'signals': [s.to_dict() for s in self.signals],
            'ledger': self.ledger.to_dict(),
        }


class SnapshotChannel:
    """Latest-wins fan-out of engine snapshots.

    Every subscriber owns a queue of size one; a slow reader only ever sees the
    newest snapshot and never blocks the producer.
    """

    def __init__(self):
        self._latest: Optional[EngineSnapshot] = None
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def latest(self) -> Optional[EngineSnapshot]:
        return self._latest

    def publish(self, snapshot: EngineSnapshot) -> None:
        self._latest = snapshot
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(snapshot)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        if self._latest is not None:
            queue.put_nowait(self._latest)
        self._subscribers.add(queue)
        logger.debug("Snapshot subscriber added (%s total)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
