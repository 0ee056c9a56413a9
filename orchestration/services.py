import asyncio
import dataclasses
import logging
import time
from collections import Counter
from typing import Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from analytics.vwap_levels import LevelSet
from ingest.errors import SourceUnavailable
from ingest.market_types import TickerSnapshot
from monitoring.async_utils import chunked
from strategy.signal_classifier import Signal, SignalKind, sort_signals
from .channel import EngineSnapshot

if TYPE_CHECKING:
    from main import SignalEngine


logger = logging.getLogger(__name__)


class TickerRefreshService:
    def __init__(self, engine: 'SignalEngine'):
        self.engine = engine
        self.interval_s = float(engine.orchestration_cfg.get('ticker_interval_s', 60))
        self._run_task: Optional[asyncio.Task] = None

    async def start(self):
        if self._run_task is None:
            self._run_task = asyncio.create_task(self._run())

    async def stop(self):
        if self._run_task is not None:
            self._run_task.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)
            self._run_task = None

    async def refresh_once(self) -> bool:
        engine = self.engine
        try:
            tickers = await engine.ticker_source.fetch_tickers()
        except SourceUnavailable as exc:
            logger.warning("Ticker refresh failed, keeping %s previous tickers: %s", len(engine.tickers), exc)
            return False
        except Exception as exc:
            logger.error("Ticker refresh error, keeping %s previous tickers: %s", len(engine.tickers), exc, exc_info=True)
            return False
        engine.tickers = list(tickers)
        engine.metrics.update_tickers(len(engine.tickers))
        logger.debug("Ticker refresh: %s tickers", len(engine.tickers))
        return True

    async def _run(self):
        while self.engine.running:
            try:
                await asyncio.sleep(self.interval_s)
            except asyncio.CancelledError:
                break
            await self.refresh_once()


class SignalCycleService:
    """Level recomputation, classification, ledger reconciliation and alerting.

    Every started cycle takes a new generation number. A cycle checks its
    generation before each chunk of level fetches and gives up once a newer
    cycle exists; levels it already fetched stay merged in the engine's level
    store, its classification is dropped.
    """

    def __init__(self, engine: 'SignalEngine'):
        self.engine = engine
        cfg = engine.orchestration_cfg
        self.interval_s = float(cfg.get('signal_interval_s', 120))
        self.min_quote_volume = float(cfg.get('min_quote_volume', 500000))
        self.max_candidates = int(cfg.get('max_candidates', 150))
        self.chunk_size = int(cfg.get('chunk_size', 5))
        self.chunk_delay_s = float(cfg.get('chunk_delay_s', 0.6))

        self.generation = 0
        self._run_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self._first_seen: Dict[str, Tuple[SignalKind, float]] = {}

    async def start(self):
        if self._run_task is None:
            self._run_task = asyncio.create_task(self._run())

    async def stop(self):
        tasks = list(self._cycle_tasks)
        if self._run_task is not None:
            tasks.append(self._run_task)
            self._run_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._cycle_tasks.clear()

    async def _run(self):
        while self.engine.running:
            self.start_cycle()
            try:
                await asyncio.sleep(self.interval_s)
            except asyncio.CancelledError:
                break

    def start_cycle(self) -> asyncio.Task:
        self.generation += 1
        task = asyncio.create_task(self.run_cycle(self.generation))
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_done)
        return task

    def _cycle_done(self, task: asyncio.Task):
        self._cycle_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Signal cycle failed: %s", exc, exc_info=exc)

    def is_current(self, generation: int) -> bool:
        return generation == self.generation

    def select_candidates(self, tickers: List[TickerSnapshot]) -> List[TickerSnapshot]:
        liquid = [t for t in tickers if t.quote_volume_24h > self.min_quote_volume]
        return liquid[:self.max_candidates]

    async def compute_levels(self, candidates: List[TickerSnapshot], generation: int) -> Optional[Dict[str, LevelSet]]:
        engine = self.engine
        results: Dict[str, LevelSet] = {}
        for index, chunk in enumerate(chunked(candidates, self.chunk_size)):
            if index > 0:
                await asyncio.sleep(self.chunk_delay_s)
            if not self.is_current(generation):
                return None
            computed = await asyncio.gather(
                *(engine.level_calculator.compute_levels(t.symbol) for t in chunk),
                return_exceptions=True,
            )
            for ticker, levels in zip(chunk, computed):
                if isinstance(levels, BaseException):
                    logger.warning("Level computation failed for %s: %s", ticker.symbol, levels)
                    continue
                if levels is not None:
                    results[ticker.symbol] = levels
                    engine.levels[ticker.symbol] = levels
        if not self.is_current(generation):
            return None
        return results

    def classify(self, candidates: List[TickerSnapshot], levels: Dict[str, LevelSet], now: float) -> List[Signal]:
        classifier = self.engine.classifier
        signals: List[Signal] = []
        seen: Dict[str, Tuple[SignalKind, float]] = {}
        for ticker in candidates:
            lv = levels.get(ticker.symbol)
            if lv is None:
                continue
            sig = classifier.classify(ticker, lv)
            if sig is None:
                continue
            prev = self._first_seen.get(ticker.symbol)
            since = prev[1] if prev is not None and prev[0] is sig.kind else now
            seen[ticker.symbol] = (sig.kind, since)
            signals.append(dataclasses.replace(sig, active_since=since))
        self._first_seen = seen
        return sort_signals(signals, 'score')

    async def run_cycle(self, generation: int) -> Optional[EngineSnapshot]:
        engine = self.engine
        started = time.monotonic()
        tickers = list(engine.tickers)
        candidates = self.select_candidates(tickers)

        levels = await self.compute_levels(candidates, generation)
        if levels is None:
            engine.metrics.record_superseded_cycle()
            logger.info("Signal cycle %s superseded by cycle %s", generation, self.generation)
            return None

        now = time.time()
        signals = self.classify(candidates, levels, now)
        ledger_snapshot = engine.ledger.reconcile(signals, tickers, now)
        delivered = await engine.dispatcher.notify(signals)

        engine.signals = signals
        snapshot = EngineSnapshot(
            generation=generation,
            tickers=tickers,
            levels=dict(engine.levels),
            signals=signals,
            ledger=ledger_snapshot,
            created_at=now,
        )
        engine.channel.publish(snapshot)

        counts = Counter(s.kind.value for s in signals)
        engine.metrics.update_signals({k.value: counts.get(k.value, 0) for k in SignalKind})
        engine.metrics.observe_cycle(time.monotonic() - started)
        logger.info(
            "Signal cycle %s: %s candidates, %s levels, %s signals, %s alerts",
            generation,
            len(candidates),
            len(levels),
            len(signals),
            delivered,
        )
        return snapshot
