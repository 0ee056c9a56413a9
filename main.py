import asyncio
import logging
from typing import Dict, List, Optional

from analytics.vwap_levels import LevelCalculator, LevelSet
from api.alerts import AlertDispatcher
from api.metrics import MetricsCollector, start_metrics_server
from config import config
from config.utils import get_config_section
from ingest.candle_source import CandleSource
from ingest.market_types import TickerSnapshot
from ingest.rest_client import RESTClient
from ingest.ticker_source import TickerSource
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.channel import SnapshotChannel
from orchestration.persistence import JsonFileStore, KeyValueStore, PersistenceCoordinator
from orchestration.services import SignalCycleService, TickerRefreshService
from strategy.golden_ledger import GoldenLedger
from strategy.signal_classifier import Signal, SignalClassifier


logger = logging.getLogger(__name__)


class SignalEngine:
    """Owns every cache, store and subscriber list of one running engine."""

    def __init__(
        self,
        config_obj=None,
        store: Optional[KeyValueStore] = None,
        ticker_source=None,
        candle_source=None,
        transport=None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config_obj if config_obj is not None else config
        self.sources_cfg = get_config_section(self.config, 'sources')
        self.levels_cfg = get_config_section(self.config, 'levels')
        self.signals_cfg = get_config_section(self.config, 'signals')
        self.ledger_cfg = get_config_section(self.config, 'ledger')
        self.alerts_cfg = get_config_section(self.config, 'alerts')
        self.orchestration_cfg = get_config_section(self.config, 'orchestration')
        self.persistence_cfg = get_config_section(self.config, 'persistence')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')

        self.metrics = metrics or MetricsCollector()
        self.store = store if store is not None else JsonFileStore(self.persistence_cfg.get('directory', 'state'))
        self.persistence = PersistenceCoordinator(self.store, self.metrics)

        self._clients: List[RESTClient] = []
        quote_asset = self.sources_cfg.get('quote_asset', 'USDT')
        if ticker_source is None:
            primary = self._client(self.sources_cfg.get('primary_url', 'https://data-api.binance.vision'))
            secondary = self._client(self.sources_cfg.get('secondary_url', 'https://api.kucoin.com'))
            ticker_source = TickerSource(primary, secondary, self.sources_cfg, self.metrics)
        if candle_source is None:
            candle_client = self._client(self.sources_cfg.get('candle_url', 'https://data-api.binance.vision'))
            candle_source = CandleSource(candle_client, quote_asset, self.metrics)
        self.ticker_source = ticker_source
        self.candle_source = candle_source

        self.level_calculator = LevelCalculator(self.candle_source, self.levels_cfg, self.metrics)
        self.classifier = SignalClassifier(self.signals_cfg)
        self.ledger = GoldenLedger(self.ledger_cfg, self.persistence, self.metrics)
        self.dispatcher = AlertDispatcher(self.alerts_cfg, transport, self.persistence, self.metrics)
        self.channel = SnapshotChannel()

        self.tickers: List[TickerSnapshot] = []
        self.levels: Dict[str, LevelSet] = {}
        self.signals: List[Signal] = []
        self.audio_enabled = True
        self.running = False

        self.ticker_service = TickerRefreshService(self)
        self.signal_service = SignalCycleService(self)

    def _client(self, base_url: str) -> RESTClient:
        client = RESTClient(base_url)
        self._clients.append(client)
        return client

    def load_state(self):
        self.ledger.load()
        self.audio_enabled = self.persistence.load_audio_enabled()

    def set_audio_enabled(self, enabled: bool) -> bool:
        self.audio_enabled = bool(enabled)
        self.persistence.save_audio_enabled(self.audio_enabled)
        return self.audio_enabled

    async def initialize(self):
        self.load_state()
        await self.ticker_service.refresh_once()

    async def start(self):
        self.running = True
        await self.initialize()

        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(
                int(port),
                self.metrics.registry,
                port_scan_limit=int(self.monitoring_cfg.get('prometheus_port_scan', 0)),
                port_file=self.monitoring_cfg.get('prometheus_port_file'),
            )

        await self.ticker_service.start()
        await self.signal_service.start()
        tasks = [self.ticker_service._run_task, self.signal_service._run_task]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        self.running = False
        await self.ticker_service.stop()
        await self.signal_service.stop()
        await self.dispatcher.close()
        for client in self._clients:
            await client.close()
        self._clients = []
        logger.info("Signal engine stopped")


async def main():
    engine = SignalEngine(config)
    try:
        await engine.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Engine shutting down on interrupt")
        await engine.stop()

if __name__ == "__main__":
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    asyncio.run(main())
