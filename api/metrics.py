import errno
import logging
from pathlib import Path
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)


class MetricsCollector:
    """Prometheus instruments for one engine instance.

    Each collector owns its registry so that several engines (or tests) can
    coexist in one process without duplicate-series errors.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        reg = self.registry

        self.ticker_fetches = Counter(
            'ticker_fetches_total', 'Ticker fetch attempts', ['source', 'outcome'], registry=reg
        )
        self.parse_failures = Counter(
            'parse_failures_total', 'Provider records skipped on validation failure', ['record'], registry=reg
        )
        self.tickers_tracked = Gauge('tickers_tracked', 'Tickers in the latest snapshot', registry=reg)

        self.level_fetches = Counter('level_fetches_total', 'Level computations', ['outcome'], registry=reg)
        self.current_signals = Gauge('current_signals', 'Signals emitted in the last cycle', ['kind'], registry=reg)

        self.golden_opened = Counter('golden_signals_opened_total', 'Tracked golden signals opened', registry=reg)
        self.golden_closed = Counter('golden_signals_closed_total', 'Tracked golden signals closed', ['reason'], registry=reg)
        self.ledger_open = Gauge('ledger_open_entries', 'Open tracked golden signals', registry=reg)

        self.alerts_sent = Counter('alerts_sent_total', 'Notifications accepted', ['kind'], registry=reg)
        self.alert_failures = Counter('alert_failures_total', 'Notifications rejected by every recipient', ['kind'], registry=reg)

        self.cycle_duration = Histogram(
            'signal_cycle_duration_seconds',
            'Duration of a full level/classify/reconcile cycle',
            buckets=(1, 5, 10, 20, 30, 60, 120, 300),
            registry=reg,
        )
        self.cycles_superseded = Counter('signal_cycles_superseded_total', 'Cycles abandoned for a newer one', registry=reg)
        self.persistence_failures = Counter(
            'persistence_failures_total', 'State store read/write failures', ['record'], registry=reg
        )

    def record_ticker_fetch(self, source: str, outcome: str):
        self.ticker_fetches.labels(source=source, outcome=outcome).inc()

    def record_parse_failure(self, record: str, count: int = 1):
        if count > 0:
            self.parse_failures.labels(record=record).inc(count)

    def update_tickers(self, count: int):
        self.tickers_tracked.set(count)

    def record_level_fetch(self, outcome: str):
        self.level_fetches.labels(outcome=outcome).inc()

    def update_signals(self, signals_by_kind: Dict[str, int]):
        for kind, count in signals_by_kind.items():
            self.current_signals.labels(kind=kind).set(count)

    def record_golden_opened(self):
        self.golden_opened.inc()

    def record_golden_closed(self, reason: str):
        self.golden_closed.labels(reason=reason).inc()

    def update_ledger_open(self, count: int):
        self.ledger_open.set(count)

    def record_alert(self, kind: str, delivered: bool):
        if delivered:
            self.alerts_sent.labels(kind=kind).inc()
        else:
            self.alert_failures.labels(kind=kind).inc()

    def observe_cycle(self, seconds: float):
        self.cycle_duration.observe(seconds)

    def record_superseded_cycle(self):
        self.cycles_superseded.inc()

    def record_persistence_failure(self, record: str):
        self.persistence_failures.labels(record=record).inc()


def _write_port_file(port_file: Optional[Path], port: int) -> None:
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


def start_metrics_server(
    port: int,
    registry: CollectorRegistry,
    port_scan_limit: int = 0,
    port_file: Optional[str] = None,
) -> int:
    """Serve ``registry`` on the first free port in ``port..port+port_scan_limit``."""
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate, registry=registry)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _write_port_file(Path(port_file) if port_file else None, candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(
        f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
    ) from last_error
