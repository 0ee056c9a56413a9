import sys

sys.path.insert(0, '.')

import pytest

from api.metrics import MetricsCollector
from orchestration.persistence import (
    AUDIO_KEY,
    STATS_KEY,
    TRACKER_KEY,
    InMemoryStore,
    JsonFileStore,
    PersistenceCoordinator,
)
from strategy.golden_ledger import GoldenLedger
from strategy.signal_classifier import SignalKind
from tests.market_fixtures import make_signal, make_ticker


class BrokenStore:
    def get(self, key):
        raise OSError("disk gone")

    def set(self, key, value):
        raise OSError("disk full")


def test_json_file_store_round_trip(tmp_path):
    store = JsonFileStore(tmp_path / 'state')
    assert store.get('golden_stats') is None
    store.set('golden_stats', {'total_signals': 3, 'success_count': 1})
    assert (tmp_path / 'state' / 'golden_stats.json').exists()
    assert store.get('golden_stats') == {'total_signals': 3, 'success_count': 1}


def test_json_file_store_malformed_file_reads_as_missing(tmp_path):
    (tmp_path / 'golden_tracker.json').write_text('{not json')
    assert JsonFileStore(tmp_path).get('golden_tracker') is None


def test_json_file_store_rejects_path_keys(tmp_path):
    with pytest.raises(ValueError):
        JsonFileStore(tmp_path).set('../escape', 1)


def test_in_memory_store_returns_copies():
    store = InMemoryStore()
    value = {'items': [1, 2]}
    store.set('k', value)
    value['items'].append(3)
    assert store.get('k') == {'items': [1, 2]}
    assert store.get('missing') is None


def test_cold_start_defaults():
    coordinator = PersistenceCoordinator(InMemoryStore())
    assert coordinator.load_tracked() == []
    assert coordinator.load_rearm() == []
    assert coordinator.load_stats() is None
    assert coordinator.load_notification_config() is None
    assert coordinator.load_audio_enabled() is True


def test_malformed_records_fall_back_to_defaults():
    store = InMemoryStore()
    store.set(TRACKER_KEY, {'not': 'a list'})
    store.set(STATS_KEY, [1, 2])
    store.set(AUDIO_KEY, 'yes')
    coordinator = PersistenceCoordinator(store)
    assert coordinator.load_tracked() == []
    assert coordinator.load_stats() is None
    assert coordinator.load_audio_enabled(default=False) is False


def test_audio_preference_round_trip():
    store = InMemoryStore()
    coordinator = PersistenceCoordinator(store)
    assert coordinator.save_audio_enabled(False) is True
    assert coordinator.load_audio_enabled() is False


def test_store_failures_do_not_stop_the_ledger():
    metrics = MetricsCollector()
    coordinator = PersistenceCoordinator(BrokenStore(), metrics)
    ledger = GoldenLedger({}, coordinator, metrics)
    ledger.load(now=1000.0)
    snap = ledger.reconcile([make_signal(SignalKind.GOLDEN, 'A', 100.0)], [make_ticker('A', 100.0)], now=1000.0)
    assert len(snap.entries) == 1
    assert snap.stats.total_signals == 1
    assert metrics.registry.get_sample_value('persistence_failures_total', {'record': TRACKER_KEY}) >= 1.0
    assert coordinator.save_stats({'total_signals': 1, 'success_count': 0}) is False
