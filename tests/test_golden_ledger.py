import sys

sys.path.insert(0, '.')

import pytest

from orchestration.persistence import InMemoryStore, PersistenceCoordinator, TRACKER_KEY
from strategy.golden_ledger import GoldenLedger, TrackedSignal
from strategy.ledger_states import LedgerState
from strategy.signal_classifier import SignalKind
from tests.market_fixtures import make_signal, make_ticker

T0 = 1_700_000_000.0
HOUR = 3600.0


def _ledger(store=None, **config):
    persistence = PersistenceCoordinator(store or InMemoryStore())
    return GoldenLedger(config, persistence)


def _open_at(ledger, price=100.0, now=T0, symbol='A'):
    return ledger.reconcile([make_signal(SignalKind.GOLDEN, symbol, price)], [make_ticker(symbol, price)], now=now)


def test_golden_signal_opens_entry():
    ledger = _ledger()
    snap = _open_at(ledger, 110.0)
    assert len(snap.entries) == 1
    entry = snap.entries[0]
    assert entry.symbol == 'A'
    assert entry.entry_price == 110.0
    assert entry.signal_time == T0
    assert entry.state is LedgerState.OPEN
    assert snap.stats.total_signals == 1
    assert [t.to_state for t in snap.transitions] == ['open']


def test_reconcile_is_idempotent():
    ledger = _ledger()
    first = _open_at(ledger, 110.0)
    second = _open_at(ledger, 110.0)
    assert [e.to_dict() for e in first.entries] == [e.to_dict() for e in second.entries]
    assert second.stats.total_signals == 1
    assert second.transitions == []


def test_take_profit_boundary_closes_at_exactly_four_percent():
    ledger = _ledger()
    _open_at(ledger, 100.0)
    snap = ledger.reconcile([], [make_ticker('A', 104.0)], now=T0 + 60)
    entry = snap.entries[0]
    assert entry.state is LedgerState.CLOSED_TP
    assert entry.tp_hit is True
    assert entry.still_active is False
    assert entry.realized_pnl_pct == 4.0
    assert entry.exit_price == 104.0
    assert entry.exit_time == T0 + 60
    assert snap.stats.success_count == 1
    assert snap.stats.success_rate == 100.0


def test_take_profit_not_reached_just_below_threshold():
    ledger = _ledger()
    _open_at(ledger, 100.0)
    snap = ledger.reconcile([], [make_ticker('A', 103.99)], now=T0 + 60)
    entry = snap.entries[0]
    assert entry.is_open
    assert entry.last_price == 103.99
    assert entry.max_gain_pct == pytest.approx(3.99)
    assert snap.stats.success_count == 0


def test_max_gain_tracks_best_price():
    ledger = _ledger()
    _open_at(ledger, 100.0)
    ledger.reconcile([], [make_ticker('A', 103.0)], now=T0 + 60)
    snap = ledger.reconcile([], [make_ticker('A', 98.0)], now=T0 + 120)
    entry = snap.entries[0]
    assert entry.max_price_seen == 103.0
    assert entry.max_gain_pct == pytest.approx(3.0)
    assert entry.pnl_pct() == pytest.approx(-2.0)


def test_entries_older_than_retention_are_purged():
    ledger = _ledger()
    _open_at(ledger, 100.0)
    snap = ledger.reconcile([], [make_ticker('A', 101.0)], now=T0 + 25 * HOUR)
    assert snap.entries == []
    assert ledger.entries(now=T0 + 25 * HOUR) == []
    assert ledger.open_entry('A') is None


def test_missing_ticker_leaves_entry_frozen():
    ledger = _ledger()
    _open_at(ledger, 100.0)
    snap = ledger.reconcile([], [make_ticker('B', 50.0)], now=T0 + 3 * HOUR)
    entry = snap.entries[0]
    assert entry.last_price == 100.0
    assert entry.price_history == [100.0]
    assert entry.is_open


def test_price_history_sampled_every_interval():
    ledger = _ledger(history_interval_s=600, history_max_points=3)
    _open_at(ledger, 100.0)
    ledger.reconcile([], [make_ticker('A', 101.0)], now=T0 + 300)
    assert ledger.open_entry('A').price_history == [100.0]
    ledger.reconcile([], [make_ticker('A', 102.0)], now=T0 + 600)
    ledger.reconcile([], [make_ticker('A', 102.5)], now=T0 + 900)
    assert ledger.open_entry('A').price_history == [100.0, 102.0]
    ledger.reconcile([], [make_ticker('A', 101.5)], now=T0 + 1200)
    ledger.reconcile([], [make_ticker('A', 101.0)], now=T0 + 1800)
    assert ledger.open_entry('A').price_history == [100.0, 102.0, 101.5]


def test_persist_and_reload_round_trip():
    store = InMemoryStore()
    ledger = _ledger(store)
    _open_at(ledger, 100.0, symbol='A')
    _open_at(ledger, 50.0, now=T0 + 60, symbol='B')
    ledger.reconcile([], [make_ticker('A', 104.5), make_ticker('B', 51.0)], now=T0 + 120)

    stale = TrackedSignal.open('OLD', 10.0, T0 - 25 * HOUR).to_dict()
    store.set(TRACKER_KEY, store.get(TRACKER_KEY) + [stale])

    restored = _ledger(store)
    restored.load(now=T0 + 180)
    before = {e.symbol: e.to_dict() for e in ledger.entries(now=T0 + 180)}
    after = {e.symbol: e.to_dict() for e in restored.entries(now=T0 + 180)}
    assert after == before
    assert 'OLD' not in after
    assert restored.stats.to_dict() == {'total_signals': 2, 'success_count': 1}


def test_load_skips_malformed_records():
    store = InMemoryStore()
    store.set(TRACKER_KEY, [{'symbol': 'X'}, {'symbol': 'Y', 'entry_price': 0, 'signal_time': T0}, 'junk'])
    ledger = _ledger(store)
    ledger.load(now=T0)
    assert ledger.entries(now=T0) == []
    assert ledger.stats.total_signals == 0


def test_closed_symbol_waits_for_rearm():
    ledger = _ledger()
    _open_at(ledger, 100.0)
    golden_high = [make_signal(SignalKind.GOLDEN, 'A', 105.0)]
    ledger.reconcile(golden_high, [make_ticker('A', 105.0)], now=T0 + 60)
    assert ledger.open_entry('A') is None

    snap = ledger.reconcile(golden_high, [make_ticker('A', 105.0)], now=T0 + 120)
    assert snap.stats.total_signals == 1
    assert len(snap.entries) == 1

    ledger.reconcile([], [make_ticker('A', 103.0)], now=T0 + 180)
    snap = ledger.reconcile([make_signal(SignalKind.GOLDEN, 'A', 106.0)], [make_ticker('A', 106.0)], now=T0 + 240)
    assert snap.stats.total_signals == 2
    assert ledger.open_entry('A').entry_price == 106.0


def test_rearm_state_survives_restart():
    store = InMemoryStore()
    ledger = _ledger(store)
    _open_at(ledger, 100.0, symbol='A')
    _open_at(ledger, 50.0, symbol='B')
    ledger.reconcile(
        [make_signal(SignalKind.GOLDEN, 'A', 105.0)],
        [make_ticker('A', 105.0), make_ticker('B', 52.5)],
        now=T0 + 60,
    )
    assert ledger.open_entry('A') is None
    assert ledger.open_entry('B') is None

    restored = _ledger(store)
    restored.load(now=T0 + 120)
    snap = restored.reconcile(
        [make_signal(SignalKind.GOLDEN, 'A', 106.0), make_signal(SignalKind.GOLDEN, 'B', 53.0)],
        [make_ticker('A', 106.0), make_ticker('B', 53.0)],
        now=T0 + 120,
    )
    # A closed while GOLDEN and still waits; B closed after leaving GOLDEN and reopens
    assert restored.open_entry('A') is None
    assert restored.open_entry('B').entry_price == 53.0
    assert snap.stats.total_signals == 3


def test_exit_signal_policy_invalidates_entry():
    ledger = _ledger(invalidation_policy='exit_signal')
    _open_at(ledger, 100.0)
    snap = ledger.reconcile([make_signal(SignalKind.EXIT, 'A', 98.0, score=90)], [make_ticker('A', 98.0)], now=T0 + 60)
    entry = snap.entries[0]
    assert entry.state is LedgerState.CLOSED_INVALIDATED
    assert entry.tp_hit is False
    assert entry.realized_pnl_pct == pytest.approx(-2.0)
    assert entry.close_reason == 'exit_signal'
    assert snap.stats.success_count == 0


def test_default_policy_ignores_exit_signal():
    ledger = _ledger()
    _open_at(ledger, 100.0)
    snap = ledger.reconcile([make_signal(SignalKind.EXIT, 'A', 98.0)], [make_ticker('A', 98.0)], now=T0 + 60)
    assert snap.entries[0].is_open


def test_take_profit_has_precedence_over_invalidation():
    ledger = _ledger(invalidation_policy='not_golden')
    _open_at(ledger, 100.0)
    snap = ledger.reconcile([], [make_ticker('A', 105.0)], now=T0 + 60)
    entry = snap.entries[0]
    assert entry.state is LedgerState.CLOSED_TP
    assert snap.stats.success_count == 1


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        GoldenLedger({'invalidation_policy': 'trailing'})


def test_reset_clears_stats_and_entries():
    store = InMemoryStore()
    ledger = _ledger(store)
    _open_at(ledger, 100.0)
    ledger.reset()
    assert ledger.stats.total_signals == 0
    assert ledger.entries(now=T0) == []
    assert store.get(TRACKER_KEY) == []


def test_reset_can_keep_entries():
    ledger = _ledger()
    _open_at(ledger, 100.0)
    ledger.reset(clear_entries=False)
    assert ledger.stats.total_signals == 0
    assert len(ledger.entries(now=T0)) == 1
