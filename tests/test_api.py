import asyncio
import sys

sys.path.insert(0, '.')

from fastapi.testclient import TestClient

from api.fastapi_server import create_app
from orchestration.persistence import AUDIO_KEY, NOTIFICATION_KEY
from tests.market_fixtures import make_levels, make_ticker
from tests.test_orchestration import FakeLevels, _engine


def _engine_after_one_cycle():
    engine = _engine([make_ticker('A', 110.0)])
    engine.level_calculator = FakeLevels({'A': make_levels('A')})

    async def _run():
        await engine.ticker_service.refresh_once()
        await engine.signal_service.start_cycle()

    asyncio.run(_run())
    return engine


def test_health_and_root_without_running_engine():
    engine = _engine()
    with TestClient(create_app(engine)) as client:
        health = client.get('/health').json()
        assert health['status'] == 'healthy'
        assert health['engine_running'] is False
        assert client.get('/').json()['status'] == 'stopped'


def test_signals_levels_and_ledger_views():
    engine = _engine_after_one_cycle()
    with TestClient(create_app(engine)) as client:
        signals = client.get('/api/signals').json()
        assert signals['count'] == 1
        assert signals['signals'][0]['kind'] == 'GOLDEN'
        assert signals['signals'][0]['symbol'] == 'A'

        assert client.get('/api/signals', params={'sort': 'time'}).status_code == 200
        assert client.get('/api/signals', params={'sort': 'volume'}).status_code == 400

        levels = client.get('/api/levels').json()
        assert levels['levels']['A']['max'] == 100.0

        ledger = client.get('/api/ledger').json()
        assert len(ledger['entries']) == 1
        assert ledger['entries'][0]['entry_price'] == 110.0
        assert ledger['stats']['total_signals'] == 1


def test_stats_reset():
    engine = _engine_after_one_cycle()
    with TestClient(create_app(engine)) as client:
        stats = client.get('/api/stats').json()
        assert stats == {'total_signals': 1, 'success_count': 0, 'success_rate': 0.0}
        reset = client.post('/api/stats/reset').json()
        assert reset['total_signals'] == 0
        assert client.get('/api/ledger').json()['entries'] == []


def test_notification_config_update_keeps_token_when_omitted():
    engine = _engine()
    with TestClient(create_app(engine)) as client:
        assert client.get('/api/notifications/config').json()['bot_token'] == '***T'
        body = client.put('/api/notifications/config', json={'chat_ids': '5,6', 'enabled': False}).json()
        assert body == {'bot_token': '***T', 'chat_ids': '5,6', 'enabled': False}
        assert engine.store.get(NOTIFICATION_KEY) == {'bot_token': 'T', 'chat_ids': '5,6', 'enabled': False}

        assert client.post('/api/notifications/test').json() == {'sent': True}
        assert [chat for _, chat, _ in engine.dispatcher.transport.sent] == ['5', '6']


def test_audio_preference():
    engine = _engine()
    with TestClient(create_app(engine)) as client:
        assert client.get('/api/preferences/audio').json() == {'enabled': True}
        assert client.put('/api/preferences/audio', json={'enabled': False}).json() == {'enabled': False}
    assert engine.audio_enabled is False
    assert engine.store.get(AUDIO_KEY) == {'enabled': False}


def test_websocket_streams_latest_snapshot():
    engine = _engine_after_one_cycle()
    with TestClient(create_app(engine)) as client:
        with client.websocket_connect('/ws') as ws:
            message = ws.receive_json()
    assert message['type'] == 'snapshot'
    assert message['generation'] == 1
    assert message['signals'][0]['symbol'] == 'A'
