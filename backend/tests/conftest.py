"""
Shared pytest fixtures for the portfolio tracker backend.
"""

import pytest
import requests
from unittest.mock import MagicMock

import cache as cache_mod
import market_data
from config import CONFIG


class RecordingSocketIO:
    """Stands in for flask_socketio.SocketIO; records every emit."""

    def __init__(self):
        self.emitted = []

    def emit(self, event, data=None, to=None):
        self.emitted.append({'event': event, 'data': data, 'to': to})

    def events(self, name, to=None):
        return [e for e in self.emitted if e['event'] == name and (to is None or e['to'] == to)]


def mk_response(payload, status=200):
    return MagicMock(status_code=status, json=lambda: payload, text=str(payload))


# ============================================================================
# Isolation
# ============================================================================

@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    monkeypatch.setitem(CONFIG, 'DB_PATH', str(tmp_path / 'portfolio.db'))
    monkeypatch.setitem(CONFIG, 'OPENAI_API_KEY', None)
    monkeypatch.setitem(CONFIG, 'OPENAI_STUB', False)
    monkeypatch.setitem(CONFIG, 'RATELIMIT_ENABLED', False)
    cache_mod.clear_cache()
    market_data.reset_state()
    yield
    cache_mod.clear_cache()
    market_data.reset_state()


@pytest.fixture(autouse=True)
def upstream(monkeypatch):
    """CoinGecko session mock; offline unless a test sets return_value/side_effect."""
    mock_get = MagicMock(side_effect=requests.exceptions.ConnectionError('offline'))
    monkeypatch.setattr(market_data._SESSION, 'get', mock_get)
    return mock_get


# ============================================================================
# App fixtures
# ============================================================================

@pytest.fixture
def app_and_socketio():
    import app as app_module
    app_module._ERROR_STATS['5xx'] = 0
    app, socketio = app_module.create_app({'TESTING': True, 'RATELIMIT_ENABLED': False})
    yield app, socketio
    app.extensions['price_updater'].stop()


@pytest.fixture
def app(app_and_socketio):
    return app_and_socketio[0]


@pytest.fixture
def client(app):
    with app.test_client() as c:
        yield c


@pytest.fixture
def recorder():
    return RecordingSocketIO()


@pytest.fixture
def coingecko_prices():
    return {
        'bitcoin': {'usd': 50000.0, 'usd_24h_change': 2.5, 'usd_24h_vol': 3.1e10, 'usd_market_cap': 9.8e11},
        'ethereum': {'usd': 3200.0, 'usd_24h_change': -12.345, 'usd_24h_vol': 1.5e10, 'usd_market_cap': 3.9e11},
        'cardano': {'usd': 0.45, 'usd_24h_change': 0.4, 'usd_24h_vol': 4.0e8, 'usd_market_cap': 1.6e10},
    }
