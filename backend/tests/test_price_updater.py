import pytest

import portfolio_store
from cache import get_cached_data, set_cached_data
from config import CONFIG
from conftest import mk_response
from portfolio import Portfolio
from price_updater import LATEST_PRICES_KEY, PriceUpdater
from realtime import ConnectionRegistry


@pytest.fixture
def registry(recorder):
    return ConnectionRegistry(recorder)


@pytest.fixture
def updater(registry):
    u = PriceUpdater(registry)
    yield u
    u.stop()


def _store(user, *rows):
    p = Portfolio(user_id=user)
    for symbol, amount, price in rows:
        p.add_or_update_holding({'symbol': symbol, 'amount': amount, 'purchase_price': price})
    portfolio_store.save_portfolio(p)
    return p


def test_tracked_symbols_include_defaults(updater, monkeypatch):
    monkeypatch.setitem(CONFIG, 'DEFAULT_SYMBOLS', ['bitcoin'])
    _store('alice', ('SOL', 1, 100), ('BTC', 1, 1))
    assert updater.get_tracked_symbols() == ['bitcoin', 'solana']


def test_tracked_symbols_fallback_on_store_error(updater, monkeypatch):
    def broken():
        raise RuntimeError('db gone')
    monkeypatch.setattr(portfolio_store, 'tracked_symbols', broken)
    assert updater.get_tracked_symbols() == ['bitcoin', 'ethereum', 'cardano']


def test_update_cycle_caches_broadcasts_and_checks_alerts(updater, registry, recorder, upstream, coingecko_prices, monkeypatch):
    monkeypatch.setitem(CONFIG, 'DEFAULT_SYMBOLS', ['bitcoin', 'ethereum', 'cardano'])
    upstream.side_effect = None
    upstream.return_value = mk_response(coingecko_prices)
    registry.register('s1')
    registry.subscribe_portfolio('s1', 'alice', ['BTC'])
    registry.subscribe_alerts('s1', [{'symbol': 'BTC', 'type': 'above', 'targetPrice': 45000}])

    assert updater.update_all_prices() is True
    assert get_cached_data(LATEST_PRICES_KEY) == coingecko_prices
    assert list(recorder.events('priceUpdate', to='s1')[0]['data']['prices']) == ['bitcoin']
    assert recorder.events('priceAlert', to='s1')[0]['data']['alert']['message'] == 'BTC is now above $45000'
    stats = updater.get_stats()
    assert stats['updatesCompleted'] == 1
    assert stats['lastUpdate'] is not None
    assert stats['lastError'] is None
    assert stats['status'] == 'stopped'


def test_update_cycle_uses_mock_prices_when_offline(updater, monkeypatch):
    monkeypatch.setitem(CONFIG, 'DEFAULT_SYMBOLS', ['bitcoin'])
    assert updater.update_all_prices() is True
    cached = get_cached_data(LATEST_PRICES_KEY)
    assert set(cached) == {'bitcoin'}


def test_concurrent_cycle_is_skipped(updater, upstream):
    updater._update_lock.acquire()
    try:
        assert updater.is_updating is True
        assert updater.update_all_prices() is False
    finally:
        updater._update_lock.release()
    assert upstream.call_count == 0


def test_cycle_records_unexpected_errors(updater, monkeypatch):
    def boom(symbols):
        raise RuntimeError('exploded')
    monkeypatch.setattr(updater, 'fetch_prices', boom)
    assert updater.update_all_prices() is True
    assert updater.get_stats()['lastError'] == 'exploded'
    # lock is released again
    assert updater.is_updating is False


def test_portfolio_sync_needs_cached_prices(updater):
    _store('alice', ('BTC', 1, 40000))
    assert updater.update_portfolio_prices() == 0


def test_portfolio_sync_updates_and_notifies(updater, registry, recorder, coingecko_prices):
    _store('alice', ('BTC', 1, 40000))
    _store('bob', ('DOGE', 100, 0.1))
    registry.register('a1')
    registry.subscribe_portfolio('a1', 'alice', ['BTC'])
    set_cached_data(LATEST_PRICES_KEY, coingecko_prices)

    assert updater.update_portfolio_prices() == 1
    alice = portfolio_store.find_portfolio('alice')
    assert alice.holdings[0].current_price == 50000.0
    assert alice.total_current_value == 50000.0
    assert alice.total_profit_loss == 10000.0
    pushed = recorder.events('portfolioUpdate', to='a1')[0]['data']['portfolio']
    assert pushed['userId'] == 'alice'
    assert pushed['totalProfitLoss'] == 10000.0

    # unchanged prices do not rewrite portfolios
    assert updater.update_portfolio_prices() == 0
    assert updater.get_stats()['portfolioSyncs'] == 2


def test_get_current_price_prefers_cache(updater, upstream):
    set_cached_data(LATEST_PRICES_KEY, {'bitcoin': {'usd': 1.0}})
    assert updater.get_current_price('BTC') == {'usd': 1.0}
    assert upstream.call_count == 0
    # not cached: falls through to a fetch (mock when offline)
    assert updater.get_current_price('ETH')['usd'] > 0


def test_price_history_maps_symbol(updater, monkeypatch):
    import market_data
    calls = []
    monkeypatch.setattr(market_data, 'get_historical_data', lambda cid, days: calls.append((cid, days)) or {})
    updater.get_price_history('ETH', 30)
    assert calls == [('ethereum', 30)]


def test_manual_trigger(updater, monkeypatch, coingecko_prices, upstream):
    monkeypatch.setitem(CONFIG, 'DEFAULT_SYMBOLS', ['bitcoin'])
    upstream.side_effect = None
    upstream.return_value = mk_response(coingecko_prices)
    _store('alice', ('BTC', 1, 40000))
    assert updater.trigger_manual_update() == {'pricesUpdated': True, 'portfoliosUpdated': 1}


def test_start_stop_are_idempotent(updater, monkeypatch):
    monkeypatch.setitem(CONFIG, 'INITIAL_UPDATE_DELAY', 3600)
    assert updater.start() is True
    assert updater.start() is False
    assert updater.running
    assert updater.get_stats()['status'] == 'running'
    tags = {t for job in updater._scheduler.get_jobs() for t in job.tags}
    assert tags == {'prices', 'portfolios', 'housekeeping', 'initial'}
    assert updater.stop() is True
    assert updater.stop() is False
    assert updater.running is False


def test_reschedule_uses_new_interval(updater, monkeypatch):
    monkeypatch.setitem(CONFIG, 'INITIAL_UPDATE_DELAY', 3600)
    updater.start()
    monkeypatch.setitem(CONFIG, 'PRICE_UPDATE_INTERVAL', 120)
    updater.reschedule()
    job = updater._scheduler.get_jobs('prices')[0]
    assert job.interval == 120
    updater.stop()


def test_housekeeping_cleans_registry(updater, registry, monkeypatch):
    monkeypatch.setitem(CONFIG, 'CONNECTION_IDLE_TIMEOUT', 60)
    conn = registry.register('s1')
    conn.last_seen = 0
    assert updater._cleanup_connections() == 1
    assert PriceUpdater()._cleanup_connections() == 0


def test_portfolio_sync_keeps_holdings_added_mid_cycle(updater, client, coingecko_prices, monkeypatch):
    _store('demo-user', ('BTC', 1, 40000))
    set_cached_data(LATEST_PRICES_KEY, coingecko_prices)
    original = Portfolio.update_prices

    def add_eth_then_update(self, prices):
        r = client.post('/api/portfolio/holdings', json={'symbol': 'ETH', 'amount': 2, 'purchasePrice': 3000})
        assert r.status_code == 200
        return original(self, prices)
    monkeypatch.setattr(Portfolio, 'update_prices', add_eth_then_update)

    assert updater.update_portfolio_prices() == 1
    stored = portfolio_store.find_portfolio('demo-user')
    assert [h.symbol for h in stored.holdings] == ['BTC', 'ETH']
    assert stored.holdings[0].current_price == 50000.0
    # totals cover the holding added during the sync
    assert stored.total_invested == 46000.0


def test_update_holding_prices_on_missing_portfolio():
    assert portfolio_store.update_holding_prices('ghost', {'h1': 1.0}, '2024-01-01T00:00:00+00:00') is None
