from types import SimpleNamespace

from flask import Flask, jsonify

import cache as cache_mod
from cache import (
    MemoryCache, cached_json, generate_cache_key, generate_price_cache_key,
    generate_portfolio_cache_key, generate_ai_cache_key, invalidate_pattern,
    invalidate_portfolio_cache, invalidate_price_cache, invalidate_user_cache,
    set_cached_data, get_cached_data,
)


def test_set_get_and_lazy_expiry(monkeypatch):
    c = MemoryCache()
    now = [1000.0]
    monkeypatch.setattr(cache_mod, 'time', SimpleNamespace(time=lambda: now[0]))
    c.set('k', {'a': 1}, ttl=10)
    assert c.get('k') == {'a': 1}
    assert c.has('k')
    now[0] += 11
    assert c.get('k') is None
    # expired read removes the entry
    assert c.size() == 0


def test_stats_and_cleanup(monkeypatch):
    c = MemoryCache()
    now = [0.0]
    monkeypatch.setattr(cache_mod, 'time', SimpleNamespace(time=lambda: now[0]))
    c.set('short', 'x', ttl=1)
    c.set('long', 'y', ttl=100)
    now[0] = 5
    stats = c.stats()
    assert stats['totalKeys'] == 2
    assert stats['validKeys'] == 1
    assert stats['expiredKeys'] == 1
    assert stats['totalSizeBytes'] > 0
    assert c.cleanup() == 1
    assert c.keys() == ['long']


def test_delete_and_clear():
    c = MemoryCache()
    c.set('a', 1)
    c.set('b', 2)
    c.delete('a')
    c.delete('missing')
    assert c.keys() == ['b']
    c.clear()
    assert c.size() == 0


def test_key_generators():
    assert generate_cache_key('a', 1, 'b') == 'a:1:b'
    assert generate_price_cache_key('ethereum', 'bitcoin') == 'prices:bitcoin-ethereum'
    assert generate_portfolio_cache_key('u1', 'summary') == 'portfolio:u1:summary'
    assert generate_ai_cache_key('market-sentiment', 'BTC') == 'ai:market-sentiment:BTC'


def test_invalidation_by_pattern():
    set_cached_data('portfolio:u1:summary', 1)
    set_cached_data('portfolio:u2:summary', 2)
    set_cached_data('prices:bitcoin', 3)
    assert invalidate_portfolio_cache('u1') == 1
    assert get_cached_data('portfolio:u2:summary') == 2
    assert invalidate_price_cache() == 1
    assert invalidate_pattern('nothing-matches') == 0


def test_user_invalidation_spares_longer_ids():
    set_cached_data('portfolio:bob:summary', 1)
    set_cached_data('portfolio:bobby:summary', 2)
    set_cached_data('user:bob', 3)
    set_cached_data('user:bobby:prefs', 4)
    assert invalidate_portfolio_cache('bob') == 1
    assert get_cached_data('portfolio:bobby:summary') == 2
    assert invalidate_user_cache('bob') == 1
    assert get_cached_data('user:bobby:prefs') == 4


def test_helpers_swallow_cache_errors(monkeypatch):
    def boom(*a, **k):
        raise RuntimeError('broken')
    monkeypatch.setattr(cache_mod.cache, 'set', boom)
    monkeypatch.setattr(cache_mod.cache, 'get', boom)
    assert set_cached_data('k', 1) is False
    assert get_cached_data('k') is None


def test_cached_json_decorator_marks_hits():
    app = Flask(__name__)
    calls = {'n': 0}

    @app.route('/thing')
    @cached_json(ttl=60)
    def thing():
        calls['n'] += 1
        return jsonify({'success': True, 'data': calls['n']})

    @app.route('/broken')
    @cached_json(ttl=60)
    def broken():
        return jsonify({'success': False}), 500

    c = app.test_client()
    first = c.get('/thing?x=1').get_json()
    second = c.get('/thing?x=1').get_json()
    assert first == {'success': True, 'data': 1}
    assert second['cached'] is True
    assert second['data'] == 1
    assert second['cacheKey'] == 'GET:/thing?x=1'
    # a different query string is a different key
    assert c.get('/thing?x=2').get_json()['data'] == 2
    c.get('/broken')
    assert get_cached_data('GET:/broken') is None
