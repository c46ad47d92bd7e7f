import sqlite3

import portfolio_store
from config import CONFIG
from portfolio import Portfolio


def test_find_or_create_persists_new_portfolio():
    assert portfolio_store.find_portfolio('alice') is None
    created = portfolio_store.find_or_create_portfolio('alice')
    assert created.user_id == 'alice'
    again = portfolio_store.find_or_create_portfolio('alice')
    assert again.created_at == created.created_at
    assert len(portfolio_store.list_portfolios()) == 1


def test_save_round_trips_holdings_in_order():
    p = Portfolio(user_id='bob')
    p.add_or_update_holding({'symbol': 'ETH', 'amount': 2, 'purchase_price': 3000, 'tags': ['core']})
    p.add_or_update_holding({'symbol': 'BTC', 'amount': 1, 'purchase_price': 40000, 'notes': 'cold wallet'})
    p.settings['currency'] = 'EUR'
    portfolio_store.save_portfolio(p)

    loaded = portfolio_store.find_portfolio('bob')
    assert [h.symbol for h in loaded.holdings] == ['ETH', 'BTC']
    assert loaded.holdings[0].tags == ['core']
    assert loaded.holdings[1].notes == 'cold wallet'
    assert loaded.holdings[1].id == p.holdings[1].id
    assert loaded.settings['currency'] == 'EUR'
    assert loaded.total_invested == 46000


def test_save_replaces_removed_holdings():
    p = Portfolio(user_id='carol')
    p.add_or_update_holding({'symbol': 'BTC', 'amount': 1, 'purchase_price': 1})
    p.add_or_update_holding({'symbol': 'ADA', 'amount': 1, 'purchase_price': 1})
    portfolio_store.save_portfolio(p)
    p.remove_holding(p.holdings[0].id)
    portfolio_store.save_portfolio(p)
    assert [h.symbol for h in portfolio_store.find_portfolio('carol').holdings] == ['ADA']


def test_tracked_symbols_are_coin_ids():
    for user, symbol in (('u1', 'BTC'), ('u2', 'btc'), ('u2', 'LINK'), ('u3', 'somecoin')):
        p = portfolio_store.find_or_create_portfolio(user)
        p.add_or_update_holding({'symbol': symbol, 'amount': 1, 'purchase_price': 1})
        portfolio_store.save_portfolio(p)
    assert portfolio_store.tracked_symbols() == ['bitcoin', 'chainlink', 'somecoin']


def test_database_uses_wal():
    portfolio_store.ensure_db()
    conn = sqlite3.connect(CONFIG['DB_PATH'])
    try:
        assert conn.execute('PRAGMA journal_mode').fetchone()[0].lower() == 'wal'
    finally:
        conn.close()


def test_delete_all():
    portfolio_store.find_or_create_portfolio('dave')
    portfolio_store.delete_all()
    assert portfolio_store.list_portfolios() == []
