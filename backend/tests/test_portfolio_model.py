import pytest

from portfolio import Holding, Portfolio, default_settings, merge_settings


def _portfolio_with(*rows):
    p = Portfolio(user_id='test-user')
    for symbol, amount, price in rows:
        p.add_or_update_holding({'symbol': symbol, 'amount': amount, 'purchase_price': price})
    return p


def test_weighted_average_merge():
    p = _portfolio_with(('BTC', 1, 40000), ('BTC', 0.5, 50000))
    assert len(p.holdings) == 1
    h = p.holdings[0]
    assert h.amount == 1.5
    assert h.average_purchase_price == pytest.approx(43333.33, abs=0.01)
    # the first lot's purchase price is kept
    assert h.purchase_price == 40000


def test_symbol_normalised_and_name_defaults():
    p = _portfolio_with((' eth ', 2, 3000))
    h = p.holdings[0]
    assert h.symbol == 'ETH'
    assert h.name == 'ETH'
    assert h.coin_id == 'ethereum'


def test_holding_virtuals_fall_back_to_purchase_price():
    h = Holding(symbol='ADA', amount=100, purchase_price=0.5)
    assert h.current_value == 50
    assert h.profit_loss == 0
    h.current_price = 0.75
    assert h.current_value == 75
    assert h.profit_loss == pytest.approx(25)
    assert h.profit_loss_percentage == pytest.approx(50)


def test_zero_average_price_has_zero_percentage():
    h = Holding(symbol='AIRDROP', amount=10, purchase_price=0, current_price=3)
    assert h.profit_loss_percentage == 0


def test_negative_amount_rejected():
    with pytest.raises(ValueError):
        Holding(symbol='BTC', amount=-1)


def test_update_metrics_totals():
    p = _portfolio_with(('BTC', 1, 40000), ('ETH', 10, 2000))
    p.update_prices({'bitcoin': {'usd': 50000}, 'ethereum': {'usd': 1500}})
    p.update_metrics()
    assert p.total_invested == 60000
    assert p.total_current_value == 65000
    assert p.total_profit_loss == 5000
    assert p.total_profit_loss_percentage == pytest.approx(8.3333, rel=1e-3)
    assert p.portfolio_metrics()['holdings_count'] == 2


def test_update_prices_reports_changes_only():
    p = _portfolio_with(('BTC', 1, 40000))
    assert p.update_prices({'bitcoin': {'usd': 41000}}) is True
    assert p.update_prices({'bitcoin': {'usd': 41000}}) is False
    # unknown ids and entries without usd are ignored
    assert p.update_prices({'dogecoin': {'usd': 1}, 'bitcoin': {'eur': 3}}) is False
    assert p.holdings[0].current_price == 41000


def test_update_holding_resets_average():
    p = _portfolio_with(('BTC', 1, 40000), ('BTC', 1, 60000))
    hid = p.holdings[0].id
    h = p.update_holding(hid, amount=3, purchase_price=45000)
    assert h.amount == 3
    assert h.purchase_price == 45000
    assert h.average_purchase_price == 45000
    assert p.update_holding('missing', amount=1) is None


def test_remove_holding():
    p = _portfolio_with(('BTC', 1, 40000), ('ETH', 1, 2000))
    assert p.remove_holding(p.holdings[0].id) is True
    assert [h.symbol for h in p.holdings] == ['ETH']
    assert p.remove_holding('nope') is False
    assert p.total_invested == 2000


def test_performers_ignore_unpriced_holdings():
    p = _portfolio_with(('BTC', 1, 40000), ('ETH', 1, 2000), ('DOT', 1, 10))
    p.update_prices({'bitcoin': {'usd': 48000}, 'ethereum': {'usd': 1000}})
    assert [h.symbol for h in p.top_performers()] == ['BTC', 'ETH']
    assert [h.symbol for h in p.worst_performers(1)] == ['ETH']


def test_allocation_sorted_by_percentage():
    p = _portfolio_with(('BTC', 1, 300), ('ETH', 1, 100))
    alloc = p.allocation()
    assert [a['symbol'] for a in alloc] == ['BTC', 'ETH']
    assert alloc[0]['percentage'] == pytest.approx(75)
    assert Portfolio(user_id='empty').allocation() == []


def test_summary_formats_performance():
    p = _portfolio_with(('BTC', 1, 40000), ('ETH', 1, 2000))
    p.update_prices({'bitcoin': {'usd': 50000}, 'ethereum': {'usd': 1500}})
    s = p.summary()
    assert s['totalHoldings'] == 2
    assert s['totalValue'] == 51500
    assert s['topPerformer'] == {'symbol': 'BTC', 'performance': '25.00'}
    assert s['worstPerformer'] == {'symbol': 'ETH', 'performance': '-25.00'}
    empty = Portfolio(user_id='x').summary()
    assert empty['topPerformer'] is None and empty['worstPerformer'] is None


def test_to_dict_is_camel_case():
    p = _portfolio_with(('BTC', 1, 40000))
    d = p.to_dict()
    assert d['userId'] == 'test-user'
    assert d['holdings'][0]['averagePurchasePrice'] == 40000
    assert d['portfolioMetrics']['holdingsCount'] == 1
    assert d['settings']['notifications'] == {'priceAlerts': True, 'portfolioUpdates': True, 'aiInsights': False}
    assert d['metadata']['version'] == '1.0.0'


def test_merge_settings_is_deep_and_skips_none():
    merged = merge_settings(default_settings(), {'currency': 'EUR', 'display': {'refreshInterval': 60, 'language': None}})
    assert merged['currency'] == 'EUR'
    assert merged['display'] == {'language': 'en', 'refreshInterval': 60}
    assert merged['privacy']['sharePortfolio'] is False
