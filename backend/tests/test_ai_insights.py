from unittest.mock import MagicMock, patch

import pytest
import requests

import ai_insights
from config import CONFIG
from conftest import mk_response


def _completion(text):
    return mk_response({'choices': [{'message': {'content': text}}]})


@pytest.fixture
def live_key(monkeypatch):
    monkeypatch.setitem(CONFIG, 'OPENAI_API_KEY', 'sk-real-looking')


@pytest.mark.parametrize('key,stub,expected', [
    (None, False, True),
    ('', False, True),
    ('test', False, True),
    ('DUMMY', False, True),
    ('sk-abc', True, True),
    ('sk-abc', False, False),
])
def test_stub_mode(monkeypatch, key, stub, expected):
    monkeypatch.setitem(CONFIG, 'OPENAI_API_KEY', key)
    monkeypatch.setitem(CONFIG, 'OPENAI_STUB', stub)
    assert ai_insights.stub_mode() is expected


def test_stub_reply_never_calls_upstream():
    with patch('ai_insights.requests.post') as post:
        text = ai_insights.generate_market_sentiment(['BTC', 'ETH'])
    post.assert_not_called()
    assert text.startswith('[stub] Analyze the current market sentiment for these cryptocurrencies: BTC, ETH')


def test_chat_completion_payload(live_key, monkeypatch):
    monkeypatch.setitem(CONFIG, 'OPENAI_MODEL', 'gpt-test')
    with patch('ai_insights.requests.post', return_value=_completion('Bullish')) as post:
        out = ai_insights.generate_price_prediction({'symbol': 'BTC'})
    assert out == 'Bullish'
    kwargs = post.call_args.kwargs
    assert kwargs['headers']['Authorization'] == 'Bearer sk-real-looking'
    assert kwargs['json']['model'] == 'gpt-test'
    assert kwargs['json']['max_tokens'] == 600
    assert kwargs['json']['temperature'] == 0.5
    assert kwargs['json']['messages'][0]['role'] == 'system'
    assert 'not financial advice' in kwargs['json']['messages'][1]['content']


@pytest.mark.parametrize('response', [
    mk_response({'error': 'quota'}, status=429),
    mk_response({'choices': []}),
    mk_response({'choices': [{'message': {'content': ''}}]}),
])
def test_upstream_failures_degrade_to_fallback(live_key, response):
    with patch('ai_insights.requests.post', return_value=response):
        assert ai_insights.generate_portfolio_analysis([], {}) == ai_insights.PORTFOLIO_FALLBACK


def test_network_error_degrades_to_fallback(live_key):
    with patch('ai_insights.requests.post', side_effect=requests.exceptions.Timeout('slow')):
        assert ai_insights.generate_market_sentiment(['BTC']) == ai_insights.SENTIMENT_FALLBACK


def test_chat_completion_raises_for_callers(live_key):
    with patch('ai_insights.requests.post', return_value=MagicMock(status_code=500, text='boom')):
        with pytest.raises(ai_insights.AIInsightsError):
            ai_insights.chat_completion('sys', 'prompt', 10, 0.1)


# ---------------------------------------------------------------- routes

def _add_btc(client, user='demo-user'):
    client.post('/api/portfolio/holdings', json={'symbol': 'BTC', 'amount': 1, 'purchasePrice': 40000},
                headers={'X-User-Id': user})


def test_portfolio_analysis_requires_holdings(client):
    r = client.post('/api/ai-insights/portfolio-analysis')
    assert r.status_code == 400
    assert r.get_json()['message'] == 'No portfolio data found'


def test_portfolio_analysis_is_cached_and_pushed(client, app, live_key, monkeypatch):
    pushed = []
    monkeypatch.setattr(app.extensions['realtime'], 'broadcast_ai_insights',
                        lambda user, insights: pushed.append((user, insights)))
    _add_btc(client)
    with patch('ai_insights.requests.post', return_value=_completion('Diversify.')) as post:
        first = client.post('/api/ai-insights/portfolio-analysis').get_json()
        second = client.post('/api/ai-insights/portfolio-analysis').get_json()
    assert post.call_count == 1
    assert first == {'success': True, 'data': 'Diversify.'}
    assert second == {'success': True, 'data': 'Diversify.', 'cached': True}
    assert pushed == [('demo-user', {'type': 'portfolio-analysis', 'content': 'Diversify.'})]
    prompt = post.call_args.kwargs['json']['messages'][1]['content']
    assert '"symbol": "BTC"' in prompt


@pytest.mark.parametrize('body,message', [
    ({}, 'Symbols array is required'),
    ({'symbols': 'BTC'}, 'Symbols array is required'),
    ({'symbols': []}, 'Validation failed'),
    ({'symbols': ['BTC!']}, 'Validation failed'),
])
def test_market_sentiment_validation(client, body, message):
    r = client.post('/api/ai-insights/market-sentiment', json=body)
    assert r.status_code == 400
    assert r.get_json()['message'] == message


def test_market_sentiment_stub(client):
    r = client.post('/api/ai-insights/market-sentiment', json={'symbols': ['BTC', 'ETH']})
    assert r.status_code == 200
    assert r.get_json()['data'].startswith('[stub]')
    again = client.post('/api/ai-insights/market-sentiment', json={'symbols': ['btc', 'eth']}).get_json()
    assert again['cached'] is True


def test_price_predictions(client, app, monkeypatch):
    history = {
        'prices': [{'timestamp': 1, 'price': 100.0}, {'timestamp': 2, 'price': 110.0}],
        'volumes': [],
    }
    monkeypatch.setattr(app.extensions['price_updater'], 'get_price_history', lambda symbol, days: history)
    seen = []
    monkeypatch.setattr(ai_insights, 'generate_price_prediction', lambda data: seen.append(data) or 'Up only')
    assert client.post('/api/ai-insights/price-predictions', json={}).get_json()['message'] == 'Symbol is required'
    r = client.post('/api/ai-insights/price-predictions', json={'symbol': 'btc'})
    assert r.get_json()['data'] == 'Up only'
    assert seen[0]['symbol'] == 'BTC'
    assert seen[0]['currentPrice'] == 110.0
    assert seen[0]['priceChange'] == pytest.approx(10.0)


def test_insights_summary(client):
    assert client.get('/api/ai-insights/summary').get_json()['data']['hasPortfolio'] is False
    _add_btc(client)
    client.post('/api/ai-insights/market-sentiment', json={'symbols': ['BTC']})
    data = client.get('/api/ai-insights/summary').get_json()['data']
    assert data['hasPortfolio'] is True
    assert data['portfolioAnalysis'] is None
    assert data['marketSentiment'].startswith('[stub]')
