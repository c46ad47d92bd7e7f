import logging

from flask import Blueprint, current_app
from pydantic import ValidationError

import ai_insights
import market_data
import portfolio_store
from cache import generate_ai_cache_key, get_cached_data, set_cached_data, iso_now
from config import CONFIG
from extensions import current_user_id, fail, json_body, limiter, ok
from price_updater import LATEST_PRICES_KEY
from schemas import PredictionRequest, SymbolsRequest, validation_error_response

logger = logging.getLogger(__name__)

insights_bp = Blueprint('insights_bp', __name__, url_prefix='/api/ai-insights')

ANALYSIS_TTL = 300
SENTIMENT_TTL = 600
PREDICTION_TTL = 1800


def _ai_limit():
    return CONFIG['AI_RATELIMIT']


def analysis_key(user_id):
    return generate_ai_cache_key('portfolio-analysis', user_id)


def sentiment_key(symbols):
    return generate_ai_cache_key('market-sentiment', '-'.join(s.upper() for s in symbols))


def prediction_key(symbol):
    return generate_ai_cache_key('price-prediction', symbol.upper())


def market_data_for_holdings(holdings):
    """Per-holding market snapshot: cached latest prices, then the API, then the holding itself."""
    latest = get_cached_data(LATEST_PRICES_KEY) or {}
    missing = [h.coin_id for h in holdings if h.coin_id not in latest]
    fetched = market_data.get_prices_for_symbols(missing) if missing else {}
    rows = []
    for h in holdings:
        entry = latest.get(h.coin_id) or fetched.get(h.coin_id) or {}
        rows.append({
            'symbol': h.symbol,
            'currentPrice': entry.get('usd') or h.current_price or h.purchase_price,
            'priceChange24h': entry.get('usd_24h_change'),
            'volume24h': entry.get('usd_24h_vol'),
            'marketCap': entry.get('usd_market_cap'),
        })
    return rows


def _cached_reply(key):
    hit = get_cached_data(key)
    if hit is None:
        return None
    return ok(hit, cached=True)


@insights_bp.route('/portfolio-analysis', methods=['POST'])
@limiter.limit(_ai_limit)
def portfolio_analysis():
    user_id = current_user_id()
    key = analysis_key(user_id)
    try:
        cached = _cached_reply(key)
        if cached is not None:
            return cached
        portfolio = portfolio_store.find_portfolio(user_id)
        if portfolio is None or not portfolio.holdings:
            return fail('No portfolio data found', 400)
        holdings = [h.to_dict() for h in portfolio.holdings]
        analysis = ai_insights.generate_portfolio_analysis(holdings, market_data_for_holdings(portfolio.holdings))
        set_cached_data(key, analysis, ANALYSIS_TTL)
        realtime = current_app.extensions.get('realtime')
        if realtime is not None:
            realtime.broadcast_ai_insights(user_id, {'type': 'portfolio-analysis', 'content': analysis})
        return ok(analysis)
    except Exception as e:
        logger.error(f"Error generating portfolio analysis: {e}")
        return fail('Failed to generate portfolio analysis')


@insights_bp.route('/market-sentiment', methods=['POST'])
@limiter.limit(_ai_limit)
def market_sentiment():
    body = json_body()
    if not isinstance(body.get('symbols'), list):
        return fail('Symbols array is required', 400)
    try:
        symbols = SymbolsRequest.model_validate(body).symbols
    except ValidationError as e:
        err = validation_error_response(e)
        return fail(err['message'], 400, errors=err['errors'])
    key = sentiment_key(symbols)
    try:
        cached = _cached_reply(key)
        if cached is not None:
            return cached
        sentiment = ai_insights.generate_market_sentiment(symbols)
        set_cached_data(key, sentiment, SENTIMENT_TTL)
        return ok(sentiment)
    except Exception as e:
        logger.error(f"Error generating market sentiment: {e}")
        return fail('Failed to generate market sentiment')


@insights_bp.route('/price-predictions', methods=['POST'])
@limiter.limit(_ai_limit)
def price_predictions():
    body = json_body()
    if not body.get('symbol'):
        return fail('Symbol is required', 400)
    try:
        symbol = PredictionRequest.model_validate(body).symbol
    except ValidationError as e:
        err = validation_error_response(e)
        return fail(err['message'], 400, errors=err['errors'])
    key = prediction_key(symbol)
    try:
        cached = _cached_reply(key)
        if cached is not None:
            return cached
        history = current_app.extensions['price_updater'].get_price_history(symbol, 30)
        prices = history.get('prices') or []
        coin_data = {
            'symbol': symbol.upper(),
            'data': prices,
            'volumes': history.get('volumes') or [],
            'currentPrice': prices[-1]['price'] if prices else None,
            'priceChange': ((prices[-1]['price'] - prices[0]['price']) / prices[0]['price'] * 100)
            if len(prices) > 1 and prices[0]['price'] else 0,
        }
        prediction = ai_insights.generate_price_prediction(coin_data)
        set_cached_data(key, prediction, PREDICTION_TTL)
        return ok(prediction)
    except Exception as e:
        logger.error(f"Error generating price prediction: {e}")
        return fail('Failed to generate price prediction')


@insights_bp.route('/summary', methods=['GET'])
def insights_summary():
    user_id = current_user_id()
    try:
        portfolio = portfolio_store.find_portfolio(user_id)
        if portfolio is None or not portfolio.holdings:
            return ok({
                'hasPortfolio': False,
                'message': 'Add holdings to your portfolio to get AI insights',
            })
        symbols = [h.symbol for h in portfolio.holdings]
        return ok({
            'hasPortfolio': True,
            'portfolioAnalysis': get_cached_data(analysis_key(user_id)),
            'marketSentiment': get_cached_data(sentiment_key(symbols)),
            'lastUpdated': iso_now(),
        })
    except Exception as e:
        logger.error(f"Error getting AI insights summary: {e}")
        return fail('Failed to get AI insights summary')
