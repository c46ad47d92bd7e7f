import logging

from flask import Blueprint, current_app, request
from pydantic import ValidationError

import market_data
from cache import cached_json
from extensions import fail, ok
from schemas import CoinIdParam, MarketDataQuery, validation_error_response

logger = logging.getLogger(__name__)

market_bp = Blueprint('market_bp', __name__, url_prefix='/api/market-data')


def _query(**fields):
    return MarketDataQuery.model_validate({k: v for k, v in fields.items() if v is not None})


def _coin_id(raw):
    return CoinIdParam.model_validate({'id': raw}).id.lower()


def _invalid(exc: ValidationError):
    body = validation_error_response(exc)
    return fail(body['message'], 400, errors=body['errors'])


@market_bp.route('/prices', methods=['GET'])
@cached_json(ttl=market_data.PRICE_TTL)
def get_prices():
    raw = request.args.get('symbols')
    if not raw:
        return fail('Symbols parameter is required', 400)
    try:
        symbols = _query(symbols=raw).symbols
    except ValidationError as e:
        return _invalid(e)
    if not symbols:
        return fail('Symbols parameter is required', 400)
    try:
        return ok(market_data.get_prices_for_symbols(symbols))
    except Exception as e:
        logger.error(f"Error fetching prices: {e}")
        return fail('Failed to fetch prices')


@market_bp.route('/coin/<coin_id>', methods=['GET'])
@cached_json(ttl=market_data.COIN_DETAILS_TTL)
def get_coin(coin_id):
    try:
        coin_id = _coin_id(coin_id)
    except ValidationError as e:
        return _invalid(e)
    try:
        return ok(market_data.get_coin_details(coin_id))
    except Exception as e:
        logger.error(f"Error fetching coin data: {e}")
        return fail('Failed to fetch coin data')


@market_bp.route('/trending', methods=['GET'])
@cached_json(ttl=market_data.TRENDING_TTL)
def get_trending():
    try:
        return ok(market_data.get_trending_coins())
    except Exception as e:
        logger.error(f"Error fetching trending coins: {e}")
        return fail('Failed to fetch trending coins')


@market_bp.route('/overview', methods=['GET'])
@cached_json(ttl=market_data.GLOBAL_TTL)
def get_overview():
    try:
        return ok(market_data.get_global_market_data())
    except Exception as e:
        logger.error(f"Error fetching market overview: {e}")
        return fail('Failed to fetch market overview')


@market_bp.route('/history/<coin_id>', methods=['GET'])
@cached_json(ttl=market_data.HISTORY_TTL)
def get_history(coin_id):
    try:
        coin_id = _coin_id(coin_id)
        days = _query(days=request.args.get('days')).days
    except ValidationError as e:
        return _invalid(e)
    try:
        return ok(market_data.get_historical_data(coin_id, days))
    except Exception as e:
        logger.error(f"Error fetching historical data: {e}")
        return fail('Failed to fetch historical data')


@market_bp.route('/top', methods=['GET'])
@cached_json(ttl=market_data.TOP_COINS_TTL)
def get_top():
    try:
        limit = _query(limit=request.args.get('limit')).limit
    except ValidationError as e:
        return _invalid(e)
    try:
        return ok(market_data.get_top_coins(limit))
    except Exception as e:
        logger.error(f"Error fetching top coins: {e}")
        return fail('Failed to fetch top coins')


@market_bp.route('/search', methods=['GET'])
def search():
    try:
        q = _query(q=request.args.get('q', '')).q
    except ValidationError as e:
        return _invalid(e)
    try:
        return ok(market_data.search_coins(q))
    except Exception as e:
        logger.error(f"Error searching coins: {e}")
        return fail('Failed to search coins')


@market_bp.route('/updater', methods=['GET'])
def updater_stats():
    return ok(current_app.extensions['price_updater'].get_stats())


@market_bp.route('/updater/refresh', methods=['POST'])
def updater_refresh():
    try:
        result = current_app.extensions['price_updater'].trigger_manual_update()
        return ok(result, message='Price update triggered')
    except Exception as e:
        logger.error(f"Error triggering price update: {e}")
        return fail('Failed to trigger price update')
