import logging

from flask import Blueprint, request
from pydantic import ValidationError

import portfolio_store
from cache import invalidate_portfolio_cache
from extensions import current_user_id, fail, json_body, ok
from portfolio import merge_settings
from schemas import HoldingCreate, HoldingUpdate, UserSettings, validation_error_response

logger = logging.getLogger(__name__)

portfolio_bp = Blueprint('portfolio_bp', __name__, url_prefix='/api/portfolio')

EMPTY_SUMMARY = {
    'totalValue': 0,
    'totalHoldings': 0,
    'topPerformer': None,
    'worstPerformer': None,
}


def _holdings(portfolio):
    return [h.to_dict() for h in portfolio.holdings]


def _invalid(exc: ValidationError):
    body = validation_error_response(exc)
    return fail(body['message'], 400, errors=body['errors'])


@portfolio_bp.route('', methods=['GET'])
@portfolio_bp.route('/', methods=['GET'])
def get_portfolio():
    try:
        portfolio = portfolio_store.find_portfolio(current_user_id())
        return ok(_holdings(portfolio) if portfolio else [])
    except Exception as e:
        logger.error(f"Error fetching portfolio: {e}")
        return fail('Failed to fetch portfolio')


@portfolio_bp.route('/holdings', methods=['POST'])
def add_holding():
    try:
        payload = HoldingCreate.model_validate(json_body())
    except ValidationError as e:
        return _invalid(e)
    user_id = current_user_id()
    try:
        portfolio = portfolio_store.find_or_create_portfolio(user_id)
        holding = portfolio.add_or_update_holding(payload.to_holding_data())
        portfolio_store.save_portfolio(portfolio)
        invalidate_portfolio_cache(user_id)
        logger.info(f"Added {holding.symbol} for {user_id}", extra={'event': 'holding_added'})
        return ok(_holdings(portfolio), message='Holding added successfully')
    except Exception as e:
        logger.error(f"Error adding holding: {e}")
        return fail('Failed to add holding')


@portfolio_bp.route('/holdings/<holding_id>', methods=['PUT'])
def update_holding(holding_id):
    try:
        payload = HoldingUpdate.model_validate(json_body())
    except ValidationError as e:
        return _invalid(e)
    user_id = current_user_id()
    try:
        portfolio = portfolio_store.find_portfolio(user_id)
        if portfolio is None:
            return fail('Portfolio not found', 404)
        holding = portfolio.update_holding(
            holding_id,
            amount=payload.amount,
            purchase_price=payload.purchase_price,
            name=payload.name,
            notes=payload.notes,
            tags=payload.tags,
        )
        if holding is None:
            return fail('Holding not found', 404)
        portfolio_store.save_portfolio(portfolio)
        invalidate_portfolio_cache(user_id)
        return ok(_holdings(portfolio), message='Holding updated successfully')
    except Exception as e:
        logger.error(f"Error updating holding: {e}")
        return fail('Failed to update holding')


@portfolio_bp.route('/holdings/<holding_id>', methods=['DELETE'])
def delete_holding(holding_id):
    user_id = current_user_id()
    try:
        portfolio = portfolio_store.find_portfolio(user_id)
        if portfolio is None:
            return fail('Portfolio not found', 404)
        if not portfolio.remove_holding(holding_id):
            return fail('Holding not found', 404)
        portfolio_store.save_portfolio(portfolio)
        invalidate_portfolio_cache(user_id)
        return ok(_holdings(portfolio), message='Holding deleted successfully')
    except Exception as e:
        logger.error(f"Error deleting holding: {e}")
        return fail('Failed to delete holding')


@portfolio_bp.route('/summary', methods=['GET'])
def get_summary():
    try:
        portfolio = portfolio_store.find_portfolio(current_user_id())
        if portfolio is None or not portfolio.holdings:
            return ok(dict(EMPTY_SUMMARY))
        return ok(portfolio.summary())
    except Exception as e:
        logger.error(f"Error getting portfolio summary: {e}")
        return fail('Failed to get portfolio summary')


@portfolio_bp.route('/allocation', methods=['GET'])
def get_allocation():
    try:
        portfolio = portfolio_store.find_portfolio(current_user_id())
        return ok(portfolio.allocation() if portfolio else [])
    except Exception as e:
        logger.error(f"Error getting portfolio allocation: {e}")
        return fail('Failed to get portfolio allocation')


@portfolio_bp.route('/performers', methods=['GET'])
def get_performers():
    limit = request.args.get('limit', default=3, type=int)
    if limit is None or not 1 <= limit <= 50:
        return fail('limit must be between 1 and 50', 400)
    try:
        portfolio = portfolio_store.find_portfolio(current_user_id())
        if portfolio is None:
            return ok({'top': [], 'worst': []})
        return ok({
            'top': [h.to_dict() for h in portfolio.top_performers(limit)],
            'worst': [h.to_dict() for h in portfolio.worst_performers(limit)],
        })
    except Exception as e:
        logger.error(f"Error getting performers: {e}")
        return fail('Failed to get performers')


@portfolio_bp.route('/settings', methods=['GET'])
def get_settings():
    try:
        portfolio = portfolio_store.find_or_create_portfolio(current_user_id())
        return ok(portfolio.settings)
    except Exception as e:
        logger.error(f"Error getting settings: {e}")
        return fail('Failed to get settings')


@portfolio_bp.route('/settings', methods=['PUT'])
def update_settings():
    try:
        patch = UserSettings.model_validate(json_body()).to_patch()
    except ValidationError as e:
        return _invalid(e)
    try:
        portfolio = portfolio_store.find_or_create_portfolio(current_user_id())
        portfolio.settings = merge_settings(portfolio.settings, patch)
        portfolio_store.save_portfolio(portfolio)
        return ok(portfolio.settings, message='Settings updated successfully')
    except Exception as e:
        logger.error(f"Error updating settings: {e}")
        return fail('Failed to update settings')
