"""Shared Flask extensions and response helpers for the blueprints."""
from flask import jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from config import CONFIG
from schemas import sanitize

DEFAULT_USER_ID = 'demo-user'

# Limits are callables so /api/config changes and test overrides apply without re-init
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[lambda: CONFIG['RATELIMIT_DEFAULT']],
    storage_uri='memory://',
)


def current_user_id() -> str:
    """Caller identity; a convenience header, not authentication."""
    return (request.headers.get('X-User-Id') or '').strip() or DEFAULT_USER_ID


def json_body() -> dict:
    body = request.get_json(silent=True)
    return sanitize(body) if isinstance(body, dict) else {}


def ok(data=None, status=200, **extra):
    payload = {'success': True}
    if data is not None:
        payload['data'] = data
    payload.update(extra)
    return jsonify(payload), status


def fail(message, status=500, **extra):
    payload = {'success': False, 'message': message}
    payload.update(extra)
    return jsonify(payload), status
