"""Runtime configuration for the portfolio tracker backend.

Values come from the environment (a local ``.env`` is honoured) with sane
defaults. ``CONFIG`` is a plain module-level dict so other modules and tests
can read and monkeypatch it directly.
"""
from __future__ import annotations
import os
from typing import Any, Dict, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = 'false') -> bool:
    return str(os.environ.get(name, default)).lower() in {'1', 'true', 'yes', 'on'}


def _env_list(name: str, default: str) -> list[str]:
    return [s.strip().lower() for s in os.environ.get(name, default).split(',') if s.strip()]


CONFIG: Dict[str, Any] = {
    'HOST': os.environ.get('HOST', '0.0.0.0'),
    'PORT': int(os.environ.get('PORT', 5000)),
    'DEBUG': _env_bool('DEBUG'),
    'SECRET_KEY': os.environ.get('SECRET_KEY', 'crypto-portfolio-secret'),
    # Socket.IO origin (the dashboard) and REST CORS origins
    'CLIENT_URL': os.environ.get('CLIENT_URL', 'http://localhost:3000'),
    'CORS_ALLOWED_ORIGINS': os.environ.get('CORS_ALLOWED_ORIGINS', '*'),
    'DB_PATH': os.environ.get('PORTFOLIO_DB_PATH', os.path.join(os.path.dirname(__file__), 'portfolio.db')),
    # Market data upstream
    'COINGECKO_BASE_URL': os.environ.get('COINGECKO_BASE_URL', 'https://api.coingecko.com/api/v3'),
    'API_TIMEOUT': int(os.environ.get('API_TIMEOUT', 15)),
    'API_RETRIES': int(os.environ.get('API_RETRIES', 3)),
    'API_RETRY_BACKOFF': float(os.environ.get('API_RETRY_BACKOFF', 1.0)),
    'CB_FAIL_THRESHOLD': int(os.environ.get('MARKET_DATA_CB_FAIL_THRESHOLD', 5)),
    'CB_RESET_SECONDS': float(os.environ.get('MARKET_DATA_CB_RESET_SECONDS', 30)),
    # Price pipeline cadence (seconds)
    'PRICE_UPDATE_INTERVAL': int(os.environ.get('PRICE_UPDATE_INTERVAL', 30)),
    'PORTFOLIO_SYNC_INTERVAL': int(os.environ.get('PORTFOLIO_SYNC_INTERVAL', 300)),
    'INITIAL_UPDATE_DELAY': int(os.environ.get('INITIAL_UPDATE_DELAY', 5)),
    'PRICE_CACHE_TTL': int(os.environ.get('PRICE_CACHE_TTL', 60)),
    'CACHE_CLEANUP_INTERVAL': int(os.environ.get('CACHE_CLEANUP_INTERVAL', 300)),
    'CONNECTION_IDLE_TIMEOUT': int(os.environ.get('CONNECTION_IDLE_TIMEOUT', 1800)),
    'CONNECTION_CLEANUP_INTERVAL': int(os.environ.get('CONNECTION_CLEANUP_INTERVAL', 300)),
    # Always tracked, even with no portfolios
    'DEFAULT_SYMBOLS': _env_list('DEFAULT_SYMBOLS', 'bitcoin,ethereum,cardano,polkadot,chainlink'),
    # Language model
    'OPENAI_API_KEY': os.environ.get('OPENAI_API_KEY'),
    'OPENAI_MODEL': os.environ.get('OPENAI_MODEL', 'gpt-4'),
    'OPENAI_URL': os.environ.get('OPENAI_URL', 'https://api.openai.com/v1/chat/completions'),
    'OPENAI_TIMEOUT': int(os.environ.get('OPENAI_TIMEOUT', 30)),
    'OPENAI_STUB': _env_bool('OPENAI_STUB', '0'),
    # Flask-Limiter
    'RATELIMIT_ENABLED': _env_bool('RATELIMIT_ENABLED', 'true'),
    'RATELIMIT_DEFAULT': os.environ.get('RATELIMIT_DEFAULT', '100 per 15 minutes'),
    'AI_RATELIMIT': os.environ.get('AI_RATELIMIT', '10 per minute'),
}

# Runtime-tunable keys: name -> (type, min, max)
CONFIG_LIMITS: Dict[str, Tuple[type, float, float]] = {
    'PRICE_UPDATE_INTERVAL': (int, 5, 3600),
    'PORTFOLIO_SYNC_INTERVAL': (int, 30, 86400),
    'PRICE_CACHE_TTL': (int, 5, 3600),
    'API_TIMEOUT': (int, 1, 120),
    'CONNECTION_IDLE_TIMEOUT': (int, 60, 86400),
    'CACHE_CLEANUP_INTERVAL': (int, 30, 86400),
}

SECRET_KEYS = {'OPENAI_API_KEY', 'SECRET_KEY'}


def update_config(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """Apply a partial config update; returns (applied, errors)."""
    applied: Dict[str, Any] = {}
    errors: Dict[str, str] = {}
    for key, raw in (payload or {}).items():
        if key not in CONFIG_LIMITS:
            errors[key] = 'unknown or read-only setting'
            continue
        typ, lo, hi = CONFIG_LIMITS[key]
        if isinstance(raw, bool):
            errors[key] = f'expected {typ.__name__}'
            continue
        try:
            value = typ(raw)
        except (TypeError, ValueError):
            errors[key] = f'expected {typ.__name__}'
            continue
        if value < lo or value > hi:
            errors[key] = f'must be between {lo} and {hi}'
            continue
        CONFIG[key] = value
        applied[key] = value
    return applied, errors


def public_config() -> Dict[str, Any]:
    return {k: ('***' if k in SECRET_KEYS and v else v) for k, v in CONFIG.items()}


__all__ = ['CONFIG', 'CONFIG_LIMITS', 'update_config', 'public_config']
