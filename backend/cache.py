"""
In-process TTL cache.

Entries carry their own TTL and are expired lazily on read; ``cleanup()``
sweeps whatever nobody read. Process-local only, not shared between workers.
"""
import json
import time
import logging
import functools
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask import jsonify, make_response, request

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300


def iso_now() -> str:
    """Returns current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


class MemoryCache:
    def __init__(self):
        self._store: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _expired(item: Dict[str, Any], now: float) -> bool:
        return now - item['created_at'] > item['ttl']

    def set(self, key: str, value: Any, ttl: float = DEFAULT_TTL) -> None:
        with self._lock:
            self._store[key] = {'value': value, 'created_at': time.time(), 'ttl': float(ttl)}

    def get(self, key: str) -> Any:
        with self._lock:
            item = self._store.get(key)
            if item is None:
                return None
            if self._expired(item, time.time()):
                del self._store[key]
                return None
            return item['value']

    def has(self, key: str) -> bool:
        with self._lock:
            item = self._store.get(key)
            if item is None:
                return False
            if self._expired(item, time.time()):
                del self._store[key]
                return False
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def size(self) -> int:
        return len(self._store)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._store.keys())

    def stats(self) -> Dict[str, Any]:
        now = time.time()
        valid = expired = total_size = 0
        with self._lock:
            items = list(self._store.values())
        for item in items:
            try:
                total_size += len(json.dumps(item['value'], default=str))
            except (TypeError, ValueError):
                pass
            if self._expired(item, now):
                expired += 1
            else:
                valid += 1
        return {
            'totalKeys': len(items),
            'validKeys': valid,
            'expiredKeys': expired,
            'totalSizeBytes': total_size,
        }

    def cleanup(self) -> int:
        now = time.time()
        with self._lock:
            stale = [k for k, item in self._store.items() if self._expired(item, now)]
            for k in stale:
                del self._store[k]
        if stale:
            logger.info(f"Cache cleanup: removed {len(stale)} expired entries")
        return len(stale)


cache = MemoryCache()


# ----------------------------------------------------------------- helpers
# Cache failures must never take a request down; log and degrade to a miss.

def set_cached_data(key: str, data: Any, ttl: float = DEFAULT_TTL) -> bool:
    try:
        cache.set(key, data, ttl)
        return True
    except Exception as e:
        logger.error(f"Cache set error: {e}")
        return False


def get_cached_data(key: str) -> Optional[Any]:
    try:
        return cache.get(key)
    except Exception as e:
        logger.error(f"Cache get error: {e}")
        return None


def delete_cached_data(key: str) -> bool:
    try:
        cache.delete(key)
        return True
    except Exception as e:
        logger.error(f"Cache delete error: {e}")
        return False


def has_cached_data(key: str) -> bool:
    try:
        return cache.has(key)
    except Exception as e:
        logger.error(f"Cache has error: {e}")
        return False


def clear_cache() -> bool:
    try:
        cache.clear()
        return True
    except Exception as e:
        logger.error(f"Cache clear error: {e}")
        return False


def get_cache_stats() -> Dict[str, Any]:
    return cache.stats()


def generate_cache_key(*parts) -> str:
    return ':'.join(str(p) for p in parts)


def generate_user_cache_key(user_id: str, *parts) -> str:
    return generate_cache_key('user', user_id, *parts)


def generate_portfolio_cache_key(user_id: str, *parts) -> str:
    return generate_cache_key('portfolio', user_id, *parts)


def generate_price_cache_key(*symbols) -> str:
    return generate_cache_key('prices', '-'.join(sorted(symbols)))


def generate_ai_cache_key(kind: str, *params) -> str:
    return generate_cache_key('ai', kind, *params)


def invalidate_pattern(pattern: str) -> int:
    doomed = [k for k in cache.keys() if pattern in k]
    for k in doomed:
        cache.delete(k)
    logger.info(f"Invalidated {len(doomed)} cache entries matching pattern: {pattern}")
    return len(doomed)


def _invalidate_scope(scope: str) -> int:
    # exact key or ``scope:`` children only, so 'portfolio:bob' spares 'portfolio:bobby'
    doomed = [k for k in cache.keys() if k == scope or k.startswith(scope + ':')]
    for k in doomed:
        cache.delete(k)
    logger.info(f"Invalidated {len(doomed)} cache entries under {scope}")
    return len(doomed)


def invalidate_user_cache(user_id: str) -> int:
    return _invalidate_scope(generate_user_cache_key(user_id))


def invalidate_portfolio_cache(user_id: str) -> int:
    return _invalidate_scope(generate_portfolio_cache_key(user_id))


def invalidate_price_cache() -> int:
    return invalidate_pattern('prices:')


def invalidate_ai_cache() -> int:
    return invalidate_pattern('ai:')


def cached_json(ttl: float = DEFAULT_TTL):
    """Cache successful JSON route bodies for ``ttl`` seconds, keyed by method + path + query."""
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            key = generate_cache_key(request.method, request.full_path.rstrip('?'))
            hit = get_cached_data(key)
            if hit is not None:
                return jsonify({**hit, 'cached': True, 'cacheKey': key})
            resp = make_response(fn(*args, **kwargs))
            if resp.status_code == 200 and resp.is_json:
                body = resp.get_json(silent=True)
                if isinstance(body, dict) and body.get('success') is not False:
                    set_cached_data(key, body, ttl)
            return resp
        return wrapper
    return deco


__all__ = [
    'MemoryCache', 'cache', 'iso_now',
    'set_cached_data', 'get_cached_data', 'delete_cached_data', 'has_cached_data',
    'clear_cache', 'get_cache_stats',
    'generate_cache_key', 'generate_user_cache_key', 'generate_portfolio_cache_key',
    'generate_price_cache_key', 'generate_ai_cache_key',
    'invalidate_pattern', 'invalidate_user_cache', 'invalidate_portfolio_cache',
    'invalidate_price_cache', 'invalidate_ai_cache', 'cached_json',
]
