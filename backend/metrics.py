"""Metrics exposition helpers for JSON and Prometheus outputs.

Text exposition is hand-written (no prometheus_client). Keep names stable
and snake_case; dashboards scrape ``/metrics.prom``.
"""
from __future__ import annotations
import time
from typing import Any, Dict, Optional

from cache import get_cache_stats
from market_data import get_market_data_metrics


def emit_prometheus(lines: list[str], name: str, value: Any, mtype: str, help_text: str):
    lines.append(f'# HELP {name} {help_text}')
    lines.append(f'# TYPE {name} {mtype}')
    if value is None:
        value = 'NaN'
    elif value is True or value is False:
        value = int(value)
    lines.append(f'{name} {value}')


def collect_metrics(started_at: float, errors_5xx: int, updater=None, registry=None) -> Dict[str, Any]:
    return {
        'status': 'ok',
        'uptime_seconds': round(time.time() - started_at, 2),
        'errors_5xx': errors_5xx,
        'market_data': get_market_data_metrics(),
        'cache': get_cache_stats(),
        'price_updater': updater.get_stats() if updater is not None else None,
        'connections': registry.connection_stats() if registry is not None else None,
    }


def render_prometheus(snapshot: Optional[Dict[str, Any]] = None, **kwargs) -> str:
    """Render a ``collect_metrics`` snapshot (or build one from kwargs) as text exposition."""
    m = snapshot if snapshot is not None else collect_metrics(**kwargs)
    lines: list[str] = []
    emit_prometheus(lines, 'app_uptime_seconds', m['uptime_seconds'], 'gauge', 'Seconds since the app was created')
    emit_prometheus(lines, 'http_errors_5xx_total', m['errors_5xx'], 'counter', 'HTTP responses with a 5xx status')

    md = m['market_data']
    emit_prometheus(lines, 'market_data_calls_total', md.get('total_calls', 0), 'counter', 'Upstream market data requests')
    emit_prometheus(lines, 'market_data_errors_total', md.get('errors', 0), 'counter', 'Failed upstream market data requests')
    emit_prometheus(lines, 'market_data_cache_hits_total', md.get('cache_hits', 0), 'counter', 'Market data lookups served from cache')
    emit_prometheus(lines, 'market_data_mock_fallbacks_total', md.get('mock_fallbacks', 0), 'counter', 'Responses served from generated mock data')
    emit_prometheus(lines, 'market_data_short_circuits_total', md.get('circuit_short_circuits', 0), 'counter', 'Requests rejected by the open circuit')
    emit_prometheus(lines, 'market_data_last_fetch_duration_ms', md.get('last_fetch_duration_ms'), 'gauge', 'Duration of the last successful upstream call')
    emit_prometheus(lines, 'market_data_error_rate_percent', md.get('error_rate_percent'), 'gauge', 'Upstream error rate (percent)')
    cb = md.get('circuit_breaker') or {}
    emit_prometheus(lines, 'market_data_circuit_breaker_open', cb.get('is_open', False), 'gauge', 'Circuit breaker open (1) or closed (0)')
    emit_prometheus(lines, 'market_data_circuit_breaker_half_open', cb.get('is_half_open', False), 'gauge', 'Circuit breaker half-open trial state')
    emit_prometheus(lines, 'market_data_circuit_breaker_failures', cb.get('failures', 0), 'gauge', 'Consecutive failures seen by the breaker')

    c = m['cache']
    emit_prometheus(lines, 'cache_keys', c.get('totalKeys', 0), 'gauge', 'Entries in the process cache')
    emit_prometheus(lines, 'cache_valid_keys', c.get('validKeys', 0), 'gauge', 'Unexpired cache entries')
    emit_prometheus(lines, 'cache_expired_keys', c.get('expiredKeys', 0), 'gauge', 'Expired entries awaiting cleanup')
    emit_prometheus(lines, 'cache_size_bytes', c.get('totalSizeBytes', 0), 'gauge', 'Approximate JSON size of cached values')

    u = m.get('price_updater')
    if u:
        emit_prometheus(lines, 'price_updater_running', u['status'] == 'running', 'gauge', 'Background updater thread alive')
        emit_prometheus(lines, 'price_updater_updating', u['isUpdating'], 'gauge', 'A price cycle is in progress')
        emit_prometheus(lines, 'price_updater_updates_total', u['updatesCompleted'], 'counter', 'Completed price cycles')
        emit_prometheus(lines, 'price_updater_portfolio_syncs_total', u['portfolioSyncs'], 'counter', 'Portfolio sync runs')
        emit_prometheus(lines, 'price_updater_interval_seconds', u['updateInterval'], 'gauge', 'Price polling interval')
        emit_prometheus(lines, 'price_updater_last_duration_ms', u['lastUpdateDurationMs'], 'gauge', 'Duration of the last price cycle')

    ws = m.get('connections')
    if ws:
        emit_prometheus(lines, 'ws_connections_total', ws['totalConnections'], 'gauge', 'Open Socket.IO connections')
        emit_prometheus(lines, 'ws_connections_authenticated', ws['authenticatedUsers'], 'gauge', 'Connections with a user id')
        emit_prometheus(lines, 'ws_connections_subscribed_users', ws['totalSubscriptions'], 'gauge', 'Users with at least one subscribed socket')
    return '\n'.join(lines) + '\n'
