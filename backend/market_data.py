"""CoinGecko market data client.

Every public getter is cached in the process TTL cache and degrades to
generated mock data when the upstream is unreachable, rate limited or the
circuit breaker is open, so the dashboard keeps rendering.
"""
import time, logging, random, threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import RequestException
from urllib3.util.retry import Retry

from config import CONFIG
from cache import get_cached_data, set_cached_data, generate_cache_key, generate_price_cache_key
from reliability import CircuitBreaker

logger = logging.getLogger(__name__)

HEADERS = {
    'Accept': 'application/json',
    'User-Agent': 'CryptoPortfolioTracker/1.0',
}

# Ticker -> CoinGecko id. Unknown tickers are assumed to already be ids.
COINGECKO_ID_MAP = {
    'BTC': 'bitcoin',
    'ETH': 'ethereum',
    'ADA': 'cardano',
    'DOT': 'polkadot',
    'LINK': 'chainlink',
    'SOL': 'solana',
    'DOGE': 'dogecoin',
    'XRP': 'ripple',
    'LTC': 'litecoin',
    'XLM': 'stellar',
    'BNB': 'binancecoin',
    'AVAX': 'avalanche-2',
    'MATIC': 'matic-network',
    'UNI': 'uniswap',
    'ATOM': 'cosmos',
    'USDT': 'tether',
    'USDC': 'usd-coin',
}

MOCK_BASE_PRICES = {
    'bitcoin': 45000,
    'ethereum': 3000,
    'cardano': 0.5,
    'polkadot': 20,
    'chainlink': 15,
}

PRICE_TTL = 60
COIN_DETAILS_TTL = 300
HISTORY_TTL = 1800
TRENDING_TTL = 600
GLOBAL_TTL = 300
TOP_COINS_TTL = 300
SEARCH_TTL = 1800


class MarketDataError(Exception):
    """Upstream market data could not be retrieved."""


def coin_id_for(symbol: str) -> str:
    sym = str(symbol or '').strip()
    return COINGECKO_ID_MAP.get(sym.upper(), sym.lower())


# Retry transient upstream failures before the breaker sees them
_SESSION = requests.Session()
_RETRY_STRATEGY = Retry(
    total=CONFIG['API_RETRIES'],
    status_forcelist=(429, 500, 502, 503, 504),
    allowed_methods=frozenset(['GET']),
    backoff_factor=CONFIG['API_RETRY_BACKOFF'],
    raise_on_status=False,
)
_ADAPTER = HTTPAdapter(pool_connections=8, pool_maxsize=16, max_retries=_RETRY_STRATEGY)
_SESSION.mount('https://', _ADAPTER)
_SESSION.mount('http://', _ADAPTER)

_cb = CircuitBreaker('market_data', fail_threshold=CONFIG['CB_FAIL_THRESHOLD'], reset_seconds=CONFIG['CB_RESET_SECONDS'])

_metrics_lock = threading.Lock()
_metrics = {
    'total_calls': 0,
    'errors': 0,
    'circuit_short_circuits': 0,
    'cache_hits': 0,
    'mock_fallbacks': 0,
    'last_fetch_duration_ms': 0.0,
    'last_success_time': None,
    'last_error': None,
}


def _bump(name: str, n: int = 1) -> None:
    with _metrics_lock:
        _metrics[name] += n


def _failed(reason: str) -> None:
    with _metrics_lock:
        _metrics['errors'] += 1
        _metrics['last_error'] = reason
    _cb.record_failure()


def make_request(path: str, params: Optional[Dict[str, Any]] = None) -> Any:
    """GET ``path`` on the CoinGecko API and return decoded JSON.

    Raises MarketDataError on network errors, non-200 responses, bad JSON or
    when the circuit breaker is open.
    """
    if not _cb.allow():
        _bump('circuit_short_circuits')
        raise MarketDataError('market data circuit open')
    url = f"{CONFIG['COINGECKO_BASE_URL'].rstrip('/')}{path}"
    _bump('total_calls')
    start = time.time()
    try:
        r = _SESSION.get(url, params=params, headers=HEADERS, timeout=CONFIG['API_TIMEOUT'])
    except RequestException as e:
        _failed(f'{path}: {e}')
        raise MarketDataError(f'request to {path} failed: {e}') from e
    if r.status_code != 200:
        _failed(f'{path}: status {r.status_code}')
        raise MarketDataError(f'{path} returned status {r.status_code}')
    try:
        data = r.json()
    except ValueError as e:
        _failed(f'{path}: invalid json')
        raise MarketDataError(f'{path} returned invalid JSON') from e
    _cb.record_success()
    with _metrics_lock:
        _metrics['last_fetch_duration_ms'] = round((time.time() - start) * 1000.0, 3)
        _metrics['last_success_time'] = time.time()
    return data


def _cached(key: str):
    hit = get_cached_data(key)
    if hit is not None:
        _bump('cache_hits')
    return hit


def _ms_to_iso(ts_ms: float) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


# ------------------------------------------------------------------- prices

def fetch_simple_prices(coin_ids: Iterable[str], include_market_cap: bool = True) -> Dict[str, Any]:
    """One /simple/price call for all ids. Raises MarketDataError."""
    ids = [c for c in coin_ids if c]
    if not ids:
        return {}
    params = {
        'ids': ','.join(ids),
        'vs_currencies': 'usd',
        'include_24hr_change': 'true',
        'include_24hr_vol': 'true',
    }
    if include_market_cap:
        params['include_market_cap'] = 'true'
    data = make_request('/simple/price', params)
    if not isinstance(data, dict):
        raise MarketDataError('unexpected /simple/price payload')
    return data


def get_prices_for_symbols(symbols: Iterable[str]) -> Dict[str, Any]:
    ids = sorted({coin_id_for(s) for s in symbols if s})
    if not ids:
        return {}
    key = generate_price_cache_key(*ids)
    hit = _cached(key)
    if hit is not None:
        return hit
    try:
        prices = fetch_simple_prices(ids)
    except MarketDataError as e:
        logger.error(f"Error fetching prices: {e}")
        _bump('mock_fallbacks')
        return generate_mock_prices(ids)
    set_cached_data(key, prices, CONFIG.get('PRICE_CACHE_TTL', PRICE_TTL))
    return prices


# ------------------------------------------------------------------- coins

def get_coin_details(coin_id: str) -> Dict[str, Any]:
    key = generate_cache_key('coin-details', coin_id)
    hit = _cached(key)
    if hit is not None:
        return hit
    try:
        data = make_request(f'/coins/{coin_id}', {
            'localization': 'false',
            'tickers': 'false',
            'market_data': 'true',
            'community_data': 'false',
            'developer_data': 'false',
        })
    except MarketDataError as e:
        logger.error(f"Error fetching coin details for {coin_id}: {e}")
        _bump('mock_fallbacks')
        return generate_mock_coin_details(coin_id)
    md = data.get('market_data') or {}

    def usd(field):
        return (md.get(field) or {}).get('usd')

    details = {
        'id': data.get('id'),
        'symbol': data.get('symbol'),
        'name': data.get('name'),
        'image': (data.get('image') or {}).get('large'),
        'currentPrice': usd('current_price'),
        'marketCap': usd('market_cap'),
        'marketCapRank': md.get('market_cap_rank'),
        'totalVolume': usd('total_volume'),
        'priceChange24h': md.get('price_change_percentage_24h'),
        'priceChange7d': md.get('price_change_percentage_7d'),
        'priceChange30d': md.get('price_change_percentage_30d'),
        'circulatingSupply': md.get('circulating_supply'),
        'totalSupply': md.get('total_supply'),
        'maxSupply': md.get('max_supply'),
        'ath': usd('ath'),
        'athDate': usd('ath_date'),
        'atl': usd('atl'),
        'atlDate': usd('atl_date'),
        'description': (data.get('description') or {}).get('en'),
    }
    set_cached_data(key, details, COIN_DETAILS_TTL)
    return details


def history_interval(days: int) -> str:
    if days <= 1:
        return 'hourly'
    if days <= 90:
        return 'daily'
    return 'weekly'


def get_historical_data(coin_id: str, days: int = 7) -> Dict[str, Any]:
    days = int(days)
    key = generate_cache_key('historical', coin_id, days)
    hit = _cached(key)
    if hit is not None:
        return hit
    interval = history_interval(days)
    params = {'vs_currency': 'usd', 'days': days}
    # The public API only accepts an explicit 'daily'; other granularities are automatic
    if interval == 'daily':
        params['interval'] = 'daily'
    try:
        data = make_request(f'/coins/{coin_id}/market_chart', params)
        history = {
            'interval': interval,
            'prices': [
                {'timestamp': ts, 'date': _ms_to_iso(ts), 'price': round(float(p), 8)}
                for ts, p in data.get('prices') or []
            ],
            'volumes': [
                {'timestamp': ts, 'date': _ms_to_iso(ts), 'volume': round(float(v), 2)}
                for ts, v in data.get('total_volumes') or []
            ],
            'marketCaps': [
                {'timestamp': ts, 'date': _ms_to_iso(ts), 'marketCap': round(float(m), 2)}
                for ts, m in data.get('market_caps') or []
            ],
        }
    except (MarketDataError, TypeError, ValueError) as e:
        logger.error(f"Error fetching historical data for {coin_id}: {e}")
        _bump('mock_fallbacks')
        return generate_mock_historical_data(coin_id, days)
    set_cached_data(key, history, HISTORY_TTL)
    return history


def get_trending_coins() -> List[Dict[str, Any]]:
    key = 'trending-coins'
    hit = _cached(key)
    if hit is not None:
        return hit
    try:
        data = make_request('/search/trending')
        trending = [
            {
                'id': c['item'].get('id'),
                'name': c['item'].get('name'),
                'symbol': c['item'].get('symbol'),
                'marketCapRank': c['item'].get('market_cap_rank'),
                'thumb': c['item'].get('thumb'),
                'score': c['item'].get('score'),
            }
            for c in data.get('coins') or []
            if isinstance(c, dict) and isinstance(c.get('item'), dict)
        ]
    except MarketDataError as e:
        logger.error(f"Error fetching trending coins: {e}")
        _bump('mock_fallbacks')
        return generate_mock_trending()
    set_cached_data(key, trending, TRENDING_TTL)
    return trending


def get_global_market_data() -> Dict[str, Any]:
    key = 'global-market-data'
    hit = _cached(key)
    if hit is not None:
        return hit
    try:
        data = (make_request('/global') or {}).get('data') or {}
    except MarketDataError as e:
        logger.error(f"Error fetching global market data: {e}")
        _bump('mock_fallbacks')
        return generate_mock_global_data()
    pct = data.get('market_cap_percentage') or {}
    overview = {
        'totalMarketCap': (data.get('total_market_cap') or {}).get('usd'),
        'totalVolume': (data.get('total_volume') or {}).get('usd'),
        'marketCapPercentage': pct,
        'activeCryptocurrencies': data.get('active_cryptocurrencies'),
        'markets': data.get('markets'),
        'marketCapChange24h': data.get('market_cap_change_percentage_24h_usd'),
        'btcDominance': pct.get('btc'),
        'ethDominance': pct.get('eth'),
    }
    set_cached_data(key, overview, GLOBAL_TTL)
    return overview


def get_top_coins(limit: int = 100) -> List[Dict[str, Any]]:
    limit = max(1, min(int(limit), 250))
    key = generate_cache_key('top-coins', limit)
    hit = _cached(key)
    if hit is not None:
        return hit
    try:
        rows = make_request('/coins/markets', {
            'vs_currency': 'usd',
            'order': 'market_cap_desc',
            'per_page': limit,
            'page': 1,
            'sparkline': 'false',
            'price_change_percentage': '1h,24h,7d',
        })
    except MarketDataError as e:
        logger.error(f"Error fetching top coins: {e}")
        _bump('mock_fallbacks')
        return generate_mock_top_coins(limit)
    top = [
        {
            'id': c.get('id'),
            'symbol': c.get('symbol'),
            'name': c.get('name'),
            'image': c.get('image'),
            'currentPrice': c.get('current_price'),
            'marketCap': c.get('market_cap'),
            'marketCapRank': c.get('market_cap_rank'),
            'totalVolume': c.get('total_volume'),
            'priceChange1h': c.get('price_change_percentage_1h_in_currency'),
            'priceChange24h': c.get('price_change_percentage_24h'),
            'priceChange7d': c.get('price_change_percentage_7d_in_currency'),
            'circulatingSupply': c.get('circulating_supply'),
            'totalSupply': c.get('total_supply'),
            'maxSupply': c.get('max_supply'),
            'ath': c.get('ath'),
            'athDate': c.get('ath_date'),
            'atl': c.get('atl'),
            'atlDate': c.get('atl_date'),
            'lastUpdated': c.get('last_updated'),
        }
        for c in rows or []
        if isinstance(c, dict)
    ]
    set_cached_data(key, top, TOP_COINS_TTL)
    return top


def search_coins(query: str) -> Dict[str, Any]:
    key = generate_cache_key('search', query.lower())
    hit = _cached(key)
    if hit is not None:
        return hit
    try:
        data = make_request('/search', {'query': query})
    except MarketDataError as e:
        logger.error(f'Error searching for "{query}": {e}')
        return {'coins': [], 'exchanges': []}
    results = {
        'coins': [
            {
                'id': c.get('id'),
                'name': c.get('name'),
                'symbol': c.get('symbol'),
                'marketCapRank': c.get('market_cap_rank'),
                'thumb': c.get('thumb'),
                'large': c.get('large'),
            }
            for c in data.get('coins') or []
        ],
        'exchanges': [
            {
                'id': x.get('id'),
                'name': x.get('name'),
                'marketType': x.get('market_type'),
                'thumb': x.get('thumb'),
                'large': x.get('large'),
            }
            for x in data.get('exchanges') or []
        ],
    }
    set_cached_data(key, results, SEARCH_TTL)
    return results


# ------------------------------------------------------------ mock fallbacks

def generate_mock_prices(coin_ids: Iterable[str]) -> Dict[str, Any]:
    mock = {}
    for coin_id in coin_ids:
        base = MOCK_BASE_PRICES.get(coin_id, random.random() * 100 + 1)
        price = base * (1 + (random.random() - 0.5) * 0.1)  # +/-5%
        mock[coin_id] = {
            'usd': price,
            'usd_24h_change': (random.random() - 0.5) * 20,
            'usd_24h_vol': random.random() * 1_000_000_000,
            'usd_market_cap': price * random.random() * 1_000_000_000,
        }
    return mock


def generate_mock_coin_details(coin_id: str) -> Dict[str, Any]:
    return {
        'id': coin_id,
        'symbol': coin_id[:3].upper(),
        'name': coin_id[:1].upper() + coin_id[1:],
        'currentPrice': random.random() * 1000 + 100,
        'marketCap': random.random() * 100_000_000_000,
        'marketCapRank': random.randint(1, 100),
        'totalVolume': random.random() * 10_000_000_000,
        'priceChange24h': (random.random() - 0.5) * 20,
        'priceChange7d': (random.random() - 0.5) * 40,
        'priceChange30d': (random.random() - 0.5) * 80,
        'description': f'{coin_id} is a cryptocurrency project focused on innovation and decentralization.',
        'mock': True,
    }


def generate_mock_historical_data(coin_id: str, days: int) -> Dict[str, Any]:
    now_ms = time.time() * 1000
    base = 100.0
    points = []
    for i in range(int(days)):
        ts = now_ms - (days - i) * 24 * 60 * 60 * 1000
        base += (random.random() - 0.5) * 10
        price = max(base, 1.0)
        points.append({
            'timestamp': ts,
            'date': _ms_to_iso(ts),
            'price': price,
            'volume': random.random() * 1_000_000_000,
            'marketCap': price * random.random() * 1_000_000_000,
        })
    return {
        'interval': history_interval(days),
        'prices': [{'timestamp': p['timestamp'], 'date': p['date'], 'price': p['price']} for p in points],
        'volumes': [{'timestamp': p['timestamp'], 'date': p['date'], 'volume': p['volume']} for p in points],
        'marketCaps': [{'timestamp': p['timestamp'], 'date': p['date'], 'marketCap': p['marketCap']} for p in points],
        'mock': True,
    }


def generate_mock_trending() -> List[Dict[str, Any]]:
    return [
        {'id': 'bitcoin', 'name': 'Bitcoin', 'symbol': 'BTC', 'marketCapRank': 1, 'score': 0},
        {'id': 'ethereum', 'name': 'Ethereum', 'symbol': 'ETH', 'marketCapRank': 2, 'score': 1},
        {'id': 'cardano', 'name': 'Cardano', 'symbol': 'ADA', 'marketCapRank': 8, 'score': 2},
    ]


def generate_mock_global_data() -> Dict[str, Any]:
    return {
        'totalMarketCap': 2_500_000_000_000,
        'totalVolume': 100_000_000_000,
        'marketCapPercentage': {'btc': 45, 'eth': 18},
        'activeCryptocurrencies': 10000,
        'markets': 800,
        'marketCapChange24h': 2.5,
        'btcDominance': 45,
        'ethDominance': 18,
        'mock': True,
    }


def generate_mock_top_coins(limit: int) -> List[Dict[str, Any]]:
    names = ['Bitcoin', 'Ethereum', 'Cardano', 'Polkadot', 'Chainlink', 'Litecoin', 'Stellar', 'Dogecoin']
    return [
        {
            'id': name.lower(),
            'symbol': name[:3].upper(),
            'name': name,
            'currentPrice': random.random() * 1000 + 10,
            'marketCap': random.random() * 100_000_000_000,
            'marketCapRank': i + 1,
            'totalVolume': random.random() * 10_000_000_000,
            'priceChange24h': (random.random() - 0.5) * 20,
            'priceChange7d': (random.random() - 0.5) * 40,
        }
        for i, name in enumerate(names[:limit])
    ]


def get_market_data_metrics() -> Dict[str, Any]:
    with _metrics_lock:
        data = dict(_metrics)
    total = data['total_calls']
    data['error_rate_percent'] = round(data['errors'] / total * 100.0, 4) if total else 0.0
    data['circuit_breaker'] = _cb.snapshot()
    return data


def reset_state() -> None:
    """Reset breaker and counters (tests, admin refresh)."""
    _cb.reset()
    with _metrics_lock:
        for k in ('total_calls', 'errors', 'circuit_short_circuits', 'cache_hits', 'mock_fallbacks'):
            _metrics[k] = 0
        _metrics['last_fetch_duration_ms'] = 0.0
        _metrics['last_success_time'] = None
        _metrics['last_error'] = None
