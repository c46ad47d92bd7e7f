"""Background price pipeline.

A ``schedule.Scheduler`` driven from one daemon thread:
  - every PRICE_UPDATE_INTERVAL: fetch tracked prices, cache them as
    ``latest-prices``, fan out to sockets, evaluate alerts
  - every PORTFOLIO_SYNC_INTERVAL: write cached prices into stored portfolios
    and push ``portfolioUpdate`` to their owners
  - housekeeping for idle sockets and expired cache entries
"""
import time
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

import schedule

from config import CONFIG
from cache import cache, get_cached_data, set_cached_data, iso_now
import market_data
import portfolio_store

logger = logging.getLogger(__name__)

LATEST_PRICES_KEY = 'latest-prices'
FALLBACK_SYMBOLS = ['bitcoin', 'ethereum', 'cardano']


class PriceUpdater:
    def __init__(self, registry=None):
        self.registry = registry
        self._scheduler = schedule.Scheduler()
        self._update_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state_lock = threading.Lock()
        self.last_update: Optional[str] = None
        self.last_error: Optional[str] = None
        self.updates_completed = 0
        self.portfolio_syncs = 0
        self.last_update_duration_ms = 0.0

    # ------------------------------------------------------------ lifecycle

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_updating(self) -> bool:
        return self._update_lock.locked()

    def _schedule_jobs(self) -> None:
        for tag in ('prices', 'portfolios', 'housekeeping'):
            self._scheduler.clear(tag)
        self._scheduler.every(CONFIG['PRICE_UPDATE_INTERVAL']).seconds.do(self.update_all_prices).tag('prices')
        self._scheduler.every(CONFIG['PORTFOLIO_SYNC_INTERVAL']).seconds.do(self.update_portfolio_prices).tag('portfolios')
        self._scheduler.every(CONFIG['CONNECTION_CLEANUP_INTERVAL']).seconds.do(self._cleanup_connections).tag('housekeeping')
        self._scheduler.every(CONFIG['CACHE_CLEANUP_INTERVAL']).seconds.do(cache.cleanup).tag('housekeeping')

    def _initial_update(self):
        self.update_all_prices()
        return schedule.CancelJob

    def start(self) -> bool:
        if self.running:
            return False
        logger.info('Starting price update service...', extra={'event': 'updater_start'})
        self._stop.clear()
        self._schedule_jobs()
        self._scheduler.every(CONFIG['INITIAL_UPDATE_DELAY']).seconds.do(self._initial_update).tag('initial')
        self._thread = threading.Thread(target=self._run, name='price-updater', daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout: float = 5.0) -> bool:
        if not self.running:
            return False
        self._stop.set()
        self._thread.join(timeout)
        self._scheduler.clear()
        self._thread = None
        logger.info('Price update service stopped', extra={'event': 'updater_stop'})
        return True

    def reschedule(self) -> None:
        """Re-create the periodic jobs after an interval change."""
        if self.running:
            self._schedule_jobs()
            logger.info(f"Rescheduled price jobs every {CONFIG['PRICE_UPDATE_INTERVAL']}s")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._scheduler.run_pending()
            except Exception as e:
                # A failing job must not kill the loop
                logger.exception(f"Scheduled job failed: {e}")
            self._stop.wait(1)

    def _cleanup_connections(self) -> int:
        if self.registry is None:
            return 0
        return self.registry.cleanup_connections()

    # ------------------------------------------------------------ pipeline

    def update_all_prices(self) -> bool:
        """One polling cycle. Returns False if another cycle was already running."""
        if not self._update_lock.acquire(blocking=False):
            logger.debug('Price update already in progress; skipping')
            return False
        start = time.time()
        try:
            symbols = self.get_tracked_symbols()
            if not symbols:
                return True
            logger.info(f"Updating prices for {len(symbols)} symbols: {', '.join(symbols)}")
            prices = self.fetch_prices(symbols)
            if prices:
                set_cached_data(LATEST_PRICES_KEY, prices, CONFIG['PRICE_CACHE_TTL'])
                if self.registry is not None:
                    self.registry.broadcast_price_updates(prices)
                    self.registry.check_price_alerts(prices)
                with self._state_lock:
                    self.updates_completed += 1
                    self.last_update = iso_now()
                    self.last_error = None
                logger.info(f"Updated prices for {len(prices)} symbols", extra={'event': 'prices_updated', 'symbol_count': len(prices)})
        except Exception as e:
            with self._state_lock:
                self.last_error = str(e)
            logger.error(f"Error updating prices: {e}", extra={'event': 'prices_update_failed'})
        finally:
            self.last_update_duration_ms = round((time.time() - start) * 1000.0, 3)
            self._update_lock.release()
        return True

    def update_portfolio_prices(self) -> int:
        prices = get_cached_data(LATEST_PRICES_KEY)
        if not prices:
            logger.info('No cached prices available for portfolio update')
            return 0
        updated = 0
        try:
            for snapshot in portfolio_store.list_portfolios():
                before = {h.id: h.current_price for h in snapshot.holdings}
                if not snapshot.update_prices(prices):
                    continue
                moved = {h.id: h.current_price for h in snapshot.holdings if h.current_price != before[h.id]}
                # Row-level writes; holdings edited since the snapshot are left alone
                portfolio = portfolio_store.update_holding_prices(snapshot.user_id, moved, iso_now())
                if portfolio is None:
                    continue
                updated += 1
                if self.registry is not None:
                    self.registry.broadcast_portfolio_update(portfolio.user_id, portfolio.to_dict())
        except Exception as e:
            with self._state_lock:
                self.last_error = str(e)
            logger.error(f"Error updating portfolio prices: {e}")
        with self._state_lock:
            self.portfolio_syncs += 1
        logger.info(f"Updated {updated} portfolios with latest prices", extra={'event': 'portfolios_synced'})
        return updated

    def get_tracked_symbols(self) -> List[str]:
        try:
            ids = set(portfolio_store.tracked_symbols())
        except Exception as e:
            logger.error(f"Error getting tracked symbols: {e}")
            return list(FALLBACK_SYMBOLS)
        ids.update(CONFIG['DEFAULT_SYMBOLS'])
        return sorted(ids)

    def fetch_prices(self, symbols: Iterable[str]) -> Dict[str, Any]:
        ids = [market_data.coin_id_for(s) for s in symbols]
        try:
            return market_data.fetch_simple_prices(ids)
        except market_data.MarketDataError as e:
            logger.error(f"CoinGecko API error: {e}")
            return market_data.generate_mock_prices(ids)

    def get_current_price(self, symbol: str) -> Optional[Dict[str, Any]]:
        coin_id = market_data.coin_id_for(symbol)
        cached = get_cached_data(LATEST_PRICES_KEY)
        if cached and coin_id in cached:
            return cached[coin_id]
        return self.fetch_prices([coin_id]).get(coin_id)

    def get_price_history(self, symbol: str, days: int = 7) -> Dict[str, Any]:
        return market_data.get_historical_data(market_data.coin_id_for(symbol), days)

    def trigger_manual_update(self) -> Dict[str, Any]:
        logger.info('Manual price update triggered', extra={'event': 'manual_update'})
        ran = self.update_all_prices()
        synced = self.update_portfolio_prices() if ran else 0
        return {'pricesUpdated': ran, 'portfoliosUpdated': synced}

    def get_stats(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                'isUpdating': self.is_updating,
                'lastUpdate': self.last_update,
                'updateInterval': CONFIG['PRICE_UPDATE_INTERVAL'],
                'portfolioSyncInterval': CONFIG['PORTFOLIO_SYNC_INTERVAL'],
                'status': 'running' if self.running else 'stopped',
                'updatesCompleted': self.updates_completed,
                'portfolioSyncs': self.portfolio_syncs,
                'lastUpdateDurationMs': self.last_update_duration_ms,
                'lastError': self.last_error,
            }
