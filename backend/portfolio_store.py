"""SQLite-backed portfolio store.

One row per portfolio plus one row per holding. Settings and metadata are
kept as JSON text. WAL mode so the price updater thread can write while
request threads read.
"""
from __future__ import annotations
import json
import sqlite3
import threading
import logging
from typing import Dict, List, Optional

from config import CONFIG
from portfolio import Holding, Portfolio
from market_data import coin_id_for

logger = logging.getLogger(__name__)

_INIT_LOCK = threading.Lock()
_initialized_paths = set()


def _get_conn():
    # check_same_thread=False: the updater thread and request threads each open their own
    conn = sqlite3.connect(CONFIG['DB_PATH'], timeout=5, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys=ON;')
    return conn


def ensure_db() -> None:
    with _INIT_LOCK:
        conn = _get_conn()
        try:
            cur = conn.cursor()
            cur.execute('PRAGMA journal_mode=WAL;')
            cur.execute('''
                CREATE TABLE IF NOT EXISTS portfolios (
                    user_id TEXT PRIMARY KEY,
                    total_invested REAL NOT NULL DEFAULT 0,
                    total_current_value REAL NOT NULL DEFAULT 0,
                    total_profit_loss REAL NOT NULL DEFAULT 0,
                    total_profit_loss_percentage REAL NOT NULL DEFAULT 0,
                    settings TEXT NOT NULL DEFAULT '{}',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    last_updated TEXT NOT NULL
                )
            ''')
            cur.execute('''
                CREATE TABLE IF NOT EXISTS holdings (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES portfolios(user_id) ON DELETE CASCADE,
                    position INTEGER NOT NULL DEFAULT 0,
                    symbol TEXT NOT NULL,
                    name TEXT NOT NULL,
                    amount REAL NOT NULL,
                    purchase_price REAL NOT NULL,
                    average_purchase_price REAL NOT NULL,
                    current_price REAL NOT NULL DEFAULT 0,
                    notes TEXT NOT NULL DEFAULT '',
                    tags TEXT NOT NULL DEFAULT '[]',
                    added_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            cur.execute('CREATE INDEX IF NOT EXISTS ix_holdings_user ON holdings(user_id, position)')
            cur.execute('CREATE INDEX IF NOT EXISTS ix_holdings_symbol ON holdings(symbol)')
            conn.commit()
            _initialized_paths.add(CONFIG['DB_PATH'])
        finally:
            conn.close()


def _ready():
    if CONFIG['DB_PATH'] not in _initialized_paths:
        ensure_db()


def _row_to_holding(row) -> Holding:
    return Holding(
        id=row['id'],
        symbol=row['symbol'],
        name=row['name'],
        amount=row['amount'],
        purchase_price=row['purchase_price'],
        average_purchase_price=row['average_purchase_price'],
        current_price=row['current_price'],
        notes=row['notes'],
        tags=json.loads(row['tags'] or '[]'),
        added_at=row['added_at'],
        updated_at=row['updated_at'],
    )


def _load(conn, row) -> Portfolio:
    cur = conn.execute('SELECT * FROM holdings WHERE user_id = ? ORDER BY position', (row['user_id'],))
    return Portfolio(
        user_id=row['user_id'],
        holdings=[_row_to_holding(h) for h in cur.fetchall()],
        total_invested=row['total_invested'],
        total_current_value=row['total_current_value'],
        total_profit_loss=row['total_profit_loss'],
        total_profit_loss_percentage=row['total_profit_loss_percentage'],
        settings=json.loads(row['settings'] or '{}'),
        metadata=json.loads(row['metadata'] or '{}'),
        created_at=row['created_at'],
        last_updated=row['last_updated'],
    )


def find_portfolio(user_id: str) -> Optional[Portfolio]:
    _ready()
    conn = _get_conn()
    try:
        row = conn.execute('SELECT * FROM portfolios WHERE user_id = ?', (user_id,)).fetchone()
        return _load(conn, row) if row else None
    finally:
        conn.close()


def save_portfolio(portfolio: Portfolio) -> Portfolio:
    """Upsert the portfolio row and replace its holdings in one transaction."""
    _ready()
    conn = _get_conn()
    try:
        with conn:
            conn.execute('''
                INSERT OR REPLACE INTO portfolios (
                    user_id, total_invested, total_current_value, total_profit_loss,
                    total_profit_loss_percentage, settings, metadata, created_at, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                portfolio.user_id,
                portfolio.total_invested,
                portfolio.total_current_value,
                portfolio.total_profit_loss,
                portfolio.total_profit_loss_percentage,
                json.dumps(portfolio.settings),
                json.dumps(portfolio.metadata),
                portfolio.created_at,
                portfolio.last_updated,
            ))
            conn.execute('DELETE FROM holdings WHERE user_id = ?', (portfolio.user_id,))
            conn.executemany('''
                INSERT INTO holdings (
                    id, user_id, position, symbol, name, amount, purchase_price,
                    average_purchase_price, current_price, notes, tags, added_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', [
                (h.id, portfolio.user_id, i, h.symbol, h.name, h.amount, h.purchase_price,
                 h.average_purchase_price, h.current_price, h.notes, json.dumps(h.tags),
                 h.added_at, h.updated_at)
                for i, h in enumerate(portfolio.holdings)
            ])
    finally:
        conn.close()
    return portfolio


def update_holding_prices(user_id: str, prices: Dict[str, float], stamp: str) -> Optional[Portfolio]:
    """Write ``{holding_id: current_price}`` and refresh the stored totals.

    Only touches the named rows, so holdings added or removed since the
    caller read the portfolio survive. Totals are recomputed from the rows
    as they are inside the same transaction. Returns the refreshed
    portfolio, or None when it no longer exists.
    """
    _ready()
    conn = _get_conn()
    try:
        with conn:
            conn.executemany(
                'UPDATE holdings SET current_price = ?, updated_at = ? WHERE id = ? AND user_id = ?',
                [(price, stamp, hid, user_id) for hid, price in prices.items()],
            )
            row = conn.execute('SELECT * FROM portfolios WHERE user_id = ?', (user_id,)).fetchone()
            if row is None:
                return None
            portfolio = _load(conn, row).update_metrics()
            conn.execute('''
                UPDATE portfolios SET total_invested = ?, total_current_value = ?, total_profit_loss = ?,
                    total_profit_loss_percentage = ?, last_updated = ?
                WHERE user_id = ?
            ''', (
                portfolio.total_invested,
                portfolio.total_current_value,
                portfolio.total_profit_loss,
                portfolio.total_profit_loss_percentage,
                portfolio.last_updated,
                user_id,
            ))
    finally:
        conn.close()
    return portfolio


def find_or_create_portfolio(user_id: str) -> Portfolio:
    portfolio = find_portfolio(user_id)
    if portfolio is None:
        portfolio = Portfolio(user_id=user_id)
        save_portfolio(portfolio)
        logger.info(f"Created portfolio for user {user_id}", extra={'event': 'portfolio_created'})
    return portfolio


def list_portfolios() -> List[Portfolio]:
    _ready()
    conn = _get_conn()
    try:
        rows = conn.execute('SELECT * FROM portfolios ORDER BY created_at').fetchall()
        return [_load(conn, r) for r in rows]
    finally:
        conn.close()


def tracked_symbols() -> List[str]:
    """Distinct CoinGecko ids across every stored holding."""
    _ready()
    conn = _get_conn()
    try:
        rows = conn.execute('SELECT DISTINCT symbol FROM holdings').fetchall()
    finally:
        conn.close()
    return sorted({coin_id_for(r['symbol']) for r in rows})


def delete_all() -> None:
    _ready()
    conn = _get_conn()
    try:
        with conn:
            conn.execute('DELETE FROM holdings')
            conn.execute('DELETE FROM portfolios')
    finally:
        conn.close()
