"""Portfolio domain model.

Plain dataclasses; persistence lives in ``portfolio_store`` and the JSON
shape served to the dashboard is produced by ``to_dict()`` (camelCase, with
the derived values inlined).
"""
from __future__ import annotations
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from market_data import coin_id_for

CURRENCIES = ('USD', 'EUR', 'GBP', 'JPY', 'BTC', 'ETH')
LANGUAGES = ('en', 'es', 'fr', 'de', 'ja')
SCHEMA_VERSION = '1.0.0'


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_settings() -> Dict[str, Any]:
    return {
        'currency': 'USD',
        'notifications': {
            'priceAlerts': True,
            'portfolioUpdates': True,
            'aiInsights': False,
        },
        'privacy': {
            'sharePortfolio': False,
            'publicProfile': False,
        },
        'display': {
            'language': 'en',
            'refreshInterval': 30,
        },
    }


def merge_settings(current: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``patch`` into a copy of ``current``; None values are ignored."""
    out = copy.deepcopy(current)
    for key, value in (patch or {}).items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = merge_settings(out[key], value)
        else:
            out[key] = value
    return out


@dataclass
class Holding:
    symbol: str
    amount: float
    purchase_price: float = 0.0
    name: str = ''
    average_purchase_price: Optional[float] = None
    current_price: float = 0.0
    notes: str = ''
    tags: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    added_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def __post_init__(self):
        self.symbol = str(self.symbol).strip().upper()
        self.name = (self.name or '').strip() or self.symbol
        self.amount = float(self.amount)
        self.purchase_price = float(self.purchase_price or 0)
        if self.average_purchase_price is None:
            self.average_purchase_price = self.purchase_price
        self.average_purchase_price = float(self.average_purchase_price)
        self.current_price = float(self.current_price or 0)
        if self.amount < 0 or self.purchase_price < 0 or self.average_purchase_price < 0:
            raise ValueError('amount and prices must be non-negative')
        if len(self.notes or '') > 500:
            raise ValueError('notes must be at most 500 characters')

    @property
    def coin_id(self) -> str:
        return coin_id_for(self.symbol)

    @property
    def current_value(self) -> float:
        # Unpriced holdings are valued at cost
        return self.amount * (self.current_price or self.purchase_price)

    @property
    def invested(self) -> float:
        return self.amount * self.average_purchase_price

    @property
    def profit_loss(self) -> float:
        return self.current_value - self.invested

    @property
    def profit_loss_percentage(self) -> float:
        if self.average_purchase_price == 0:
            return 0.0
        price = self.current_price or self.purchase_price
        return (price - self.average_purchase_price) / self.average_purchase_price * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'name': self.name,
            'amount': self.amount,
            'purchasePrice': self.purchase_price,
            'averagePurchasePrice': self.average_purchase_price,
            'currentPrice': self.current_price,
            'currentValue': self.current_value,
            'profitLoss': self.profit_loss,
            'profitLossPercentage': self.profit_loss_percentage,
            'notes': self.notes,
            'tags': list(self.tags),
            'addedAt': self.added_at,
            'updatedAt': self.updated_at,
        }


@dataclass
class Portfolio:
    user_id: str
    holdings: List[Holding] = field(default_factory=list)
    total_invested: float = 0.0
    total_current_value: float = 0.0
    total_profit_loss: float = 0.0
    total_profit_loss_percentage: float = 0.0
    settings: Dict[str, Any] = field(default_factory=default_settings)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    last_updated: str = field(default_factory=utc_now)

    def __post_init__(self):
        self.settings = merge_settings(default_settings(), self.settings or {})
        meta = {'createdAt': self.created_at, 'lastLogin': self.created_at, 'version': SCHEMA_VERSION}
        meta.update(self.metadata or {})
        self.metadata = meta

    # -- derived totals

    def portfolio_metrics(self) -> Dict[str, Any]:
        invested = sum(h.invested for h in self.holdings)
        current = sum(h.current_value for h in self.holdings)
        pl = current - invested
        return {
            'total_invested': invested,
            'total_current_value': current,
            'total_profit_loss': pl,
            'total_profit_loss_percentage': (pl / invested * 100) if invested > 0 else 0.0,
            'holdings_count': len(self.holdings),
        }

    def update_metrics(self) -> 'Portfolio':
        m = self.portfolio_metrics()
        self.total_invested = m['total_invested']
        self.total_current_value = m['total_current_value']
        self.total_profit_loss = m['total_profit_loss']
        self.total_profit_loss_percentage = m['total_profit_loss_percentage']
        self.last_updated = utc_now()
        return self

    # -- holdings

    def find_holding(self, holding_id: str) -> Optional[Holding]:
        return next((h for h in self.holdings if h.id == holding_id), None)

    def add_or_update_holding(self, data: Dict[str, Any]) -> Holding:
        """Merge into the holding with the same symbol, or append a new one.

        The merged average purchase price is the amount-weighted mean of the
        existing position and the new lot.
        """
        symbol = str(data['symbol']).strip().upper()
        amount = float(data['amount'])
        price = float(data.get('purchase_price') or 0)
        existing = next((h for h in self.holdings if h.symbol == symbol), None)
        if existing is not None:
            total_amount = existing.amount + amount
            if total_amount > 0:
                existing.average_purchase_price = (
                    existing.amount * existing.average_purchase_price + amount * price
                ) / total_amount
            existing.amount = total_amount
            if data.get('notes'):
                existing.notes = data['notes']
            if data.get('tags'):
                existing.tags = list(data['tags'])
            existing.updated_at = utc_now()
            holding = existing
        else:
            holding = Holding(
                symbol=symbol,
                name=data.get('name') or symbol,
                amount=amount,
                purchase_price=price,
                average_purchase_price=price,
                current_price=float(data.get('current_price') or 0),
                notes=data.get('notes') or '',
                tags=list(data.get('tags') or []),
            )
            self.holdings.append(holding)
        self.update_metrics()
        return holding

    def update_holding(self, holding_id: str, amount: Optional[float] = None,
                       purchase_price: Optional[float] = None, **extra) -> Optional[Holding]:
        holding = self.find_holding(holding_id)
        if holding is None:
            return None
        if amount is not None:
            holding.amount = float(amount)
        if purchase_price is not None:
            holding.purchase_price = float(purchase_price)
            holding.average_purchase_price = float(purchase_price)
        if extra.get('name'):
            holding.name = extra['name']
        if extra.get('notes') is not None:
            holding.notes = extra['notes']
        if extra.get('tags') is not None:
            holding.tags = list(extra['tags'])
        holding.updated_at = utc_now()
        self.update_metrics()
        return holding

    def remove_holding(self, holding_id: str) -> bool:
        before = len(self.holdings)
        self.holdings = [h for h in self.holdings if h.id != holding_id]
        if len(self.holdings) == before:
            return False
        self.update_metrics()
        return True

    def update_prices(self, price_data: Dict[str, Any]) -> bool:
        """Apply ``{coin_id: {'usd': price, ...}}``; True when any price moved."""
        changed = False
        stamp = utc_now()
        for h in self.holdings:
            entry = price_data.get(h.coin_id)
            if not isinstance(entry, dict) or entry.get('usd') is None:
                continue
            price = float(entry['usd'])
            if price != h.current_price:
                h.current_price = price
                h.updated_at = stamp
                changed = True
        return changed

    # -- views

    def _priced(self) -> List[Holding]:
        return [h for h in self.holdings if h.current_price > 0]

    def top_performers(self, limit: int = 3) -> List[Holding]:
        return sorted(self._priced(), key=lambda h: h.profit_loss_percentage, reverse=True)[:limit]

    def worst_performers(self, limit: int = 3) -> List[Holding]:
        return sorted(self._priced(), key=lambda h: h.profit_loss_percentage)[:limit]

    def allocation(self) -> List[Dict[str, Any]]:
        total = sum(h.current_value for h in self.holdings)
        if total <= 0:
            return []
        rows = [
            {
                'symbol': h.symbol,
                'name': h.name,
                'value': h.current_value,
                'percentage': h.current_value / total * 100,
            }
            for h in self.holdings
        ]
        return sorted(rows, key=lambda r: r['percentage'], reverse=True)

    def summary(self) -> Dict[str, Any]:
        def perf(h: Optional[Holding]):
            if h is None:
                return None
            return {'symbol': h.symbol, 'performance': f'{h.profit_loss_percentage:.2f}'}

        top = self.top_performers(1)
        worst = self.worst_performers(1)
        m = self.portfolio_metrics()
        return {
            'totalValue': m['total_current_value'],
            'totalInvested': m['total_invested'],
            'totalProfitLoss': m['total_profit_loss'],
            'totalProfitLossPercentage': m['total_profit_loss_percentage'],
            'totalHoldings': len(self.holdings),
            'topPerformer': perf(top[0] if top else None),
            'worstPerformer': perf(worst[0] if worst else None),
            'lastUpdated': self.last_updated,
        }

    def to_dict(self) -> Dict[str, Any]:
        m = self.portfolio_metrics()
        return {
            'userId': self.user_id,
            'holdings': [h.to_dict() for h in self.holdings],
            'totalInvested': self.total_invested,
            'totalCurrentValue': self.total_current_value,
            'totalProfitLoss': self.total_profit_loss,
            'totalProfitLossPercentage': self.total_profit_loss_percentage,
            'currentValue': m['total_current_value'],
            'profitLoss': m['total_profit_loss'],
            'profitLossPercentage': m['total_profit_loss_percentage'],
            'portfolioMetrics': {
                'totalInvested': m['total_invested'],
                'totalCurrentValue': m['total_current_value'],
                'totalProfitLoss': m['total_profit_loss'],
                'totalProfitLossPercentage': m['total_profit_loss_percentage'],
                'holdingsCount': m['holdings_count'],
            },
            'settings': copy.deepcopy(self.settings),
            'metadata': dict(self.metadata),
            'createdAt': self.created_at,
            'lastUpdated': self.last_updated,
        }
