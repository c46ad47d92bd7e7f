"""Pydantic request models and validation helpers for the REST and socket APIs."""
from __future__ import annotations
import re
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

SYMBOL_RE = re.compile(r'^[A-Za-z0-9]+$')
COIN_ID_RE = re.compile(r'^[A-Za-z0-9-]+$')

MAX_QUERY_SYMBOLS = 50

_SCRIPT_RE = re.compile(r'<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>', re.IGNORECASE)
_JS_PROTO_RE = re.compile(r'javascript:', re.IGNORECASE)
_INLINE_HANDLER_RE = re.compile(r'on\w+\s*=', re.IGNORECASE)


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra='ignore')


def _check_symbol(v: str) -> str:
    if not SYMBOL_RE.match(v):
        raise ValueError('Symbol must contain only letters and numbers')
    return v


def _check_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    if tags is None:
        return None
    cleaned = [t.strip() for t in tags]
    if any(not 1 <= len(t) <= 50 for t in cleaned):
        raise ValueError('Each tag must be between 1 and 50 characters')
    return cleaned


Symbol = Annotated[str, Field(min_length=1, max_length=10), AfterValidator(_check_symbol)]
Tags = Annotated[Optional[List[str]], AfterValidator(_check_tags)]


class HoldingCreate(_Model):
    symbol: Symbol
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: float = Field(ge=0.00000001)
    purchase_price: float = Field(default=0.0, ge=0, alias='purchasePrice')
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: Tags = None

    def to_holding_data(self) -> Dict[str, Any]:
        symbol = self.symbol.upper()
        return {
            'symbol': symbol,
            'name': self.name or symbol,
            'amount': self.amount,
            'purchase_price': self.purchase_price,
            'notes': self.notes or '',
            'tags': self.tags or [],
        }


class HoldingUpdate(_Model):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[float] = Field(default=None, ge=0.00000001)
    purchase_price: Optional[float] = Field(default=None, ge=0, alias='purchasePrice')
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: Tags = None


class PriceAlert(_Model):
    id: Optional[str] = None
    # Ticker (BTC) or CoinGecko id (bitcoin)
    symbol: str = Field(min_length=1, max_length=50)
    type: Literal['above', 'below', 'change']
    target_price: Optional[float] = Field(default=None, ge=0, alias='targetPrice')
    change_percent: Optional[float] = Field(default=None, ge=0.1, le=100, alias='changePercent')
    enabled: bool = True

    @field_validator('symbol')
    @classmethod
    def _symbol_format(cls, v: str) -> str:
        if not COIN_ID_RE.match(v):
            raise ValueError('Symbol must contain only letters, numbers, and hyphens')
        return v

    @model_validator(mode='after')
    def _threshold_present(self):
        if self.type in ('above', 'below') and self.target_price is None:
            raise ValueError('Target price is required for above/below alerts')
        if self.type == 'change' and self.change_percent is None:
            raise ValueError('Change percent is required for change alerts')
        return self


class AlertSubscription(_Model):
    alerts: List[Dict[str, Any]] = Field(default_factory=list)


class PortfolioSubscription(_Model):
    user_id: Optional[str] = Field(default=None, alias='userId', max_length=100)
    symbols: List[str] = Field(default_factory=list)

    @field_validator('symbols')
    @classmethod
    def _symbols_format(cls, v: List[str]) -> List[str]:
        out = []
        for s in v:
            s = str(s).strip()
            if not s or not COIN_ID_RE.match(s):
                raise ValueError('Invalid symbol format')
            out.append(s)
        return out


class NotificationSettings(_Model):
    price_alerts: Optional[bool] = Field(default=None, alias='priceAlerts')
    portfolio_updates: Optional[bool] = Field(default=None, alias='portfolioUpdates')
    ai_insights: Optional[bool] = Field(default=None, alias='aiInsights')


class PrivacySettings(_Model):
    share_portfolio: Optional[bool] = Field(default=None, alias='sharePortfolio')
    public_profile: Optional[bool] = Field(default=None, alias='publicProfile')


class DisplaySettings(_Model):
    language: Optional[Literal['en', 'es', 'fr', 'de', 'ja']] = None
    refresh_interval: Optional[int] = Field(default=None, ge=10, le=300, alias='refreshInterval')


class UserSettings(_Model):
    currency: Optional[Literal['USD', 'EUR', 'GBP', 'JPY', 'BTC', 'ETH']] = None
    notifications: Optional[NotificationSettings] = None
    privacy: Optional[PrivacySettings] = None
    display: Optional[DisplaySettings] = None

    def to_patch(self) -> Dict[str, Any]:
        """camelCase partial settings with unset fields dropped."""
        return self.model_dump(by_alias=True, exclude_none=True)


class SymbolsRequest(_Model):
    symbols: List[str] = Field(min_length=1, max_length=20)

    @field_validator('symbols')
    @classmethod
    def _each_symbol(cls, v: List[str]) -> List[str]:
        for s in v:
            if not 1 <= len(s) <= 10:
                raise ValueError('Each symbol must be between 1 and 10 characters')
            _check_symbol(s)
        return v


class PredictionRequest(_Model):
    symbol: Symbol


class MarketDataQuery(_Model):
    symbols: Optional[List[str]] = None
    days: int = Field(default=7, ge=1, le=365)
    limit: int = Field(default=100, ge=1, le=250)
    q: Optional[str] = Field(default=None, min_length=1, max_length=100)

    @field_validator('symbols', mode='before')
    @classmethod
    def _split_symbols(cls, v):
        if v is None or isinstance(v, list):
            return v
        parts = [s.strip() for s in str(v).split(',') if s.strip()]
        if len(parts) > MAX_QUERY_SYMBOLS:
            raise ValueError(f'Maximum {MAX_QUERY_SYMBOLS} symbols allowed')
        for s in parts:
            if not COIN_ID_RE.match(s):
                raise ValueError('Invalid symbol format')
        return parts


class CoinIdParam(_Model):
    id: str = Field(min_length=1, max_length=50)

    @field_validator('id')
    @classmethod
    def _id_format(cls, v: str) -> str:
        if not COIN_ID_RE.match(v):
            raise ValueError('ID must contain only letters, numbers, and hyphens')
        return v


def validation_error_response(exc: ValidationError) -> Dict[str, Any]:
    """Body for a 400 reply, one entry per failed field."""
    return {
        'success': False,
        'message': 'Validation failed',
        'errors': [
            {
                'field': '.'.join(str(p) for p in err.get('loc', ())) or None,
                'message': err.get('msg'),
                'value': _json_safe(err.get('input')),
            }
            for err in exc.errors()
        ],
    }


def _json_safe(value):
    if value is None or isinstance(value, (str, int, float, bool, list, dict)):
        return value
    return str(value)


def sanitize(value):
    """Strip script blocks, ``javascript:`` and inline handlers from strings, recursively."""
    if isinstance(value, str):
        value = _SCRIPT_RE.sub('', value)
        value = _JS_PROTO_RE.sub('', value)
        return _INLINE_HANDLER_RE.sub('', value)
    if isinstance(value, dict):
        return {k: sanitize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize(v) for v in value]
    return value


__all__ = [
    'HoldingCreate', 'HoldingUpdate', 'PriceAlert', 'AlertSubscription', 'PortfolioSubscription',
    'UserSettings', 'SymbolsRequest', 'PredictionRequest', 'MarketDataQuery', 'CoinIdParam',
    'ValidationError', 'validation_error_response', 'sanitize',
]
