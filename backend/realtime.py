"""Socket.IO price distribution.

``ConnectionRegistry`` keeps two maps: every live connection by sid, and the
set of sids belonging to each user. The price updater pushes through it; the
socket event handlers registered by ``init_app`` maintain it.
"""
from __future__ import annotations
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from flask import request
from pydantic import ValidationError

from cache import iso_now
from config import CONFIG
from market_data import coin_id_for, get_prices_for_symbols
from schemas import AlertSubscription, PortfolioSubscription, PriceAlert

logger = logging.getLogger(__name__)


def format_price(value: float) -> str:
    return ('%.8f' % float(value)).rstrip('0').rstrip('.')


@dataclass
class ClientConnection:
    sid: str
    user_id: Optional[str] = None
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    subscriptions: Set[str] = field(default_factory=set)
    alerts: List[Dict[str, Any]] = field(default_factory=list)


class ConnectionRegistry:
    def __init__(self, socketio=None):
        self.socketio = socketio
        self.connected: Dict[str, ClientConnection] = {}
        self.user_sockets: Dict[str, Set[str]] = {}
        self.started_at = time.time()
        self._lock = threading.RLock()

    # ------------------------------------------------------------ transport

    def _emit(self, event: str, data: Any, to: Optional[str] = None) -> None:
        if self.socketio is None:
            return
        if to is None:
            self.socketio.emit(event, data)
        else:
            self.socketio.emit(event, data, to=to)

    def _sids_for(self, user_id: str) -> List[str]:
        with self._lock:
            return list(self.user_sockets.get(user_id, ()))

    def _detach_user(self, conn: ClientConnection) -> None:
        if not conn.user_id:
            return
        sids = self.user_sockets.get(conn.user_id)
        if sids is None:
            return
        sids.discard(conn.sid)
        if not sids:
            del self.user_sockets[conn.user_id]

    def _touch(self, sid: str) -> Optional[ClientConnection]:
        conn = self.connected.get(sid)
        if conn is not None:
            conn.last_seen = time.time()
        return conn

    # ------------------------------------------------------------ lifecycle

    def register(self, sid: str) -> ClientConnection:
        with self._lock:
            conn = ClientConnection(sid=sid)
            self.connected[sid] = conn
        logger.info(f"Client connected: {sid}", extra={'event': 'ws_connect'})
        return conn

    def authenticate(self, sid: str, user_id: str) -> bool:
        with self._lock:
            conn = self._touch(sid)
            if conn is None or not user_id:
                return False
            if conn.user_id and conn.user_id != user_id:
                self._detach_user(conn)
            conn.user_id = str(user_id)
        logger.info(f"Client authenticated: {user_id}")
        return True

    def subscribe_portfolio(self, sid: str, user_id: Optional[str], symbols: List[str]) -> List[str]:
        """Replace the connection's subscriptions; returns the normalised coin ids."""
        ids = sorted({coin_id_for(s) for s in symbols})
        with self._lock:
            conn = self._touch(sid)
            if conn is None:
                return []
            if user_id:
                if conn.user_id and conn.user_id != user_id:
                    self._detach_user(conn)
                conn.user_id = str(user_id)
            conn.subscriptions = set(ids)
            if conn.user_id:
                self.user_sockets.setdefault(conn.user_id, set()).add(sid)
        logger.info(f"User {user_id} subscribed to: {', '.join(ids)}", extra={'event': 'ws_subscribe'})
        return ids

    def subscribe_alerts(self, sid: str, alerts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        accepted = []
        for raw in alerts:
            try:
                accepted.append(PriceAlert.model_validate(raw).model_dump(by_alias=True))
            except ValidationError as e:
                logger.warning(f"Dropping invalid price alert {raw!r}: {e.error_count()} error(s)")
        with self._lock:
            conn = self._touch(sid)
            if conn is None:
                return []
            conn.alerts = accepted
        logger.info(f"Client {sid} subscribed to {len(accepted)} price alerts")
        return accepted

    def unsubscribe(self, sid: str) -> None:
        with self._lock:
            conn = self._touch(sid)
            if conn is not None:
                self._detach_user(conn)

    def disconnect(self, sid: str) -> None:
        with self._lock:
            conn = self.connected.pop(sid, None)
            if conn is not None:
                self._detach_user(conn)
        logger.info(f"Client disconnected: {sid}", extra={'event': 'ws_disconnect'})

    def cleanup_connections(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        timeout = CONFIG['CONNECTION_IDLE_TIMEOUT']
        with self._lock:
            stale = [c for c in self.connected.values() if now - c.last_seen > timeout]
            for conn in stale:
                self._detach_user(conn)
                del self.connected[conn.sid]
        for conn in stale:
            logger.info(f"Cleaning up inactive connection: {conn.sid}")
        return len(stale)

    # ------------------------------------------------------------ outbound

    def broadcast_price_updates(self, price_data: Dict[str, Any]) -> int:
        """Send each socket the subset of ``price_data`` it subscribed to; returns sockets reached."""
        if self.socketio is None or not self.connected:
            return 0
        timestamp = iso_now()
        with self._lock:
            targets = [(c.sid, set(c.subscriptions)) for c in self.connected.values() if c.subscriptions]
        sent = 0
        for sid, subs in targets:
            filtered = {cid: price_data[cid] for cid in subs if cid in price_data}
            if filtered:
                self._emit('priceUpdate', {'prices': filtered, 'timestamp': timestamp}, to=sid)
                sent += 1
        return sent

    def _emit_to_user(self, user_id: str, event: str, key: str, payload: Any) -> int:
        sids = self._sids_for(user_id)
        body = {key: payload, 'timestamp': iso_now()}
        for sid in sids:
            self._emit(event, body, to=sid)
        return len(sids)

    def broadcast_portfolio_update(self, user_id: str, portfolio: Dict[str, Any]) -> int:
        return self._emit_to_user(user_id, 'portfolioUpdate', 'portfolio', portfolio)

    def send_price_alert(self, user_id: str, alert: Dict[str, Any]) -> int:
        return self._emit_to_user(user_id, 'priceAlert', 'alert', alert)

    def broadcast_ai_insights(self, user_id: str, insights: Any) -> int:
        return self._emit_to_user(user_id, 'aiInsights', 'insights', insights)

    def broadcast_market_news(self, news: Any) -> None:
        self._emit('marketNews', {'news': news, 'timestamp': iso_now()})

    def broadcast_system_notification(self, notification: Any) -> None:
        self._emit('systemNotification', {'notification': notification, 'timestamp': iso_now()})

    def check_price_alerts(self, price_data: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Evaluate every stored alert; emits ``priceAlert`` per hit and returns the hits."""
        with self._lock:
            snapshot = [(c.sid, c.user_id, list(c.alerts)) for c in self.connected.values() if c.alerts]
        triggered = []
        for sid, user_id, alerts in snapshot:
            for alert in alerts:
                if not alert.get('enabled', True):
                    continue
                entry = price_data.get(coin_id_for(alert['symbol'])) or {}
                price = entry.get('usd')
                if not price:
                    continue
                label = alert['symbol'].upper()
                message = None
                if alert['type'] == 'above' and price > alert['targetPrice']:
                    message = f"{label} is now above ${format_price(alert['targetPrice'])}"
                elif alert['type'] == 'below' and price < alert['targetPrice']:
                    message = f"{label} is now below ${format_price(alert['targetPrice'])}"
                elif alert['type'] == 'change':
                    change = entry.get('usd_24h_change')
                    if change is not None and abs(change) > alert['changePercent']:
                        message = f"{label} changed by {change:.2f}%"
                if message is None:
                    continue
                fired = {**alert, 'currentPrice': price, 'message': message, 'triggeredAt': iso_now()}
                self._emit('priceAlert', {'alert': fired, 'timestamp': iso_now()}, to=sid)
                triggered.append({'sid': sid, 'userId': user_id, 'alert': fired})
        if triggered:
            logger.info(f"Triggered {len(triggered)} price alert(s)", extra={'event': 'price_alerts'})
        return triggered

    def connection_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'totalConnections': len(self.connected),
                'authenticatedUsers': sum(1 for c in self.connected.values() if c.user_id),
                'totalSubscriptions': len(self.user_sockets),
                'uptime': time.time() - self.started_at,
            }

    # ------------------------------------------------------------ handlers

    def init_app(self, socketio) -> 'ConnectionRegistry':
        """Bind to a Flask-SocketIO server and register the event handlers."""
        self.socketio = socketio
        registry = self

        @socketio.on('connect')
        def _on_connect(auth=None):
            registry.register(request.sid)

        @socketio.on('authenticate')
        def _on_authenticate(data=None):
            user_id = (data or {}).get('userId') if isinstance(data, dict) else None
            if not registry.authenticate(request.sid, user_id):
                logger.warning(f"Ignoring authenticate without userId from {request.sid}")

        @socketio.on('subscribe-portfolio')
        def _on_subscribe_portfolio(data=None):
            sid = request.sid
            try:
                sub = PortfolioSubscription.model_validate(data or {})
            except ValidationError as e:
                logger.warning(f"Invalid subscribe-portfolio payload from {sid}: {e.error_count()} error(s)")
                return
            ids = registry.subscribe_portfolio(sid, sub.user_id, sub.symbols)
            if not ids:
                return
            try:
                prices = get_prices_for_symbols(ids)
            except Exception as e:
                logger.error(f"Error sending initial portfolio data: {e}")
                return
            registry._emit('priceUpdate', {'prices': prices, 'timestamp': iso_now()}, to=sid)

        @socketio.on('subscribe-alerts')
        def _on_subscribe_alerts(data=None):
            try:
                sub = AlertSubscription.model_validate(data or {})
            except ValidationError as e:
                logger.warning(f"Invalid subscribe-alerts payload from {request.sid}: {e.error_count()} error(s)")
                return
            registry.subscribe_alerts(request.sid, sub.alerts)

        @socketio.on('unsubscribe')
        def _on_unsubscribe(data=None):
            registry.unsubscribe(request.sid)

        @socketio.on('disconnect')
        def _on_disconnect(*args):
            registry.disconnect(request.sid)

        @socketio.on('ping')
        def _on_ping(data=None):
            registry._touch(request.sid)
            registry._emit('pong', {'timestamp': iso_now()}, to=request.sid)

        return self
