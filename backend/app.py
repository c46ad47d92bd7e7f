import os
import time
import uuid
import argparse
import logging

from flask import Flask, Response, current_app, g, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO

from config import CONFIG, CONFIG_LIMITS, update_config, public_config
from cache import iso_now
from extensions import limiter
from logging_config import REQUEST_ID_CTX, setup_logging, log_config
from insights_routes import insights_bp
from market_routes import market_bp
from metrics import collect_metrics, render_prometheus
from portfolio_routes import portfolio_bp
from price_updater import PriceUpdater
from realtime import ConnectionRegistry
import portfolio_store

logger = logging.getLogger(__name__)

_ERROR_STATS = {'5xx': 0}

# Changing any of these re-creates the updater's scheduled jobs
_SCHEDULE_KEYS = {'PRICE_UPDATE_INTERVAL', 'PORTFOLIO_SYNC_INTERVAL', 'CACHE_CLEANUP_INTERVAL'}


def _register_hooks(app):
    @app.before_request
    def _before_req():
        g._start_time = time.time()
        g.request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex
        REQUEST_ID_CTX.set(g.request_id)

    @app.after_request
    def _after_req(resp):
        if 500 <= resp.status_code < 600:
            _ERROR_STATS['5xx'] += 1
        rid = getattr(g, 'request_id', None)
        if rid:
            resp.headers['X-Request-ID'] = rid
        return resp

    @app.teardown_request
    def _teardown_req(exc=None):
        REQUEST_ID_CTX.set(None)

    @app.errorhandler(404)
    def _not_found(e):
        return jsonify({'success': False, 'message': 'Route not found'}), 404

    @app.errorhandler(429)
    def _rate_limited(e):
        retry_after = None
        try:
            retry_after = int(e.limit.limit.get_expiry())
        except AttributeError:
            pass
        return jsonify({'success': False, 'message': 'Too many requests', 'retryAfter': retry_after}), 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error(f"Unhandled server error: {e}")
        return jsonify({'success': False, 'message': 'Internal server error'}), 500


def _register_system_routes(app):
    @app.route('/health')
    @limiter.exempt
    def health():
        return jsonify({'status': 'OK', 'timestamp': iso_now()})

    @app.route('/api/health')
    @limiter.exempt
    def api_health():
        updater = current_app.extensions['price_updater']
        return jsonify({
            'ok': True,
            'status': 'ok',
            'uptime_seconds': round(time.time() - app.config['STARTED_AT'], 2),
            'errors_5xx': _ERROR_STATS['5xx'],
            'updater': updater.get_stats(),
            'connections': current_app.extensions['realtime'].connection_stats(),
        })

    def _snapshot():
        return collect_metrics(
            started_at=app.config['STARTED_AT'],
            errors_5xx=_ERROR_STATS['5xx'],
            updater=current_app.extensions['price_updater'],
            registry=current_app.extensions['realtime'],
        )

    @app.route('/api/metrics')
    @limiter.exempt
    def metrics_json():
        return jsonify(_snapshot())

    @app.route('/metrics.prom')
    @limiter.exempt
    def metrics_prom():
        return Response(render_prometheus(_snapshot()), mimetype='text/plain; version=0.0.4')

    @app.route('/api/config')
    def get_config():
        """Get current configuration"""
        return jsonify({
            'config': public_config(),
            'limits': {k: {'type': t.__name__, 'min': lo, 'max': hi} for k, (t, lo, hi) in CONFIG_LIMITS.items()},
        })

    @app.route('/api/config', methods=['POST'])
    def update_config_endpoint():
        """Update tunable settings at runtime.

        Returns JSON: { 'applied': {...}, 'errors': {...} }
        Status codes: 200 all applied, 207 partial, 400 none applied/invalid
        """
        payload = request.get_json(silent=True)
        if not payload or not isinstance(payload, dict):
            return jsonify({'applied': {}, 'errors': {'_payload': 'Invalid or empty payload'}}), 400
        applied, errors = update_config(payload)
        if applied:
            logger.info(f"Config updated: {applied}", extra={'event': 'config_updated'})
            if _SCHEDULE_KEYS & set(applied):
                current_app.extensions['price_updater'].reschedule()
        status = 200 if not errors else (207 if applied else 400)
        return jsonify({'applied': applied, 'errors': errors}), status


def create_app(overrides=None):
    """Build the Flask app and its Socket.IO server; the updater is built but not started."""
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=CONFIG['SECRET_KEY'],
        RATELIMIT_ENABLED=CONFIG['RATELIMIT_ENABLED'],
        RATELIMIT_HEADERS_ENABLED=True,
        STARTED_AT=time.time(),
    )
    if overrides:
        app.config.update(overrides)
    if app.config.get('DB_PATH'):
        CONFIG['DB_PATH'] = app.config['DB_PATH']

    CORS(app, resources={r'/api/*': {'origins': CONFIG['CORS_ALLOWED_ORIGINS']}})
    limiter.init_app(app)

    app.register_blueprint(portfolio_bp)
    app.register_blueprint(market_bp)
    app.register_blueprint(insights_bp)

    _register_hooks(app)
    _register_system_routes(app)

    socketio = SocketIO(app, cors_allowed_origins=[CONFIG['CLIENT_URL']], async_mode='threading')
    registry = ConnectionRegistry().init_app(socketio)
    updater = PriceUpdater(registry)
    app.extensions['realtime'] = registry
    app.extensions['price_updater'] = updater

    portfolio_store.ensure_db()
    return app, socketio


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description='Crypto Portfolio Tracker Backend')
    parser.add_argument('--port', type=int, help='Port to run the server on')
    parser.add_argument('--host', type=str, help='Host to bind the server to')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')
    parser.add_argument('--interval', type=int, help='Price update interval in seconds')
    parser.add_argument('--no-updater', action='store_true', help='Do not start the background price updater')
    return parser.parse_args()


if __name__ == '__main__':
    args = parse_arguments()
    if args.host:
        CONFIG['HOST'] = args.host
    if args.port:
        CONFIG['PORT'] = args.port
    if args.debug:
        CONFIG['DEBUG'] = True
    if args.interval:
        applied, errors = update_config({'PRICE_UPDATE_INTERVAL': args.interval})
        if errors:
            raise SystemExit(f"--interval: {errors['PRICE_UPDATE_INTERVAL']}")

    setup_logging('DEBUG' if CONFIG['DEBUG'] else None)
    log_config(CONFIG)

    app, socketio = create_app()

    # Avoid double-starting the updater under the auto-reloader
    is_primary = os.environ.get('WERKZEUG_RUN_MAIN') in (None, 'true')
    if is_primary and not args.no_updater:
        app.extensions['price_updater'].start()
        logger.info('Background price updater started')

    socketio.run(app, host=CONFIG['HOST'], port=CONFIG['PORT'], debug=CONFIG['DEBUG'],
                 allow_unsafe_werkzeug=True)
