"""Root logger wiring for the tracker.

Every record carries the request id of the HTTP call that produced it (None
for the price updater thread and socket handlers). Structured fields passed
through ``extra=`` (``event``, ``symbol_count`` ...) are kept as keys in JSON
mode so log shippers can filter on them.
"""
import json
import logging
import os
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler

from config import SECRET_KEYS

REQUEST_ID_CTX: ContextVar[str | None] = ContextVar('request_id', default=None)

LOG_DIR = os.environ.get('LOG_DIR', 'logs')
LOG_FILE = os.path.join(LOG_DIR, 'portfolio_tracker.log')
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

TEXT_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(correlation_id)s - %(message)s'
NOISY_LOGGERS = ('urllib3', 'engineio', 'socketio', 'werkzeug', 'schedule')

# Attributes every LogRecord has; anything else arrived through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = REQUEST_ID_CTX.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        out = {
            'ts': self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S%z'),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                out[key] = value
        if record.exc_info:
            out['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=False, default=str)


def _level(name):
    return getattr(logging, str(name).upper(), logging.INFO)


def _file_handler():
    try:
        os.makedirs(LOG_DIR, exist_ok=True)
        return RotatingFileHandler(LOG_FILE, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS)
    except OSError as e:
        logging.getLogger(__name__).warning(f"Log file disabled ({e}); console only")
        return None


def setup_logging(level=None):
    """(Re)build root handlers. ``level`` overrides LOG_LEVEL."""
    root = logging.getLogger()
    root.setLevel(_level(level or os.environ.get('LOG_LEVEL', 'INFO')))
    # Drop handlers from a previous call (reloader, tests)
    root.handlers = []
    as_json = os.environ.get('LOG_FORMAT', '').lower() == 'json'
    fmt = JsonFormatter() if as_json else logging.Formatter(TEXT_FORMAT)
    correlation = CorrelationIdFilter()
    for handler in (logging.StreamHandler(), _file_handler()):
        if handler is None:
            continue
        handler.setFormatter(fmt)
        handler.addFilter(correlation)
        root.addHandler(handler)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_config(config):
    """Startup banner of the effective settings, secrets masked."""
    logger = logging.getLogger('config')
    logger.info('=== Portfolio Tracker Configuration ===')
    for key in sorted(config):
        value = config[key]
        if key in SECRET_KEYS and value:
            value = '***'
        logger.info(f"{key}: {value}")
