"""Circuit breaker guarding the CoinGecko client.

After ``fail_threshold`` consecutive failures the breaker opens and callers
skip the network (market_data serves mock data instead). Once
``reset_seconds`` have passed one trial request is let through: success
closes the breaker, failure reopens it for another full window.
"""
from __future__ import annotations
import logging
import threading
import time
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

CLOSED, OPEN, HALF_OPEN = 'CLOSED', 'OPEN', 'HALF_OPEN'


class CircuitBreaker:
    def __init__(self, name: str, fail_threshold: int, reset_seconds: float,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.failures = 0
        self.state = CLOSED
        self.open_until = 0.0
        self._trial_taken = False

    def _trip(self, event: str) -> None:
        # caller holds the lock
        self.state = OPEN
        self.open_until = self._clock() + self.reset_seconds
        self._trial_taken = False
        logger.warning(f"{self.name} circuit {event} after {self.failures} failures",
                       extra={'event': f'circuit_{event}', 'breaker': self.name, 'failures': self.failures})

    def allow(self) -> bool:
        """May the caller hit upstream now? Claims the trial slot when half-open."""
        with self._lock:
            if self.state == OPEN:
                if self._clock() < self.open_until:
                    return False
                self.state = HALF_OPEN
            if self.state == HALF_OPEN:
                if self._trial_taken:
                    return False
                self._trial_taken = True
            return True

    def record_success(self) -> None:
        with self._lock:
            recovered = self.state != CLOSED
            self._clear()
        if recovered:
            logger.info(f"{self.name} circuit closed", extra={'event': 'circuit_reset', 'breaker': self.name})

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1
            if self.state == HALF_OPEN:
                self._trip('reopen')
            elif self.state == CLOSED and self.failures >= self.fail_threshold:
                self._trip('open')

    def _clear(self) -> None:
        self.failures = 0
        self.state = CLOSED
        self.open_until = 0.0
        self._trial_taken = False

    def reset(self) -> None:
        with self._lock:
            self._clear()

    def retry_after(self) -> float:
        """Seconds until a trial call is allowed; 0 unless open."""
        with self._lock:
            if self.state != OPEN:
                return 0.0
            return max(0.0, round(self.open_until - self._clock(), 3))

    def snapshot(self) -> Dict[str, Any]:
        retry = self.retry_after()
        with self._lock:
            return {
                'name': self.name,
                'state': self.state,
                'failures': self.failures,
                'open_until': self.open_until,
                'retry_after': retry,
                'is_open': self.state != CLOSED,
                'is_half_open': self.state == HALF_OPEN,
            }


__all__ = ['CircuitBreaker', 'CLOSED', 'OPEN', 'HALF_OPEN']
