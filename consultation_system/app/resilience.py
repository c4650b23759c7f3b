"""
Resilience patterns for calls into the booking service
"""

import threading
import time
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception, before_sleep_log

from .errors import TransientError, ServiceUnavailable

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing if service has recovered


class CircuitBreaker:
    """
    Circuit breaker keyed by endpoint.

    - Opens after `failure_threshold` consecutive failures
    - Lets one trial call through once `recovery_timeout` seconds have passed
    - Thread-safe implementation
    """

    def __init__(self, failure_threshold=5, recovery_timeout=60, clock=None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.lock = threading.Lock()
        self.states = {}

    def _state_for(self, key):
        if key not in self.states:
            self.states[key] = {
                "failure_count": 0,
                "last_failure_time": None,
                "state": CircuitState.CLOSED,
            }
        return self.states[key]

    def state(self, key) -> CircuitState:
        with self.lock:
            return self._state_for(key)["state"]

    def is_open(self, key) -> bool:
        """Check if the circuit is open for key"""
        with self.lock:
            state = self._state_for(key)
            if state["state"] == CircuitState.OPEN:
                if (self.clock() - state["last_failure_time"]).total_seconds() >= self.recovery_timeout:
                    state["state"] = CircuitState.HALF_OPEN
                    logging.info(f"Circuit breaker HALF-OPEN for {key}")
                    return False
                return True
            return False

    def record_success(self, key):
        with self.lock:
            state = self._state_for(key)
            old_state = state["state"]
            state["failure_count"] = 0
            state["state"] = CircuitState.CLOSED
            if old_state != CircuitState.CLOSED:
                logging.info(f"Circuit breaker CLOSED for {key}")

    def record_failure(self, key):
        with self.lock:
            state = self._state_for(key)
            state["failure_count"] += 1
            state["last_failure_time"] = self.clock()
            # A failed trial call re-opens immediately.
            if state["state"] == CircuitState.HALF_OPEN or state["failure_count"] >= self.failure_threshold:
                state["state"] = CircuitState.OPEN
                logging.warning(f"Circuit breaker OPEN for {key} ({state['failure_count']} failures)")


def with_retry(max_attempts: int = 3, delay: float = 0.5, retry_on=(TransientError,), sleep=time.sleep):
    """
    Decorator for retrying failed operations with exponential backoff

    Args:
        max_attempts: Maximum number of attempts
        delay: Delay before the first retry in seconds, doubled each time
        retry_on: Exception types worth retrying

    An open circuit is never retried.
    """
    def should_retry(exc):
        return isinstance(exc, retry_on) and not isinstance(exc, ServiceUnavailable)

    def decorator(func: Callable) -> Callable:
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=delay),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep_log(logger, logging.INFO),
            sleep=sleep,
            reraise=True,
        )(func)

    return decorator
