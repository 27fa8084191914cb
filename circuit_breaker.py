"""
circuit_breaker.py - Circuit breaker for the assignment store backend
"""
from typing import Callable, Optional, Tuple, Type
from enum import Enum
import functools
import threading
import time
from logger import get_logger
from metrics import circuit_breaker_state

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


class CircuitBreakerError(Exception):
    """Raised when circuit is open"""
    pass


class CircuitBreaker:
    """
    Stops calling a failing backend for ``recovery_timeout`` seconds after
    ``failure_threshold`` consecutive failures, then lets one trial call
    through (half-open) to decide whether to close again.

    Shared by all request threads, so state changes happen under a lock.
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Tuple[Type[Exception], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock
        self._lock = threading.Lock()
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        circuit_breaker_state.labels(self.name).set(0)

    def __call__(self, func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    def call(self, func: Callable, *args, **kwargs):
        """Execute function with circuit breaker"""
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._set_state(CircuitState.HALF_OPEN)
                else:
                    raise CircuitBreakerError(f"Circuit breaker '{self.name}' is OPEN")

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self):
        """Force the circuit closed"""
        with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            self._set_state(CircuitState.CLOSED)

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return False
        return self._clock() - self.last_failure_time >= self.recovery_timeout

    def _set_state(self, state: CircuitState):
        self.state = state
        circuit_breaker_state.labels(self.name).set(_STATE_GAUGE_VALUES[state])

    def _on_success(self):
        with self._lock:
            self.failure_count = 0
            if self.state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.CLOSED)
                logger.info(f"Circuit breaker '{self.name}' closed after successful recovery")

    def _on_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()

            if self.state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN)
                logger.warning(f"Circuit breaker '{self.name}' reopened after failure in half-open state")
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                self._set_state(CircuitState.OPEN)
                logger.warning(
                    f"Circuit breaker '{self.name}' opened after {self.failure_count} failures"
                )
