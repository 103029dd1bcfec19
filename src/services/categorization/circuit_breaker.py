"""
Circuit breaker for calls into the shared cache tier.
"""

import time
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from services.categorization.config import CircuitBreakerConfig
from services.categorization.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CircuitState(str, Enum):
    CLOSED = "closed"        # Calls pass through, failures counted
    OPEN = "open"            # Calls rejected until the cooldown elapses
    HALF_OPEN = "half_open"  # A single trial call decides the next state


class CircuitBreaker:
    """
    Closed -> open after failure_threshold consecutive failures. While open,
    calls fail fast with CircuitOpenError. After cooldown_seconds the next call
    is let through as a trial (half open): success closes the circuit and
    resets the failure count, failure reopens it and restarts the cooldown.

    Every transition and every rejection is counted.
    """

    def __init__(
        self,
        name: str = "pattern-cache",
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_in_flight = 0
        self._generation = 0
        self._counters: Dict[str, int] = {
            'calls': 0,
            'successes': 0,
            'failures': 0,
            'rejections': 0,
            'opened': 0,
            'half_opened': 0,
            'closed': 0,
        }

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Invoke func through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open or a trial call is already in flight
            Exception: Whatever func raises, after it has been counted as a failure
        """
        generation = self._before_call()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure(generation)
            raise
        self._on_success(generation)
        return result

    def reset(self) -> None:
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._failure_count = 0
            self._opened_at = None
            self._half_open_in_flight = 0

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                'name': self.name,
                'state': self._state.value,
                'failure_count': self._failure_count,
                **self._counters,
            }

    def _before_call(self) -> int:
        """Admit a call and return the state generation it was admitted under."""
        with self._lock:
            self._maybe_half_open()

            if self._state == CircuitState.OPEN:
                self._counters['rejections'] += 1
                raise CircuitOpenError(
                    f"Circuit '{self.name}' is open",
                    retry_after_seconds=self._remaining_cooldown()
                )

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.half_open_max_calls:
                    self._counters['rejections'] += 1
                    raise CircuitOpenError(
                        f"Circuit '{self.name}' is half open and a trial call is in flight"
                    )
                self._half_open_in_flight += 1

            self._counters['calls'] += 1
            return self._generation

    def _on_success(self, generation: int) -> None:
        with self._lock:
            self._counters['successes'] += 1
            if generation != self._generation:
                # admitted before the last transition; only the current trial decides
                return
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = 0
                self._transition(CircuitState.CLOSED)
                logger.info(f"Circuit '{self.name}' closed after successful trial call")
            self._failure_count = 0

    def _on_failure(self, generation: int) -> None:
        with self._lock:
            self._counters['failures'] += 1
            if generation != self._generation:
                return
            self._failure_count += 1

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = 0
                self._open()
                logger.warning(f"Circuit '{self.name}' trial call failed, reopening")
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
                self._open()
                logger.warning(
                    f"Circuit '{self.name}' opened after {self._failure_count} consecutive failures",
                    extra={'circuit': self.name, 'failure_count': self._failure_count}
                )

    def _open(self) -> None:
        self._transition(CircuitState.OPEN)
        self._opened_at = self._clock()

    def _maybe_half_open(self) -> None:
        # caller holds the lock
        if self._state == CircuitState.OPEN and self._remaining_cooldown() <= 0:
            self._transition(CircuitState.HALF_OPEN)
            self._half_open_in_flight = 0
            logger.info(f"Circuit '{self.name}' half open, allowing a trial call")

    def _remaining_cooldown(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.config.cooldown_seconds - self._clock())

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        counter = {
            CircuitState.OPEN: 'opened',
            CircuitState.HALF_OPEN: 'half_opened',
            CircuitState.CLOSED: 'closed',
        }[new_state]
        self._counters[counter] += 1
        self._generation += 1
        logger.debug(f"Circuit '{self.name}' {self._state.value} -> {new_state.value}")
        self._state = new_state
