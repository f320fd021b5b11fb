"""Circuit breaker guarding calls into the remote store."""

import time
from enum import Enum
from typing import Callable, Any, Optional, Dict
import logging

from .exceptions import CircuitOpenError


class CircuitState(Enum):
    """States of the circuit breaker."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, blocking requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker for protecting against cascading failures.

    Only ``UnavailableError`` counts as a failure; business errors such as
    ``NotFoundError`` pass through without affecting the circuit.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 name: str = "remote_store",
                 clock: Callable[[], float] = time.time):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            recovery_timeout: Seconds to wait before trying half-open
            name: Name for logging and identification
            clock: Time source in seconds
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._success_count = 0
        self._total_requests = 0

        self.logger = logging.getLogger(f"{__name__}.{name}")

    def before_call(self) -> None:
        """Raise CircuitOpenError if the circuit refuses calls right now."""
        self._total_requests += 1

        if self._state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._state = CircuitState.HALF_OPEN
                self.logger.info(f"Circuit breaker {self.name} transitioning to half-open")
            else:
                raise CircuitOpenError(
                    self.name, self._failure_count, self.failure_threshold
                )

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset."""
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.recovery_timeout

    def record_success(self) -> None:
        """Handle successful execution."""
        self._success_count += 1

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self.logger.info(f"Circuit breaker {self.name} closed after successful recovery")
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Handle failed execution."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self.logger.warning(
                f"Circuit breaker {self.name} reopened - recovery attempt failed"
            )
        elif self._failure_count >= self.failure_threshold and self._state == CircuitState.CLOSED:
            self._state = CircuitState.OPEN
            self.logger.warning(
                f"Circuit breaker {self.name} opened after {self._failure_count} failures"
            )

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    @property
    def failure_count(self) -> int:
        """Get current failure count."""
        return self._failure_count

    def get_metrics(self) -> Dict[str, Any]:
        """Get circuit breaker metrics."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_requests": self._total_requests,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "last_failure_time": self._last_failure_time,
        }
