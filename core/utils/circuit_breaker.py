"""
Circuit breaker pattern implementation for upstream resilience.
"""

import inspect
import time
from enum import Enum
from typing import Optional, Callable, Any, Tuple, Type

from core.logging import get_error_logger_safe


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Circuit tripped, failing fast
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitOpenError(RuntimeError):
    """Raised instead of calling the protected function while the circuit is open"""
    pass


class CircuitBreaker:
    """Circuit breaker for upstream calls"""

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exceptions: Tuple[Type[BaseException], ...] = (Exception,)
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED

        self.logger = get_error_logger_safe("circuit_breaker").bind(circuit=name)

    async def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection"""

        # If circuit is OPEN, check if we should try recovery
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                self.logger.info("Circuit breaker moving to HALF_OPEN for testing")
            else:
                raise CircuitOpenError(f"Circuit breaker '{self.name}' is OPEN - failing fast")

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except self.expected_exceptions:
            self._record_failure()
            raise

        if self.state == CircuitState.HALF_OPEN:
            self.logger.info("Circuit breaker reset to CLOSED - service recovered")
        self._reset()
        return result

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset"""
        if self.last_failure_time is None:
            return True

        return time.monotonic() - self.last_failure_time >= self.recovery_timeout

    def _record_failure(self):
        """Record a failure and potentially trip the circuit"""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.logger.error("Circuit breaker TRIPPED",
                              failure_count=self.failure_count,
                              recovery_timeout_seconds=self.recovery_timeout)

    def _reset(self):
        """Reset circuit breaker to normal operation"""
        self.failure_count = 0
        self.last_failure_time = None
        self.state = CircuitState.CLOSED
