"""
Circuit breaker utility for resilience.
Stops calling an upstream (AWS Pricing, STS, the AI provider) for a while
after repeated failures instead of letting every request wait on it.
"""
from enum import Enum
from datetime import datetime
import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)


# Circuit breaker configuration constants
FAILURE_THRESHOLD = 3  # Trip breaker after N consecutive failures
OPEN_STATE_DURATION = 60  # Seconds to remain OPEN before transitioning to HALF_OPEN
HALF_OPEN_MAX_REQUESTS = 1  # Max requests allowed in HALF_OPEN state


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing fast, not calling upstream
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerError(Exception):
    """Raised when circuit breaker is open."""
    pass


class CircuitBreaker:
    """
    Circuit breaker for protecting against cascading failures.

    State machine:
    - CLOSED -> OPEN: After failure_threshold consecutive failures
    - OPEN -> HALF_OPEN: After open_duration seconds
    - HALF_OPEN -> CLOSED: On successful request
    - HALF_OPEN -> OPEN: On failure during test

    Callers may run in worker threads (boto3 calls), so state changes are
    guarded by a lock.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = FAILURE_THRESHOLD,
        open_duration: int = OPEN_STATE_DURATION,
        half_open_max_requests: int = HALF_OPEN_MAX_REQUESTS
    ):
        """
        Initialize circuit breaker.

        Args:
            service_name: Name of the service (e.g., "aws_pricing", "aws_sts")
            failure_threshold: Number of consecutive failures before opening
            open_duration: Seconds to remain OPEN before HALF_OPEN
            half_open_max_requests: Max requests allowed in HALF_OPEN state
        """
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.open_duration = open_duration
        self.half_open_max_requests = half_open_max_requests

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.opened_at: Optional[datetime] = None
        self.half_open_requests = 0
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        """
        Check if request should be allowed.

        Returns:
            True if request should proceed, False if circuit is open
        """
        with self._lock:
            if self.state == CircuitState.OPEN:
                elapsed = (datetime.now() - self.opened_at).total_seconds() if self.opened_at else 0
                if elapsed < self.open_duration:
                    return False
                logger.warning(
                    f"Circuit breaker for {self.service_name}: OPEN -> HALF_OPEN (testing recovery)"
                )
                self.state = CircuitState.HALF_OPEN
                self.half_open_requests = 0

            if self.state == CircuitState.HALF_OPEN:
                if self.half_open_requests < self.half_open_max_requests:
                    self.half_open_requests += 1
                    return True
                return False

            return True

    def record_success(self) -> None:
        """Reset failure count; a HALF_OPEN circuit closes."""
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit breaker for {self.service_name}: HALF_OPEN -> CLOSED (service recovered)"
                )
                self.state = CircuitState.CLOSED
                self.half_open_requests = 0
                self.opened_at = None
            self.failure_count = 0

    def record_failure(self) -> None:
        """Count a failure and open the circuit when the threshold is reached."""
        with self._lock:
            now = datetime.now()
            self.failure_count += 1
            self.last_failure_time = now

            if self.state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit breaker for {self.service_name}: HALF_OPEN -> OPEN (service still failing)"
                )
                self.state = CircuitState.OPEN
                self.opened_at = now
                self.half_open_requests = 0
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                logger.warning(
                    f"Circuit breaker for {self.service_name}: "
                    f"CLOSED -> OPEN ({self.failure_count} consecutive failures)"
                )
                self.state = CircuitState.OPEN
                self.opened_at = now

    def current_state(self) -> CircuitState:
        return self.state

    def reset(self) -> None:
        """Force the circuit closed."""
        with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.half_open_requests = 0
            self.opened_at = None


# Global circuit breaker instances (one per service)
_circuit_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(service_name: str) -> CircuitBreaker:
    """
    Get or create circuit breaker for a service.

    Args:
        service_name: Name of the service

    Returns:
        CircuitBreaker instance for the service
    """
    with _registry_lock:
        if service_name not in _circuit_breakers:
            _circuit_breakers[service_name] = CircuitBreaker(service_name)
        return _circuit_breakers[service_name]


def reset_circuit_breakers() -> None:
    """Close every registered circuit."""
    with _registry_lock:
        breakers = list(_circuit_breakers.values())
    for breaker in breakers:
        breaker.reset()
