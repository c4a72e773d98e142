"""
MercadoPago Circuit Breaker

Implements the circuit breaker pattern for MercadoPago API calls to prevent
piling up webhook handlers on a gateway that is already failing.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: MercadoPago is failing, block requests to prevent overload
- HALF_OPEN: Testing if MercadoPago has recovered

State is kept in memory per process; a restarted worker starts CLOSED.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from topup_backend.src.billing.shared.exceptions import (
    CircuitBreakerOpenError,
    GatewayUnavailableError,
)

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Circuit breaker for MercadoPago API calls.

    Only retryable gateway failures count towards opening the circuit; a 4xx
    answer means the gateway is healthy.

    Usage:
        breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        result = await breaker.safe_call(client._get, "/v1/payments/123")
    """

    def __init__(
        self,
        circuit_name: str = "mercadopago_api",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exceptions: Tuple[Type[BaseException], ...] = (GatewayUnavailableError,),
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the circuit breaker.

        Args:
            circuit_name: Unique name for this circuit
            failure_threshold: Number of consecutive failures before opening circuit
            recovery_timeout: Seconds to wait before testing recovery
            expected_exceptions: Exception types that count as failures
            clock: Monotonic clock, injectable for tests
        """
        self.circuit_name = circuit_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions
        self._clock = clock
        self._lock = asyncio.Lock()

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self._probe_in_flight = False

    async def safe_call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute a MercadoPago API call with circuit breaker protection.

        Args:
            func: Async function to call
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result from the API call

        Raises:
            CircuitBreakerOpenError: If the circuit is open
        """
        async with self._lock:
            allowed = self._should_allow_request()

        if not allowed:
            logger.warning(f"[CIRCUIT BREAKER] Request blocked - circuit is {self.state.value}")
            raise CircuitBreakerOpenError(self.circuit_name)

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions as e:
            async with self._lock:
                self._record_failure(str(e))
            raise
        except BaseException:
            # Not a gateway health signal; release a half-open probe slot
            async with self._lock:
                self._probe_in_flight = False
            raise

        async with self._lock:
            self._record_success()
        return result

    def get_status(self) -> Dict:
        """
        Get current circuit breaker status.

        Returns:
            Dictionary with circuit state and metrics
        """
        return {
            'circuit_name': self.circuit_name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'success_count': self.success_count,
            'failure_threshold': self.failure_threshold,
            'recovery_timeout': self.recovery_timeout,
            'status': '✅ Healthy' if self.state == CircuitState.CLOSED else f"🔴 {self.state.value.upper()}"
        }

    def _should_allow_request(self) -> bool:
        """Determine if a request should be allowed based on circuit state."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0)
            if elapsed < self.recovery_timeout:
                return False
            self._transition_to_half_open()

        # HALF_OPEN: a single probe at a time
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def _record_success(self) -> None:
        """Record a successful API call - reset circuit to closed."""
        if self.state != CircuitState.CLOSED:
            logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} recovered, closing circuit")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count += 1
        self._probe_in_flight = False

    def _record_failure(self, error_message: str) -> None:
        """Record a failed API call - may open circuit if threshold reached."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        self._probe_in_flight = False

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            logger.warning(
                f"[CIRCUIT BREAKER] Circuit opened due to {self.failure_count} failures: {error_message}"
            )
        else:
            logger.debug(f"[CIRCUIT BREAKER] Recorded failure #{self.failure_count} for {self.circuit_name}")

    def _transition_to_half_open(self) -> None:
        """Transition circuit to half-open state for testing."""
        self.state = CircuitState.HALF_OPEN
        self._probe_in_flight = False
        logger.info(f"[CIRCUIT BREAKER] Transitioned {self.circuit_name} to half-open")
