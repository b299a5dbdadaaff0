"""
Rating Engine - Retry Logic with Exponential Backoff

Bounded retry utilities for:
- Rating storage writes (at most two retries, then StorageFailure)
- Security event delivery to an external audit endpoint

Features:
- Exponential backoff with jitter
- Configurable retryable and non-retryable exception types
- Circuit breaker integration

Usage:
    from retry import retry_call, RetryConfig

    # Functional usage
    retry_call(store.insert, args=(record,), config=RetryConfig.from_env(),
               circuit_breaker_name="storage")

    # Decorator usage
    @retry_with_backoff(max_retries=3, base_delay=0.5)
    def post_event():
        ...

Environment Variables:
    RETRY_MAX_ATTEMPTS=2
    RETRY_BASE_DELAY=0.05
    RETRY_MAX_DELAY=1.0
    RETRY_JITTER=0.1
"""

import logging
import os
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base class for errors that should trigger a retry."""
    pass


class CircuitOpenError(ConnectionError):
    """Raised instead of calling through while a circuit breaker is open."""
    pass


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, requests allowed
    OPEN = "open"          # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 2
    max_delay: float = 1.0

    base_delay: float = 0.05
    exponential_base: float = 2.0
    jitter: float = 0.1

    retryable_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
        OSError,
    )
    # Checked first; a match is never retried even if it also matches above
    non_retryable_exceptions: tuple = ()

    log_retries: bool = True
    log_level: int = logging.WARNING

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """Create configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("RETRY_MAX_ATTEMPTS", "2")),
            base_delay=float(os.getenv("RETRY_BASE_DELAY", "0.05")),
            max_delay=float(os.getenv("RETRY_MAX_DELAY", "1.0")),
            jitter=float(os.getenv("RETRY_JITTER", "0.1")),
        )


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    Prevents cascading failures by temporarily blocking requests
    when a service is experiencing problems.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if time.time() - self._last_failure_time >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")

            return self._state

    def is_allowed(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (recovered)")
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (still failing)")

            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._state = CircuitState.OPEN
                    logger.warning(
                        f"Circuit {self.name}: CLOSED -> OPEN "
                        f"(failures: {self._failure_count})"
                    )

    def reset(self):
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = 0.0


# Global circuit breakers by name
_circuit_breakers: dict[str, CircuitBreaker] = {}
_circuit_breakers_lock = threading.Lock()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    with _circuit_breakers_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
        return _circuit_breakers[name]


def reset_circuit_breakers() -> None:
    with _circuit_breakers_lock:
        _circuit_breakers.clear()


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        exponential_base: Multiplier for exponential growth
        max_delay: Maximum delay cap
        jitter: Random jitter factor (0.0 to 1.0)

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter > 0:
        delay += delay * jitter * (2 * random.random() - 1)

    return max(0, delay)


def is_retryable_exception(
    exception: Exception,
    retryable_types: tuple[type[Exception], ...],
    non_retryable_types: tuple[type[Exception], ...] = (),
) -> bool:
    """Check if an exception should trigger a retry."""
    if non_retryable_types and isinstance(exception, non_retryable_types):
        return False
    if isinstance(exception, RetryableError):
        return True
    return isinstance(exception, retryable_types)


def is_retryable_status_code(status_code: int, retryable_codes: tuple[int, ...] = (429, 500, 502, 503, 504)) -> bool:
    """Check if an HTTP status code should trigger a retry."""
    return status_code in retryable_codes


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: float = 0.1,
    retryable_exceptions: tuple = (ConnectionError, TimeoutError, OSError),
    circuit_breaker_name: str | None = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Random jitter factor (0.0 to 1.0)
        retryable_exceptions: Tuple of exception types to retry
        circuit_breaker_name: Optional circuit breaker name

    Returns:
        Decorated function with retry logic
    """
    config = RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
        retryable_exceptions=retryable_exceptions,
    )

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return retry_call(
                func,
                args=args,
                kwargs=kwargs,
                config=config,
                circuit_breaker_name=circuit_breaker_name,
            )

        return wrapper
    return decorator


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    circuit_breaker_name: str | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> Any:
    """
    Execute a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments
        kwargs: Keyword arguments
        config: Retry configuration
        circuit_breaker_name: Optional circuit breaker name
        on_retry: Optional callback called on each retry (attempt, exception, delay)

    Returns:
        Result of the function call

    Raises:
        CircuitOpenError: If the named circuit breaker is open
        The last exception once retries are exhausted, or any non-retryable one
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}
    name = getattr(func, "__name__", "call")

    circuit = get_circuit_breaker(circuit_breaker_name) if circuit_breaker_name else None

    for attempt in range(config.max_retries + 1):
        if circuit and not circuit.is_allowed():
            raise CircuitOpenError(f"Circuit breaker {circuit_breaker_name} is open")

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_exception(e, config.retryable_exceptions, config.non_retryable_exceptions):
                raise

            if circuit:
                circuit.record_failure()

            if attempt >= config.max_retries:
                if config.log_retries:
                    logger.log(config.log_level, f"Max retries ({config.max_retries}) exceeded for {name}: {e}")
                raise

            delay = calculate_delay(
                attempt,
                config.base_delay,
                config.exponential_base,
                config.max_delay,
                config.jitter
            )

            if config.log_retries:
                logger.log(
                    config.log_level,
                    f"Retry {attempt + 1}/{config.max_retries} for {name} after {delay:.2f}s: {e}"
                )
            if on_retry:
                on_retry(attempt + 1, e, delay)

            time.sleep(delay)
        else:
            if circuit:
                circuit.record_success()
            return result

    raise RuntimeError("unreachable")  # pragma: no cover
