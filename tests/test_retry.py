"""
Tests for retry with backoff and circuit breakers.
"""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from retry import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    RetryableError,
    RetryConfig,
    calculate_delay,
    get_circuit_breaker,
    is_retryable_exception,
    is_retryable_status_code,
    retry_call,
    retry_with_backoff,
)
from storage.base import StorageIntegrityError, StorageWriteError

FAST = RetryConfig(max_retries=2, base_delay=0, jitter=0, log_retries=False)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("retry.time.sleep"):
        yield


class TestCalculateDelay:
    def test_exponential(self):
        assert calculate_delay(0, 0.1, 2.0, 10.0, 0) == pytest.approx(0.1)
        assert calculate_delay(2, 0.1, 2.0, 10.0, 0) == pytest.approx(0.4)

    def test_capped(self):
        assert calculate_delay(10, 1.0, 2.0, 5.0, 0) == 5.0

    def test_jitter_bounds(self):
        for _ in range(50):
            assert 0.9 <= calculate_delay(0, 1.0, 2.0, 10.0, 0.1) <= 1.1


class TestRetryableClassification:
    def test_retryable_types(self):
        assert is_retryable_exception(ConnectionError(), (ConnectionError,))
        assert not is_retryable_exception(ValueError(), (ConnectionError,))

    def test_explicit_marker(self):
        assert is_retryable_exception(RetryableError(), ())

    def test_non_retryable_wins(self):
        assert not is_retryable_exception(
            StorageIntegrityError("dup"), (StorageWriteError,), (StorageIntegrityError,)
        )

    def test_status_codes(self):
        assert is_retryable_status_code(503)
        assert is_retryable_status_code(429)
        assert not is_retryable_status_code(400)


class TestRetryCall:
    def test_success_first_try(self):
        func = MagicMock(return_value="ok")
        assert retry_call(func, config=FAST) == "ok"
        assert func.call_count == 1

    def test_bounded_retries(self):
        func = MagicMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            retry_call(func, config=FAST)
        assert func.call_count == 3

    def test_recovers(self):
        func = MagicMock(side_effect=[TimeoutError(), "ok"])
        assert retry_call(func, config=FAST) == "ok"

    def test_non_retryable_raised_immediately(self):
        func = MagicMock(side_effect=ValueError("bad"))
        with pytest.raises(ValueError):
            retry_call(func, config=FAST)
        assert func.call_count == 1

    def test_on_retry_callback(self):
        calls = []
        func = MagicMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])
        retry_call(func, config=FAST, on_retry=lambda attempt, exc, delay: calls.append(attempt))
        assert calls == [1, 2]

    def test_circuit_opens(self):
        func = MagicMock(side_effect=ConnectionError("down"))
        config = RetryConfig(max_retries=0, base_delay=0, jitter=0, log_retries=False)
        for _ in range(5):
            with pytest.raises(ConnectionError):
                retry_call(func, config=config, circuit_breaker_name="test-storage")
        with pytest.raises(CircuitOpenError):
            retry_call(func, config=config, circuit_breaker_name="test-storage")
        assert func.call_count == 5

    def test_circuit_open_error_is_connection_error(self):
        assert issubclass(CircuitOpenError, ConnectionError)


class TestRetryDecorator:
    def test_decorated_function_retried(self):
        attempts = {"n": 0}

        @retry_with_backoff(max_retries=2, base_delay=0, jitter=0)
        def flaky():
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise RetryableError("again")
            return "done"

        assert flaky() == "done"
        assert attempts["n"] == 3


class TestCircuitBreaker:
    def test_half_open_after_recovery(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_registry_returns_same_instance(self):
        assert get_circuit_breaker("shared") is get_circuit_breaker("shared")
