"""
Pytest configuration and shared fixtures for rating engine tests.

This module provides shared fixtures and test configuration including:
- A controllable clock
- In-memory engines with synchronous broadcasting
- Flask test client wired to a test engine
- Metric and circuit breaker reset between tests
"""

import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["RATING_ENGINE_API_KEY"] = "test-api-key-12345"
os.environ["RATING_ENGINE_REQUIRE_AUTH"] = "true"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SECURITY_WEBHOOK_URL", None)
os.environ["STORAGE_BACKEND"] = "memory"

API_KEY = "test-api-key-12345"

# Fixed starting point for the fake clock (2024-01-01T00:00:00Z)
T0 = 1704067200.0


class FakeClock:
    """Monotonic test clock; call it like time.time."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def sample_identity(n: int = 0) -> str:
    """A 64-character hex digest distinct for each n."""
    return f"{n:064x}"


def make_engine(clock=None, store=None, **config_overrides):
    """In-memory engine with inline broadcasting and no startup rebuild."""
    from rating_engine import EngineConfig, RatingEngine
    from scaling.cache import LocalCache
    from scaling.locking import LocalLockManager
    from storage.memory import MemoryRatingStore

    clock = clock or FakeClock()
    options = {
        "asynchronous_broadcast": False,
        "rebuild_on_start": False,
        "forward_security_events": False,
    }
    options.update(config_overrides)
    config = EngineConfig(**options)
    return RatingEngine(
        config=config,
        store=store if store is not None else MemoryRatingStore(),
        lock_manager=LocalLockManager(),
        cache=LocalCache(clock=clock),
        clock=clock,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    engine = make_engine(clock)
    yield engine
    engine.close()


@pytest.fixture
def flask_app(engine):
    from api import create_app
    from api.state import set_engine

    app = create_app(engine)
    app.config['TESTING'] = True
    yield app
    set_engine(None)


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def auth_headers():
    return {"X-API-Key": API_KEY}


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Reset global metrics and circuit breakers between tests."""
    from monitoring.metrics import metrics
    from retry import reset_circuit_breakers

    metrics.reset()
    reset_circuit_breakers()
    yield
    metrics.reset()
    reset_circuit_breakers()
