"""
Shared state for the rating engine API.

Holds the engine instance used by every blueprint. create_app() installs
an explicit engine (tests pass their own); otherwise one is built from the
environment on first use.
"""

import threading

from rating_engine import RatingEngine

_engine: RatingEngine | None = None
_engine_lock = threading.Lock()


def get_engine() -> RatingEngine:
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = RatingEngine()
    return _engine


def set_engine(engine: RatingEngine | None) -> None:
    global _engine
    with _engine_lock:
        _engine = engine


def reset_engine() -> None:
    """Close and drop the shared engine."""
    global _engine
    with _engine_lock:
        if _engine is not None:
            _engine.close()
        _engine = None
