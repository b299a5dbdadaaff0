"""
Tests for client identity fingerprinting.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import FakeClock

from fingerprint import (
    DEFAULT_COLLECTORS,
    FingerprintGenerator,
    IdentityService,
    InvalidDisplayName,
    SignalCollector,
    validate_display_name,
)
from rating_models import IdentityConfidence

FULL_SIGNALS = {
    "navigator": {"platform": "MacIntel", "language": "en-US", "timezone": "Europe/Lisbon"},
    "screen": {"width": 1440, "height": 900, "color_depth": 24, "pixel_ratio": 2},
    "canvas": "c4f1e2",
    "audio": "a91b7d",
    "hardware": {"cores": 8, "memory": 16, "touch_points": 0},
}


class ExplodingCollector(SignalCollector):
    name = "exploding"

    def _read(self, signals):
        raise RuntimeError("probe crashed")


class TestFingerprintGenerator:
    def test_identical_signals_same_digest(self):
        generator = FingerprintGenerator()
        first = generator.generate(FULL_SIGNALS, now=1.0)
        second = generator.generate(dict(FULL_SIGNALS), now=2.0)
        assert first.digest == second.digest
        assert len(first.digest) == 64
        assert first.confidence == IdentityConfidence.HIGH

    def test_signals_used_in_collector_order(self):
        identity = FingerprintGenerator().generate(FULL_SIGNALS)
        assert identity.signals_used == ("navigator", "screen", "canvas", "audio", "hardware")

    def test_different_signals_differ(self):
        generator = FingerprintGenerator()
        other = dict(FULL_SIGNALS, canvas="ffffff")
        assert generator.generate(FULL_SIGNALS).digest != generator.generate(other).digest

    def test_failed_probe_is_skipped(self):
        signals = dict(FULL_SIGNALS, canvas="canvas-error", audio="audio-not-supported")
        identity = FingerprintGenerator().generate(signals)
        assert identity.confidence == IdentityConfidence.HIGH
        assert identity.signals_used == ("navigator", "screen", "hardware")

    def test_screen_requires_dimensions(self):
        signals = {"screen": {"width": 1440}, "canvas": "c4f1e2"}
        identity = FingerprintGenerator().generate(signals)
        assert identity.signals_used == ("canvas",)

    def test_raising_collector_does_not_propagate(self):
        generator = FingerprintGenerator(collectors=(ExplodingCollector(),) + DEFAULT_COLLECTORS)
        identity = generator.generate(FULL_SIGNALS)
        assert identity.is_available
        assert "exploding" not in identity.signals_used

    def test_fallback_is_low_confidence(self):
        identity = FingerprintGenerator().generate({"user_agent": "Mozilla/5.0"}, now=10.0)
        assert identity.confidence == IdentityConfidence.LOW
        assert identity.signals_used == ("fallback",)
        assert identity.is_available

    def test_fallback_is_not_stable(self):
        generator = FingerprintGenerator()
        first = generator.generate({"user_agent": "Mozilla/5.0"}, now=10.0)
        second = generator.generate({"user_agent": "Mozilla/5.0"}, now=11.0)
        assert first.digest != second.digest

    def test_no_signals_unavailable(self):
        identity = FingerprintGenerator().generate({}, now=5.0)
        assert not identity.is_available
        assert identity.confidence == IdentityConfidence.UNAVAILABLE

    def test_non_dict_signals_unavailable(self):
        assert not FingerprintGenerator().generate("not-a-dict").is_available


class TestDisplayName:
    def test_trimmed(self):
        assert validate_display_name("  Ana  ") == "Ana"

    def test_none_passes(self):
        assert validate_display_name(None) is None

    @pytest.mark.parametrize("name", [" A ", "x" * 51, 42])
    def test_invalid(self, name):
        with pytest.raises(InvalidDisplayName):
            validate_display_name(name)

    def test_bounds(self):
        assert validate_display_name("Al") == "Al"
        assert validate_display_name("x" * 50) == "x" * 50


class TestIdentityService:
    def test_identity_persisted(self):
        clock = FakeClock()
        service = IdentityService(clock=clock)
        first = service.get_client_identity({"user_agent": "Mozilla/5.0"})
        clock.advance(60)
        second = service.get_client_identity({"user_agent": "Mozilla/5.0"})
        assert first.digest == second.digest

    def test_expiry_set_from_ttl(self):
        clock = FakeClock()
        service = IdentityService(ttl_days=30, clock=clock)
        identity = service.get_client_identity(FULL_SIGNALS)
        assert identity.expires_at == clock.now + 30 * 86400

    def test_expired_identity_regenerated_and_keeps_display_name(self):
        clock = FakeClock()
        service = IdentityService(ttl_days=1, clock=clock)
        first = service.get_client_identity({"user_agent": "Mozilla/5.0"}, display_name="Ana")

        clock.advance(86400 + 1)
        second = service.get_client_identity({"user_agent": "Mozilla/5.0"})
        assert second.digest != first.digest
        assert second.display_name == "Ana"

    def test_display_name_updated(self):
        service = IdentityService(clock=FakeClock())
        service.get_client_identity(FULL_SIGNALS, display_name="Ana")
        renamed = service.get_client_identity(FULL_SIGNALS, display_name="Bea")
        assert renamed.display_name == "Bea"

    def test_invalid_display_name_raises(self):
        with pytest.raises(InvalidDisplayName):
            IdentityService(clock=FakeClock()).get_client_identity(FULL_SIGNALS, display_name="A")

    def test_unavailable_not_cached(self):
        service = IdentityService(clock=FakeClock())
        assert not service.get_client_identity({}, session_key="s1").is_available
        assert service.cache.get("identity:s1") is None

    def test_session_key_overrides_signals(self):
        service = IdentityService(clock=FakeClock())
        first = service.get_client_identity(FULL_SIGNALS, session_key="device-1")
        second = service.get_client_identity({"canvas": "other"}, session_key="device-1")
        assert first.digest == second.digest

    def test_forget(self):
        service = IdentityService(clock=FakeClock())
        service.get_client_identity(FULL_SIGNALS, session_key="device-1")
        assert service.forget("device-1")
